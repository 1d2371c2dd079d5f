"""Typed runtime settings resolved from the SQLite config table.

Resolution order for every key: explicit override (CLI flag), then the value
stored with `exportctl config set`, then the built-in default.
"""

import logging
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

DEFAULTS = {
    "worker_count": "2",
    "lease_seconds": "60",
    "poll_interval": "1.0",
    "job_timeout_seconds": "300",
    "max_attempts": "3",
    "backoff_base": "2",
    "backoff_max_seconds": "300",
    "retention_days": "7",
    "sweep_interval": "3600",
    "max_items_per_job": "50",
    "storage_dir": "./storage",
    "source_dir": "./storage",
}


@dataclass
class Settings:
    worker_count: int = 2
    lease_seconds: int = 60
    poll_interval: float = 1.0
    job_timeout_seconds: int = 300
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max_seconds: float = 300.0
    retention_days: float = 7.0
    sweep_interval: float = 3600.0
    max_items_per_job: int = 50
    storage_dir: str = "./storage"
    source_dir: str = "./storage"

    @property
    def retention_seconds(self):
        return self.retention_days * 24 * 3600

    @classmethod
    def load(cls, db=None, **overrides):
        values = {}
        for f in fields(cls):
            raw = overrides.get(f.name)
            if raw is None and db is not None:
                raw = db.get_config(f.name)
            if raw is None:
                raw = DEFAULTS[f.name]
            try:
                values[f.name] = f.type(raw) if f.type in (int, float) else str(raw)
            except (TypeError, ValueError):
                logger.warning("Invalid value %r for config '%s', using default %s", raw, f.name, DEFAULTS[f.name])
                values[f.name] = f.type(DEFAULTS[f.name]) if f.type in (int, float) else DEFAULTS[f.name]
        return cls(**values)
