# models.py
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Optional

# Job states
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STATES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
TERMINAL_STATES = (COMPLETED, FAILED, CANCELLED)

# Job kinds
SINGLE = "single"
BATCH = "batch"
AGGREGATE = "aggregate"

KINDS = (SINGLE, BATCH, AGGREGATE)
AGGREGATED_KINDS = (BATCH, AGGREGATE)

# Priority tiers, lowest rank is served first
PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}

FORMATS = ("png", "jpg", "jpeg", "webp")


def utcnow():
    return datetime.now(timezone.utc)


def iso(dt):
    return dt.isoformat(timespec="microseconds") if dt else None


def parse_iso(value):
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class RenderSettings:
    format: str = "png"
    quality: int = 90
    width: int = 1290
    height: int = 2796
    scale: int = 2

    @property
    def extension(self) -> str:
        return "jpg" if self.format == "jpeg" else self.format

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "RenderSettings":
        known = {k: data[k] for k in ("format", "quality", "width", "height", "scale") if data.get(k) is not None}
        return cls(**known)


@dataclass
class JobRecord:
    id: str
    owner_id: str
    item_refs: List[str]
    kind: str = SINGLE
    render_settings: RenderSettings = field(default_factory=RenderSettings)
    priority: str = "normal"
    status: str = PENDING
    progress: int = 0
    attempt_count: int = 0
    retry_base: int = 0
    max_attempts: int = 3
    timeout_seconds: Optional[int] = None
    artifact_refs: List[str] = field(default_factory=list)
    aggregate_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None
    cancel_requested: bool = False
    preset: Optional[str] = None
    project_id: Optional[str] = None
    processing_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    artifacts_revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def needs_aggregate(self) -> bool:
        return self.kind in AGGREGATED_KINDS

    @property
    def attempts_in_chain(self) -> int:
        """Attempts started since submission or the last user-initiated retry."""
        return self.attempt_count - self.retry_base

    @classmethod
    def from_row(cls, row) -> "JobRecord":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            item_refs=json.loads(row["item_refs"]),
            kind=row["kind"],
            render_settings=RenderSettings.from_dict(json.loads(row["render_settings"])),
            priority=row["priority"],
            status=row["status"],
            progress=row["progress"],
            attempt_count=row["attempt_count"],
            retry_base=row["retry_base"],
            max_attempts=row["max_attempts"],
            timeout_seconds=row["timeout_seconds"],
            artifact_refs=json.loads(row["artifact_refs"] or "[]"),
            aggregate_ref=row["aggregate_ref"],
            failure_reason=row["failure_reason"],
            last_error=row["last_error"],
            cancel_requested=bool(row["cancel_requested"]),
            preset=row["preset"],
            project_id=row["project_id"],
            processing_ms=row["processing_ms"],
            started_at=parse_iso(row["started_at"]),
            completed_at=parse_iso(row["completed_at"]),
            expires_at=parse_iso(row["expires_at"]),
            artifacts_revoked_at=parse_iso(row["artifacts_revoked_at"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
