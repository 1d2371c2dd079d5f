# storage.py
import json
import os
import sqlite3
import threading
from contextlib import contextmanager

from models import JobRecord, iso, utcnow

DEFAULT_DB_PATH = "exports.db"

JSON_COLUMNS = ("item_refs", "artifact_refs")


def default_db_path():
    return os.environ.get("EXPORTCTL_DB", DEFAULT_DB_PATH)


class Storage:
    """SQLite-backed JobRecord store, queue table and runtime config.

    One instance per thread of execution; the lock only guards the shared
    connection when an instance is used from a thread pool (the dashboard).
    """

    def __init__(self, db_path=None, clock=None):
        self.db_path = db_path or default_db_path()
        self.clock = clock or utcnow
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30, isolation_level=None)
        self.conn.row_factory = sqlite3.Row

        # Better concurrency for multiple workers
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def now(self):
        return self.clock()

    def close(self):
        self.conn.close()

    def _init_schema(self):
        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            item_refs TEXT NOT NULL,
            kind TEXT NOT NULL,
            render_settings TEXT NOT NULL,
            priority TEXT NOT NULL DEFAULT 'normal',
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            retry_base INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            timeout_seconds INTEGER,
            artifact_refs TEXT NOT NULL DEFAULT '[]',
            aggregate_ref TEXT,
            failure_reason TEXT,
            last_error TEXT,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            preset TEXT,
            project_id TEXT,
            processing_ms INTEGER,
            started_at TEXT,
            completed_at TEXT,
            expires_at TEXT,
            artifacts_revoked_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_owner ON jobs (owner_id)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_status ON jobs (status)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_expires ON jobs (expires_at)")

        # Queue table; seq gives FIFO order within a priority tier
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS queue (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL UNIQUE,
            priority INTEGER NOT NULL,
            enqueued_at TEXT NOT NULL,
            visible_at TEXT NOT NULL,
            lease_token TEXT,
            lease_owner TEXT,
            lease_until TEXT,
            deliveries INTEGER NOT NULL DEFAULT 0
        )
        """)

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on error."""
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def execute(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params)

    def fetchone(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def fetchall(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ---------------- Job records ----------------
    def create_job(self, job: JobRecord):
        """Insert a new record. Raises sqlite3.IntegrityError on a duplicate id."""
        now_iso = iso(self.now())
        self.execute("""
            INSERT INTO jobs (id, owner_id, item_refs, kind, render_settings, priority, status,
                              max_attempts, timeout_seconds, preset, project_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (job.id, job.owner_id, json.dumps(job.item_refs), job.kind, job.render_settings.to_json(),
              job.priority, job.status, job.max_attempts, job.timeout_seconds, job.preset,
              job.project_id, now_iso, now_iso))
        return self.get_job(job.id)

    def get_job(self, job_id):
        row = self.fetchone("SELECT * FROM jobs WHERE id=?", (job_id,))
        return JobRecord.from_row(row) if row else None

    def update_job(self, job_id, fields, status_in=None, cancel_requested=None, lease_token=None):
        """Atomically set `fields` on one job, optionally guarded.

        Only the named columns are written, so a lease holder's progress
        updates never clobber a concurrent cancel flag and vice versa. With
        `lease_token` the row is only written while that lease is the one in
        the queue table. Returns True when a row was changed.
        """
        assignments = []
        params = []
        for name, value in fields.items():
            if name in JSON_COLUMNS:
                value = json.dumps(value)
            elif hasattr(value, "isoformat"):
                value = iso(value)
            elif isinstance(value, bool):
                value = int(value)
            assignments.append(f"{name}=?")
            params.append(value)
        assignments.append("updated_at=?")
        params.append(iso(self.now()))

        where = ["id=?"]
        params.append(job_id)
        if status_in:
            where.append(f"status IN ({','.join('?' for _ in status_in)})")
            params.extend(status_in)
        if cancel_requested is not None:
            where.append("cancel_requested=?")
            params.append(int(cancel_requested))
        if lease_token is not None:
            where.append("EXISTS (SELECT 1 FROM queue WHERE queue.job_id=jobs.id AND queue.lease_token=?)")
            params.append(lease_token)

        cur = self.execute(f"UPDATE jobs SET {', '.join(assignments)} WHERE {' AND '.join(where)}", params)
        return cur.rowcount == 1

    def is_cancel_requested(self, job_id):
        row = self.fetchone("SELECT cancel_requested FROM jobs WHERE id=?", (job_id,))
        return bool(row and row["cancel_requested"])

    def list_jobs(self, owner_id=None, status=None, limit=20, offset=0):
        clauses, params = [], []
        if owner_id:
            clauses.append("owner_id=?")
            params.append(owner_id)
        if status:
            clauses.append("status=?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total = self.fetchone(f"SELECT COUNT(*) AS c FROM jobs {where}", params)["c"]
        rows = self.fetchall(
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [JobRecord.from_row(r) for r in rows], total

    def expired_jobs(self, now):
        rows = self.fetchall("""
            SELECT * FROM jobs
            WHERE status='completed' AND expires_at IS NOT NULL AND expires_at < ?
              AND artifacts_revoked_at IS NULL
            ORDER BY expires_at
        """, (iso(now),))
        return [JobRecord.from_row(r) for r in rows]

    def status_counts(self):
        rows = self.fetchall("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
        return {r["status"]: r["count"] for r in rows}

    def avg_processing_ms(self):
        row = self.fetchone("SELECT AVG(processing_ms) AS avg_ms FROM jobs WHERE status='completed' AND processing_ms IS NOT NULL")
        return row["avg_ms"]

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self.fetchone("SELECT value FROM config WHERE key=?", (key,))
        return row["value"] if row else default

    def set_config(self, key, value):
        now = iso(self.now())
        self.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))

    def list_config(self):
        return self.fetchall("SELECT key, value, updated_at FROM config ORDER BY key")
