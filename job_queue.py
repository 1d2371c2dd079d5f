"""Durable, leased job queue on top of the SQLite `queue` table.

Delivery is at-least-once: a dequeued row stays in the table with a lease
until it is released. If the lease runs out first the row becomes visible
again and another worker can pick it up.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from models import PRIORITY_RANK, iso

logger = logging.getLogger(__name__)

PAUSED_KEY = "queue_paused"


class Outcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY = "retry"
    DROPPED = "dropped"


@dataclass(frozen=True)
class Lease:
    job_id: str
    token: str
    worker_id: str
    lease_until: str


class JobQueue:
    def __init__(self, db, poll_interval=0.2):
        self.db = db
        self.poll_interval = poll_interval

    def enqueue(self, job_id, priority="normal", delay_seconds=0):
        """Put the job at the back of its tier, replacing any existing entry."""
        now = self.db.now()
        visible_at = now + timedelta(seconds=delay_seconds)
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM queue WHERE job_id=?", (job_id,))
            conn.execute("""
                INSERT INTO queue (job_id, priority, enqueued_at, visible_at)
                VALUES (?, ?, ?, ?)
            """, (job_id, PRIORITY_RANK[priority], iso(now), iso(visible_at)))
        return True

    def dequeue(self, worker_id, lease_seconds, wait=0.0) -> Optional[Lease]:
        """Lease the next ready job, polling for up to `wait` seconds."""
        deadline = time.monotonic() + wait
        while True:
            lease = self._claim(worker_id, lease_seconds)
            if lease is not None or time.monotonic() >= deadline:
                return lease
            time.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))

    def _claim(self, worker_id, lease_seconds):
        if self.is_paused():
            return None
        now = self.db.now()
        now_iso = iso(now)
        lease_until = iso(now + timedelta(seconds=lease_seconds))
        token = uuid.uuid4().hex

        with self.db.transaction() as conn:
            row = conn.execute("""
                SELECT seq, job_id FROM queue
                WHERE visible_at <= ?
                AND (lease_until IS NULL OR lease_until <= ?)
                ORDER BY priority ASC, seq ASC
                LIMIT 1
            """, (now_iso, now_iso)).fetchone()
            if not row:
                return None
            conn.execute("""
                UPDATE queue
                SET lease_token=?, lease_owner=?, lease_until=?, deliveries=deliveries+1
                WHERE seq=?
            """, (token, worker_id, lease_until, row["seq"]))

        return Lease(job_id=row["job_id"], token=token, worker_id=worker_id, lease_until=lease_until)

    def extend_lease(self, token, lease_seconds):
        lease_until = iso(self.db.now() + timedelta(seconds=lease_seconds))
        cur = self.db.execute("UPDATE queue SET lease_until=? WHERE lease_token=?", (lease_until, token))
        return cur.rowcount == 1

    def release(self, token, outcome, delay_seconds=0):
        """Resolve a lease. RETRY re-enqueues with delayed visibility, anything else acks.

        Returns False when the token is stale (the lease was lost).
        """
        outcome = Outcome(outcome)
        now = self.db.now()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT job_id, priority FROM queue WHERE lease_token=?", (token,)).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM queue WHERE lease_token=?", (token,))
            if outcome is Outcome.RETRY:
                conn.execute("""
                    INSERT INTO queue (job_id, priority, enqueued_at, visible_at)
                    VALUES (?, ?, ?, ?)
                """, (row["job_id"], row["priority"], iso(now), iso(now + timedelta(seconds=delay_seconds))))
        return True

    def remove(self, job_id):
        """Best-effort removal of a job nobody holds a live lease on."""
        now_iso = iso(self.db.now())
        cur = self.db.execute("""
            DELETE FROM queue
            WHERE job_id=? AND (lease_until IS NULL OR lease_until <= ?)
        """, (job_id, now_iso))
        return cur.rowcount == 1

    def contains(self, job_id):
        return self.db.fetchone("SELECT 1 FROM queue WHERE job_id=?", (job_id,)) is not None

    def stats(self):
        now_iso = iso(self.db.now())
        row = self.db.fetchone("""
            SELECT
              SUM(CASE WHEN lease_until IS NOT NULL AND lease_until > ? THEN 1 ELSE 0 END) AS active,
              SUM(CASE WHEN (lease_until IS NULL OR lease_until <= ?) AND visible_at > ? THEN 1 ELSE 0 END) AS delayed,
              SUM(CASE WHEN (lease_until IS NULL OR lease_until <= ?) AND visible_at <= ? THEN 1 ELSE 0 END) AS waiting
            FROM queue
        """, (now_iso, now_iso, now_iso, now_iso, now_iso))
        stats = {k: row[k] or 0 for k in ("waiting", "delayed", "active")}
        stats["total"] = sum(stats.values())
        stats["paused"] = self.is_paused()
        return stats

    # ---------------- Pause / resume ----------------
    def pause(self):
        self.db.set_config(PAUSED_KEY, "1")
        logger.info("Queue paused")

    def resume(self):
        self.db.set_config(PAUSED_KEY, "0")
        logger.info("Queue resumed")

    def is_paused(self):
        return self.db.get_config(PAUSED_KEY, default="0") == "1"
