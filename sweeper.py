# sweeper.py
import logging

from errors import TransientExecutionError
from models import COMPLETED
from storage import Storage

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Deletes artifacts of completed jobs past `expires_at`.

    Jobs keep their `completed` status and metadata; only the files go, and
    `artifacts_revoked_at` is stamped so fetches report `expired`.
    """

    def __init__(self, artifacts, db_path=None, interval=3600.0, stop_event=None, clock=None, db=None):
        self.db = db or Storage(db_path, clock=clock)
        self.artifacts = artifacts
        self.interval = interval
        self.stop_event = stop_event

    def run(self):
        while not (self.stop_event and self.stop_event.is_set()):
            self.sweep_once()
            if self.stop_event:
                self.stop_event.wait(self.interval)
            else:
                break

    def sweep_once(self):
        now = self.db.now()
        revoked = 0
        for job in self.db.expired_jobs(now):
            refs = job.artifact_refs + ([job.aggregate_ref] if job.aggregate_ref else [])
            try:
                deleted = self.artifacts.delete_many(refs)
            except TransientExecutionError as e:
                logger.warning("Could not revoke artifacts of job %s, will retry next sweep: %s", job.id, e)
                continue
            self.db.update_job(job.id, {"artifacts_revoked_at": now}, status_in=(COMPLETED,))
            revoked += 1
            logger.info("Job %s: artifacts expired (deleted %d of %d file(s))", job.id, deleted, len(refs))
        return revoked
