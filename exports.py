"""Job lifecycle facade: submit, query, cancel, retry and fetch exports.

This is the only surface the API layer talks to. Validation, not-found and
conflict errors are raised here synchronously and never reach the queue.
"""

import logging
import sqlite3
import uuid

from errors import (ConflictError, ExpiredArtifactError, NotFoundError, TransientExecutionError,
                    ValidationError)
from job_queue import JobQueue
from models import (CANCELLED, COMPLETED, FAILED, FORMATS, KINDS, PENDING, PRIORITY_RANK,
                    PROCESSING, SINGLE, STATES, JobRecord, RenderSettings)
from settings import Settings
from storage import Storage

logger = logging.getLogger(__name__)


class ExportService:
    def __init__(self, db=None, settings=None, artifacts=None, queue=None):
        self.db = db or Storage()
        self.settings = settings or Settings.load(self.db)
        self.artifacts = artifacts
        self.queue = queue or JobQueue(self.db)

    # ---------------- Submission ----------------
    def submit(self, owner_id, item_refs, kind=SINGLE, render_settings=None, priority="normal",
               job_id=None, preset=None, project_id=None):
        """Validate, persist and enqueue a new export job. Returns its id."""
        settings = self._validate(owner_id, item_refs, kind, render_settings, priority)
        job = JobRecord(
            id=job_id or str(uuid.uuid4()),
            owner_id=owner_id,
            item_refs=list(item_refs),
            kind=kind,
            render_settings=settings,
            priority=priority,
            max_attempts=self.settings.max_attempts,
            timeout_seconds=self.settings.job_timeout_seconds,
            preset=preset,
            project_id=project_id,
        )
        try:
            self.db.create_job(job)
        except sqlite3.IntegrityError:
            raise ConflictError("duplicate_id", f"Job {job.id} already exists") from None
        self.queue.enqueue(job.id, priority)
        logger.info("Job %s submitted by %s (%s, %d item(s), priority=%s)",
                    job.id, owner_id, kind, len(job.item_refs), priority)
        return job.id

    def _validate(self, owner_id, item_refs, kind, render_settings, priority):
        if not owner_id or not isinstance(owner_id, str):
            raise ValidationError("owner_id is required", field="owner_id")
        if kind not in KINDS:
            raise ValidationError(f"kind must be one of {', '.join(KINDS)}", field="kind")
        if priority not in PRIORITY_RANK:
            raise ValidationError(f"priority must be one of {', '.join(PRIORITY_RANK)}", field="priority")
        if isinstance(item_refs, str) or not item_refs:
            raise ValidationError("item_refs must be a non-empty list", field="item_refs")
        if any(not isinstance(ref, str) or not ref.strip() for ref in item_refs):
            raise ValidationError("item_refs must contain non-empty strings", field="item_refs")
        if kind == SINGLE and len(item_refs) != 1:
            raise ValidationError("a single export takes exactly one item", field="item_refs")
        if len(item_refs) > self.settings.max_items_per_job:
            raise ValidationError(f"at most {self.settings.max_items_per_job} items per job", field="item_refs")

        if isinstance(render_settings, RenderSettings):
            settings = render_settings
        elif render_settings is None or isinstance(render_settings, dict):
            settings = RenderSettings.from_dict(render_settings or {})
        else:
            raise ValidationError("render_settings must be a mapping", field="render_settings")

        if settings.format not in FORMATS:
            raise ValidationError(f"format must be one of {', '.join(FORMATS)}", field="format")
        for name, low, high in (("quality", 1, 100), ("width", 1, None), ("height", 1, None), ("scale", 1, 3)):
            value = getattr(settings, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < low or (high and value > high):
                bounds = f"{low}..{high}" if high else f">= {low}"
                raise ValidationError(f"{name} must be an integer {bounds}", field=name)
        return settings

    # ---------------- Queries ----------------
    def get_job(self, job_id) -> JobRecord:
        job = self.db.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def get_status(self, job_id):
        job = self.get_job(job_id)
        return {
            "status": job.status,
            "progress": job.progress,
            "failure_reason": job.failure_reason,
            "attempt_count": job.attempt_count,
            "cancel_requested": job.cancel_requested,
        }

    def list_jobs(self, owner_id=None, status=None, page=1, limit=20):
        if status is not None and status not in STATES:
            raise ValidationError(f"status must be one of {', '.join(STATES)}", field="status")
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100", field="page")
        return self.db.list_jobs(owner_id=owner_id, status=status, limit=limit, offset=(page - 1) * limit)

    def queue_stats(self):
        return self.queue.stats()

    # ---------------- Cancel / retry ----------------
    def cancel(self, job_id):
        """Cancel a job. Immediate when queued, cooperative when in flight."""
        job = self.get_job(job_id)
        if job.is_terminal:
            raise ConflictError("already_terminal", f"Job {job_id} is already {job.status}")

        # Removed, or never made it into the queue: nobody will lease it.
        if self.queue.remove(job_id) or not self.queue.contains(job_id):
            if self.db.update_job(job_id, {"status": CANCELLED, "progress": 0}, status_in=(PENDING, PROCESSING)):
                logger.info("Job %s: %s → %s (removed from queue)", job_id, job.status, CANCELLED)
                return "ok"
            raise ConflictError("already_terminal", f"Job {job_id} is already {self.get_job(job_id).status}")

        # Leased: flag it and let the worker stop at the next item boundary.
        self.db.update_job(job_id, {"cancel_requested": True})
        logger.info("Job %s: cancel requested while %s", job_id, job.status)
        return "ok"

    def retry(self, job_id):
        """Put a failed job back to pending for a fresh, full re-render."""
        job = self.get_job(job_id)
        if job.status != FAILED:
            raise ConflictError("not_failed", f"Only failed jobs can be retried (job is {job.status})")

        reset = self.db.update_job(job_id, {
            "status": PENDING,
            "progress": 0,
            "failure_reason": None,
            "last_error": None,
            "artifact_refs": [],
            "aggregate_ref": None,
            "started_at": None,
            "completed_at": None,
            "expires_at": None,
            "processing_ms": None,
            "cancel_requested": False,
            "retry_base": job.attempt_count,
        }, status_in=(FAILED,))
        if not reset:
            raise ConflictError("not_failed", f"Job {job_id} changed state during retry")

        try:
            self._delete_artifacts(job)
        finally:
            self.queue.enqueue(job_id, job.priority)
        logger.info("Job %s: %s → %s (manual retry)", job_id, FAILED, PENDING)
        return "ok"

    def _delete_artifacts(self, job):
        # Runs before the job is queued again; the next attempt writes the same keys.
        if self.artifacts is None:
            return
        try:
            self.artifacts.delete_many(job.artifact_refs + [job.aggregate_ref])
        except TransientExecutionError as e:
            logger.warning("Could not delete old artifacts of job %s: %s", job.id, e)

    # ---------------- Artifacts ----------------
    def get_artifacts(self, job_id):
        job = self._completed_job(job_id)
        return {
            "item_refs": list(job.artifact_refs),
            "aggregate_ref": job.aggregate_ref,
            "expires_at": job.expires_at,
        }

    def open_artifact(self, job_id, ref):
        """Fetch the bytes of one artifact (or the aggregate) of a completed job."""
        job = self._completed_job(job_id)
        if ref not in job.artifact_refs and ref != job.aggregate_ref:
            raise NotFoundError(f"Artifact {ref} does not belong to job {job_id}")
        if self.artifacts is None:
            raise RuntimeError("ExportService was created without an artifact store")
        return self.artifacts.get(ref)

    def _completed_job(self, job_id):
        job = self.get_job(job_id)
        if job.status != COMPLETED:
            raise ConflictError("not_completed", f"Export not completed yet (job is {job.status})")
        if job.artifacts_revoked_at or (job.expires_at and self.db.now() > job.expires_at):
            raise ExpiredArtifactError(job_id, job.expires_at)
        return job
