# worker.py
import logging
import threading
import time
import uuid
from concurrent import futures
from datetime import timedelta

import events
from aggregator import Aggregator
from errors import (AggregationError, ExecutionTimeoutError, LeaseLostError,
                    PermanentExecutionError, TransientExecutionError)
from job_queue import JobQueue, Outcome
from models import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING
from retry import RetryPolicy
from settings import Settings
from storage import Storage

logger = logging.getLogger(__name__)


class ExecutionCancelled(Exception):
    pass


class Worker:
    def __init__(self, render_engine, artifacts, db_path=None, settings=None, retry_policy=None,
                 events_bus=None, worker_id=None, stop_event=None, clock=None):
        self.db = Storage(db_path, clock=clock)
        self.settings = settings or Settings.load(self.db)
        self.queue = JobQueue(self.db, poll_interval=min(self.settings.poll_interval, 0.5))
        self.render_engine = render_engine
        self.artifacts = artifacts
        self.aggregator = Aggregator(artifacts)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.events = events_bus or events.EventBus()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.stop_event = stop_event  # threading.Event() shared by the pool
        self._abandoned = None  # future of a call left running by a timed-out or lost attempt

    def run(self):
        while not (self.stop_event and self.stop_event.is_set()):
            try:
                self.process_next(wait=self.settings.poll_interval)
            except Exception:
                # Lease expiry hands the job to another worker.
                logger.exception("%s crashed while processing a job", self.worker_id)
                time.sleep(self.settings.poll_interval)

    def process_next(self, wait=0.0):
        """Lease and run at most one job. Returns True if a job was leased.

        Nothing is leased while a call abandoned by an earlier attempt is still
        running, so a worker never has more than one render in flight.
        """
        if not self._abandoned_call_finished(wait):
            return False
        lease = self.queue.dequeue(self.worker_id, self.settings.lease_seconds, wait=wait)
        if lease is None:
            return False
        self._process_job(lease)
        return True

    def _abandoned_call_finished(self, wait):
        if self._abandoned is None:
            return True
        done, _ = futures.wait([self._abandoned], timeout=wait)
        if not done:
            logger.debug("%s waiting for an abandoned call before leasing", self.worker_id)
            return False
        self._abandoned = None
        return True

    def _now(self):
        return self.db.now()

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info(f"Job {job_id}: {old_state} → {new_state} {extra}".rstrip())

    def _process_job(self, lease):
        job = self.db.get_job(lease.job_id)
        if job is None or job.is_terminal:
            logger.warning("Dropping lease for job %s (%s)", lease.job_id, job.status if job else "missing")
            self.queue.release(lease.token, Outcome.DROPPED)
            return

        if job.cancel_requested:
            self._finalize_cancelled(job, lease, job.status)
            return

        if job.status == PROCESSING and not self.retry_policy.should_retry(job.attempts_in_chain, job.max_attempts):
            # The previous holder's lease expired mid-attempt; that attempt counts as failed.
            self._finalize_failed(job, lease, "lease_expired", detail=job.last_error)
            return

        old_state = job.status
        started = self.db.update_job(job.id, {
            "status": PROCESSING,
            "attempt_count": job.attempt_count + 1,
            "started_at": self._now(),
            "progress": 0,
            "artifact_refs": [],
            "aggregate_ref": None,
        }, status_in=(PENDING, PROCESSING), lease_token=lease.token)
        if not started:
            self.queue.release(lease.token, Outcome.DROPPED)
            return
        job = self.db.get_job(job.id)
        self._log_transition(job.id, old_state, PROCESSING,
                             f"(claimed by {self.worker_id}, attempt={job.attempts_in_chain}/{job.max_attempts})")

        start = time.monotonic()
        timeout = job.timeout_seconds or self.settings.job_timeout_seconds
        deadline = start + timeout
        try:
            artifact_refs = self._render_items(job, lease, deadline)
            aggregate_ref = None
            if job.needs_aggregate:
                self._check_cancel(job)
                key = self._aggregate_key(job)
                aggregate_ref = self._with_deadline(deadline, lease, self.aggregator.aggregate,
                                                    artifact_refs, key, orphan=key)
        except ExecutionCancelled:
            self._finalize_cancelled(self.db.get_job(job.id), lease, PROCESSING)
        except LeaseLostError:
            self._abandon(job)
        except AggregationError as e:
            self._finalize_failed(self.db.get_job(job.id), lease, e.reason, detail=str(e), discard=False)
        except PermanentExecutionError as e:
            self._finalize_failed(self.db.get_job(job.id), lease, str(e))
        except TransientExecutionError as e:
            self._handle_failure(self.db.get_job(job.id), lease, e)
        else:
            duration_ms = int((time.monotonic() - start) * 1000)
            self._finalize_completed(job, lease, artifact_refs, aggregate_ref, duration_ms)

    def _render_items(self, job, lease, deadline):
        refs = []
        total = len(job.item_refs)
        for index, item_ref in enumerate(job.item_refs):
            self._check_cancel(job)
            data = self._with_deadline(deadline, lease, self.render_engine.render, job.render_settings, item_ref)
            self._keep_lease(lease)
            key = self._artifact_key(job, index)
            refs.append(self._with_deadline(deadline, lease, self.artifacts.put, data, key, orphan=key))
            progress = round(100 * len(refs) / total)
            if not self.db.update_job(job.id, {"artifact_refs": refs, "progress": progress}, lease_token=lease.token):
                raise LeaseLostError(job.id)
            self.events.publish(events.PROGRESS, job.id, progress=progress, items_done=len(refs), items_total=total)
        return refs

    def _check_cancel(self, job):
        if self.db.is_cancel_requested(job.id):
            raise ExecutionCancelled(job.id)

    def _keep_lease(self, lease):
        if not self.queue.extend_lease(lease.token, self.settings.lease_seconds):
            raise LeaseLostError(lease.job_id)

    def _with_deadline(self, deadline, lease, fn, *args, orphan=None):
        """Run one collaborator call against the attempt's wall-clock deadline.

        The call runs on a daemon thread and is not interrupted; on overrun or
        a lost lease its result is abandoned. The lease is extended while the
        call is running. `orphan` is the artifact key the call writes, removed
        if it lands after the job has failed or been cancelled.
        """
        if deadline - time.monotonic() <= 0:
            raise ExecutionTimeoutError()
        future = futures.Future()
        threading.Thread(target=self._run_call, args=(future, fn, args),
                         name=f"{self.worker_id}-call", daemon=True).start()
        heartbeat = max(self.settings.lease_seconds / 3, 0.01)
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ExecutionTimeoutError()
                done, _ = futures.wait([future], timeout=min(remaining, heartbeat))
                if done:
                    break
                self._keep_lease(lease)
        except (ExecutionTimeoutError, LeaseLostError):
            self._abandon_call(future, lease.job_id, orphan)
            raise

        try:
            return future.result()
        except (TransientExecutionError, PermanentExecutionError, LeaseLostError):
            raise
        except Exception as e:
            raise TransientExecutionError(f"{type(e).__name__}: {e}") from e

    @staticmethod
    def _run_call(future, fn, args):
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as e:
            future.set_exception(e)

    def _abandon_call(self, future, job_id, orphan):
        self._abandoned = future
        if orphan:
            future.add_done_callback(lambda _: self._drop_orphan(job_id, orphan))

    def _drop_orphan(self, job_id, key):
        job = self.db.get_job(job_id)
        # Pending or processing jobs rewrite the same key on their next attempt.
        if job is None or job.status not in (FAILED, CANCELLED):
            return
        if key in job.artifact_refs or key == job.aggregate_ref:
            return
        try:
            self.artifacts.delete(key)
        except TransientExecutionError as e:
            logger.warning("Could not remove late artifact %s of job %s: %s", key, job_id, e)
            return
        logger.info("Removed late artifact %s of job %s", key, job_id)

    def _artifact_key(self, job, index):
        ext = job.render_settings.extension
        return f"exports/{job.owner_id}/{job.id}/export_{job.id}_{index}.{ext}"

    def _aggregate_key(self, job):
        return f"exports/{job.owner_id}/{job.id}/export.zip"

    def _abandon(self, job):
        logger.warning("%s no longer holds the lease on job %s; abandoning attempt", self.worker_id, job.id)

    def _discard_artifacts(self, job):
        refs = list(job.artifact_refs)
        if job.aggregate_ref:
            refs.append(job.aggregate_ref)
        try:
            self.artifacts.delete_many(refs)
        except TransientExecutionError as e:
            # Keys are deterministic, the next attempt overwrites them.
            logger.warning("Could not discard artifacts of job %s: %s", job.id, e)

    def _finalize_completed(self, job, lease, artifact_refs, aggregate_ref, duration_ms):
        now = self._now()
        expires_at = now + timedelta(seconds=self.settings.retention_seconds)
        completed = self.db.update_job(job.id, {
            "status": COMPLETED,
            "progress": 100,
            "artifact_refs": artifact_refs,
            "aggregate_ref": aggregate_ref,
            "failure_reason": None,
            "last_error": None,
            "completed_at": now,
            "expires_at": expires_at,
            "processing_ms": duration_ms,
        }, status_in=(PROCESSING,), cancel_requested=False, lease_token=lease.token)
        if not completed:
            current = self.db.get_job(job.id)
            if current is not None and current.status == PROCESSING and current.cancel_requested:
                # A cancel landed after the last item; it wins.
                self._finalize_cancelled(current, lease, PROCESSING)
            else:
                self._abandon(job)
            return
        self.queue.release(lease.token, Outcome.COMPLETED)
        self._log_transition(job.id, PROCESSING, COMPLETED,
                             f"(items={len(artifact_refs)}, duration={duration_ms / 1000:.3f}s)")
        self.events.publish(events.COMPLETED, job.id, artifact_refs=artifact_refs, aggregate_ref=aggregate_ref)

    def _finalize_cancelled(self, job, lease, old_state):
        cancelled = self.db.update_job(job.id, {
            "status": CANCELLED,
            "progress": 0,
            "artifact_refs": [],
            "aggregate_ref": None,
        }, status_in=(PENDING, PROCESSING), lease_token=lease.token)
        if not cancelled:
            self._abandon(job)
            return
        self._discard_artifacts(job)
        self.queue.release(lease.token, Outcome.CANCELLED)
        self._log_transition(job.id, old_state, CANCELLED, "(cancel requested)")
        self.events.publish(events.CANCELLED, job.id)

    def _finalize_failed(self, job, lease, reason, detail=None, discard=True):
        fields = {"status": FAILED, "failure_reason": reason, "completed_at": self._now()}
        if discard:
            fields.update({"artifact_refs": [], "aggregate_ref": None, "progress": 0})
        if detail:
            fields["last_error"] = detail
        if not self.db.update_job(job.id, fields, status_in=(PENDING, PROCESSING), lease_token=lease.token):
            self._abandon(job)
            return
        if discard:
            self._discard_artifacts(job)
        self.queue.release(lease.token, Outcome.FAILED)
        self._log_transition(job.id, PROCESSING, FAILED,
                             f"(attempts={job.attempts_in_chain}, error={detail or reason})")
        self.events.publish(events.FAILED, job.id, reason=reason)

    def _handle_failure(self, job, lease, error):
        attempts = job.attempts_in_chain
        if not self.retry_policy.should_retry(attempts, job.max_attempts):
            self._finalize_failed(job, lease, error.reason if isinstance(error, ExecutionTimeoutError) else str(error))
            return

        delay = self.retry_policy.backoff_delay(attempts)
        scheduled = self.db.update_job(job.id, {
            "artifact_refs": [],
            "progress": 0,
            "last_error": str(error),
        }, status_in=(PROCESSING,), lease_token=lease.token)
        if not scheduled:
            self._abandon(job)
            return
        self._discard_artifacts(job)
        self.queue.release(lease.token, Outcome.RETRY, delay_seconds=delay)
        self._log_transition(job.id, PROCESSING, PROCESSING,
                             f"(attempts={attempts}/{job.max_attempts}, retry_in={delay}s, error={error})")
        self.events.publish(events.RETRY_SCHEDULED, job.id, attempt=attempts, delay=delay, error=str(error))


class WorkerPool:
    """Fixed-size pool of Worker threads sharing one stop event."""

    def __init__(self, size, worker_factory):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self.worker_factory = worker_factory  # callable(worker_id, stop_event) -> Worker
        self.stop_event = threading.Event()
        self.workers = []

    def start(self):
        for i in range(self.size):
            w = self.worker_factory(f"worker-{i+1}", self.stop_event)
            t = threading.Thread(target=w.run, name=f"worker-thread-{i+1}", daemon=True)
            self.workers.append((w, t))
            t.start()
        logger.info("Started %d worker(s)", self.size)
        return self

    def stop(self, timeout=5.0):
        self.stop_event.set()
        for _, t in self.workers:
            t.join(timeout=timeout)
        for w, _ in self.workers:
            w.db.close()
        logger.info("Workers stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
