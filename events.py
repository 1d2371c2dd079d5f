# events.py
import logging
import threading

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
RETRY_SCHEDULED = "retry_scheduled"


class EventBus:
    """Optional pub/sub channel for job observers.

    State is already persisted before anything is published, so a broken or
    missing listener never affects a job.
    """

    def __init__(self):
        self._listeners = []
        self._lock = threading.Lock()

    def subscribe(self, listener):
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event, job_id, **data):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, job_id, data)
            except Exception:
                logger.exception("Listener %r failed on %s for job %s", listener, event, job_id)
