"""Error taxonomy for the export pipeline.

Facade errors (validation, not-found, conflict, expired) are raised to the
caller. Execution errors are raised inside a worker and turned into job
state: transient ones go through the retry policy, permanent ones fail the
job on the spot.
"""


class ExportError(Exception):
    """Base class for every error raised by exportctl."""


class ValidationError(ExportError):
    """Bad submission input. The job is never created."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class NotFoundError(ExportError):
    """Unknown job id (or an artifact ref that does not belong to the job)."""


class ConflictError(ExportError):
    """Operation not allowed in the job's current state."""

    def __init__(self, code, message=None):
        super().__init__(message or code)
        self.code = code


class ExpiredArtifactError(ExportError):
    """Artifacts were requested after the job's retention window."""

    def __init__(self, job_id, expires_at=None):
        super().__init__(f"Artifacts for job {job_id} expired at {expires_at}")
        self.job_id = job_id
        self.expires_at = expires_at


class ExecutionError(ExportError):
    reason = "execution_failed"


class TransientExecutionError(ExecutionError):
    """Retryable render or storage failure."""


class PermanentExecutionError(ExecutionError):
    """Non-retryable failure, e.g. a malformed source image."""


class ExecutionTimeoutError(TransientExecutionError):
    """The attempt ran past its wall-clock bound."""

    reason = "timeout"

    def __init__(self, message="timeout"):
        super().__init__(message)


class AggregationError(PermanentExecutionError):
    """Combining per-item artifacts into the archive failed."""

    reason = "aggregation_failed"


class ArtifactMissingError(ExportError, KeyError):
    """A storage ref points at nothing."""

    def __init__(self, ref):
        super().__init__(ref)
        self.ref = ref

    def __str__(self):
        return f"artifact not found: {self.ref}"


class LeaseLostError(ExportError):
    """The worker no longer holds the lease for the job it is running."""
