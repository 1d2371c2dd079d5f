# retry.py
class RetryPolicy:
    """Exponential backoff from `base_delay`, capped at `max_delay` (seconds)."""

    def __init__(self, base_delay=2.0, max_delay=300.0):
        if base_delay < 0 or max_delay < 0:
            raise ValueError("backoff delays must be non-negative")
        self.base_delay = base_delay
        self.max_delay = max_delay

    def should_retry(self, attempt_count, max_attempts):
        return attempt_count < max_attempts

    def backoff_delay(self, attempt_count):
        # attempt 1 -> base, attempt 2 -> 2*base, attempt 3 -> 4*base ...
        exponent = max(attempt_count - 1, 0)
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    @classmethod
    def from_settings(cls, settings):
        return cls(base_delay=settings.backoff_base, max_delay=settings.backoff_max_seconds)
