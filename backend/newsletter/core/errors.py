"""Application error types translated to HTTP responses in ``newsletter.main``."""


class InvalidIdempotencyKeyError(ValueError):
    """The caller supplied an idempotency key that cannot be stored."""


class IdempotencyConflictError(Exception):
    """A request with the same idempotency key is still being processed."""

    def __init__(self, idempotency_key: str, retry_after_seconds: int = 1):
        super().__init__(
            f"A request with idempotency key '{idempotency_key}' is still being processed"
        )
        self.idempotency_key = idempotency_key
        self.retry_after_seconds = retry_after_seconds


class CorruptSavedResponseError(Exception):
    """A stored response snapshot could not be decoded for replay."""
