"""
Error taxonomy for the generation pipeline.

ValidationError / NotFoundError surface synchronously to callers.
GenerationError subclasses are raised by the provider and stage handlers
and select the Job Queue's retry strategy:

    RateLimitedError -> flat cooldown (rate_limit_retry_seconds)
    TransientError   -> exponential backoff, capped
    PermanentError   -> same budget as transient unless short_circuit
"""

from typing import Optional


class CourseGenError(Exception):
    """Base class for all pipeline errors."""
    pass


class ValidationError(CourseGenError):
    """Malformed configuration or request input. Never enters the queue."""

    def __init__(self, field: Optional[str], message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}" if field else message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "field": self.field}


class InvalidQueueError(ValidationError):
    """Queue name is not one of the known queues."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__("queue", f"Invalid queue name: {queue_name}")


class NotFoundError(CourseGenError):
    """Referenced course/section/article/job does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")

    def to_dict(self) -> dict:
        return {"success": False, "error": str(self)}


class LeaseLostError(CourseGenError):
    """The worker's lease no longer matches the job (purged, recovered or re-leased)."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Lease lost for job {job_id}")


class GenerationError(CourseGenError):
    """Base class for failures during job execution."""

    kind = "transient"


class RateLimitedError(GenerationError):
    """Provider signaled throttling."""

    kind = "rate_limited"

    def __init__(self, message: str = "Rate limited by provider", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class TransientError(GenerationError):
    """Network, timeout or 5xx-class failure."""

    kind = "transient"


class PermanentError(GenerationError):
    """Content/validation failure unlikely to succeed on retry."""

    kind = "permanent"

    def __init__(self, message: str, short_circuit: bool = False):
        self.short_circuit = short_circuit
        super().__init__(message)
