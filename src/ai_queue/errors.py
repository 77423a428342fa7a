"""Exception taxonomy shared by queue, router, ledger and provider adapters."""

from __future__ import annotations


class AiQueueError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(AiQueueError):
    """Bad payload or credential shape. Never retried."""


class InvalidPayloadError(ValidationError):
    """Job payload does not match the schema for its kind."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"Invalid {kind} payload: {message}")
        self.kind = kind


class ProviderError(AiQueueError):
    """Failure reported by one AI backend."""

    def __init__(self, message: str, *, provider: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Credential rejected by the backend. Not retryable."""


AuthError = ProviderAuthError


class ProviderRequestError(ProviderError):
    """Request rejected for a non-transient reason (unknown model, billing, bad input)."""


class TransientProviderError(ProviderError):
    """Failure that may succeed on a later attempt."""


class ProviderRateLimitError(TransientProviderError):
    """Backend throttled the request."""


class ProviderTimeoutError(TransientProviderError):
    """Backend did not answer in time."""


class ProviderResponseError(TransientProviderError):
    """Backend answered with a malformed or empty body."""


class RoutingError(AiQueueError):
    """Router could not produce a provider decision."""


class NoEligibleProviderError(RoutingError):
    """No credential is configured for the user and task."""


class BudgetExceededError(RoutingError):
    """Estimated cost does not fit the job cap or the remaining budget."""

    def __init__(
        self,
        message: str,
        *,
        estimated_cents: int,
        remaining_cents: int | None = None,
    ) -> None:
        super().__init__(message)
        self.estimated_cents = estimated_cents
        self.remaining_cents = remaining_cents


class QueueIntegrityError(AiQueueError):
    """Persisted job state is inconsistent. The job is forced to failed."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(f"Queue integrity violation for job {job_id}: {message}")
        self.job_id = job_id
