"""Deterministic HTTP failure classification for provider adapters."""

from __future__ import annotations

from dataclasses import dataclass

from ai_queue.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderTimeoutError,
    TransientProviderError,
)

HTTP_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "billing",
    "payment",
    "credits",
    "insufficient balance",
    "arrearage",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "invalid_api_key",
    "authentication",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "throttl",
    "try again later",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model does not exist",
    "model is not available",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "overloaded",
    "server error",
    "bad gateway",
    "service unavailable",
)


@dataclass(slots=True)
class HttpFailureClassification:
    """Normalized failure classification result."""

    error_type: type[ProviderError]
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_error(self, *, provider: str, status_code: int, message: str) -> ProviderError:
        """Build the adapter exception for this classification."""

        return self.error_type(
            f"{provider} request failed (HTTP {status_code}, {self.reason_code}): {message}",
            provider=provider,
            status_code=status_code,
        )

    @property
    def retryable(self) -> bool:
        return issubclass(self.error_type, TransientProviderError)


def classify_http_failure(status_code: int, body: str) -> HttpFailureClassification:
    """Classify a non-2xx provider response.

    Billing markers win over the status code because some backends report an
    exhausted quota with HTTP 429.
    """

    haystack = body.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None or status_code == 402:
        return HttpFailureClassification(
            error_type=ProviderRequestError,
            reason_code="billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in {401, 403}:
        return HttpFailureClassification(
            error_type=ProviderAuthError,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None or status_code == 429:
        return HttpFailureClassification(
            error_type=ProviderRateLimitError,
            reason_code="rate_limited",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None or status_code == 404:
        return HttpFailureClassification(
            error_type=ProviderRequestError,
            reason_code="model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    if status_code == 408:
        return HttpFailureClassification(
            error_type=ProviderTimeoutError,
            reason_code="timeout",
            matched_rule="timeout_status",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or status_code >= 500:
        return HttpFailureClassification(
            error_type=TransientProviderError,
            reason_code="backend_transient",
            matched_rule="server_error" if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return HttpFailureClassification(
        error_type=ProviderRequestError,
        reason_code="bad_request",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
