from __future__ import annotations

import allure

from ai_queue.errors import (
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderTimeoutError,
    TransientProviderError,
)
from ai_queue.providers.failure_classifier import (
    HTTP_FAILURE_CLASSIFIER_VERSION,
    classify_http_failure,
)

pytestmark = [
    allure.epic("Provider Calls"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert HTTP_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_rate_limit_status() -> None:
    classified = classify_http_failure(429, '{"error": {"code": "insufficient_quota"}}')
    assert classified.error_type is ProviderRequestError
    assert classified.reason_code == "billing_or_quota"
    assert classified.matched_pattern == "insufficient_quota"
    assert classified.retryable is False


def test_classifier_maps_auth_statuses() -> None:
    for status in (401, 403):
        classified = classify_http_failure(status, "")
        assert classified.error_type is ProviderAuthError
        assert classified.matched_pattern is None
    assert classify_http_failure(400, "Invalid API key provided").error_type is ProviderAuthError


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_http_failure(429, "Too Many Requests")
    assert classified.error_type is ProviderRateLimitError
    assert classified.retryable is True


def test_classifier_maps_model_not_available() -> None:
    classified = classify_http_failure(400, "The model does not exist")
    assert classified.error_type is ProviderRequestError
    assert classified.reason_code == "model_not_available"
    assert classify_http_failure(404, "").reason_code == "model_not_available"


def test_classifier_maps_timeouts_and_server_errors() -> None:
    assert classify_http_failure(408, "").error_type is ProviderTimeoutError

    server = classify_http_failure(503, "")
    assert server.error_type is TransientProviderError
    assert server.matched_rule == "server_error"

    overloaded = classify_http_failure(400, "engine overloaded")
    assert overloaded.matched_rule == "generic_transient"
    assert overloaded.retryable is True


def test_classifier_falls_back_to_non_retryable_bad_request() -> None:
    classified = classify_http_failure(422, "messages must not be empty")
    assert classified.error_type is ProviderRequestError
    assert classified.reason_code == "bad_request"
    assert classified.retryable is False


def test_to_error_carries_provider_and_status() -> None:
    error = classify_http_failure(401, "nope").to_error(
        provider="openai",
        status_code=401,
        message="nope",
    )
    assert isinstance(error, ProviderAuthError)
    assert error.provider == "openai"
    assert error.status_code == 401
    assert "HTTP 401" in str(error)
