"""Adapter for backends speaking the OpenAI chat completions protocol."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from ai_queue.errors import (
    ProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
    TransientProviderError,
    ValidationError,
)
from ai_queue.providers.base import (
    CREDENTIAL_TEST_MAX_TOKENS,
    CREDENTIAL_TEST_PROMPT,
    USAGE_ESTIMATED,
    USAGE_REPORTED,
    CallResult,
    Credential,
    TestOutcome,
    TokenUsage,
    estimate_tokens,
    validate_credential,
)
from ai_queue.providers.failure_classifier import classify_http_failure
from ai_queue.providers.pricing import PricingTable

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "siliconflow": "https://api.siliconflow.cn/v1",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
}
DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT_SECONDS = 60.0
_ERROR_BODY_PREVIEW_CHARS = 300


class OpenAICompatibleAdapter:
    """Calls `/v1/chat/completions` on one OpenAI-compatible backend."""

    def __init__(
        self,
        *,
        provider: str,
        default_endpoint: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        pricing: PricingTable | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.default_endpoint = default_endpoint
        self.pricing = pricing or PricingTable.from_env()
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def test(self, credential: Credential, model: str | None = None) -> TestOutcome:
        """Send a tiny prompt; report failure instead of raising."""

        try:
            self.infer(
                credential,
                model or credential.model,
                CREDENTIAL_TEST_PROMPT,
                temperature=0.0,
                max_tokens=CREDENTIAL_TEST_MAX_TOKENS,
            )
        except (ValidationError, ProviderError) as error:
            return TestOutcome(ok=False, error=str(error))
        return TestOutcome(ok=True)

    def infer(
        self,
        credential: Credential,
        model: str,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CallResult:
        validate_credential(credential, provider=self.provider)
        endpoint = normalize_endpoint(credential.endpoint or self.default_endpoint)
        body = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        started = time.monotonic()
        try:
            response = self._client.post(
                f"{endpoint}/chat/completions",
                json=body,
                headers={"Authorization": f"Bearer {credential.api_key}"},
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s model=%s", self.provider, model)
            raise ProviderTimeoutError(
                f"{self.provider} request timed out: {error}",
                provider=self.provider,
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s model=%s: %s", self.provider, model, error)
            raise TransientProviderError(
                f"{self.provider} request failed: {error}",
                provider=self.provider,
            ) from error
        latency_ms = int((time.monotonic() - started) * 1000)

        if not response.is_success:
            classification = classify_http_failure(response.status_code, response.text)
            logger.warning(
                "%s returned HTTP %s for model=%s (%s)",
                self.provider,
                response.status_code,
                model,
                classification.reason_code,
            )
            raise classification.to_error(
                provider=self.provider,
                status_code=response.status_code,
                message=response.text[:_ERROR_BODY_PREVIEW_CHARS],
            )

        payload = self._decode(response)
        text = _extract_text(payload)
        if text is None:
            raise ProviderResponseError(
                f"{self.provider} returned no completion text.",
                provider=self.provider,
                status_code=response.status_code,
            )

        usage = self._usage(payload, model=model, prompt=prompt, text=text)
        logger.debug(
            "%s call model=%s prompt_tokens=%d completion_tokens=%d cost_cents=%d",
            self.provider,
            model,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.cost_cents,
        )
        return CallResult(
            text=text,
            usage=usage,
            meta={
                "provider": self.provider,
                "model": str(payload.get("model") or model),
                "finish_reason": _finish_reason(payload),
                "latency_ms": latency_ms,
            },
        )

    def close(self) -> None:
        self._client.close()

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as error:
            raise ProviderResponseError(
                f"{self.provider} returned a non-JSON body.",
                provider=self.provider,
                status_code=response.status_code,
            ) from error
        if not isinstance(payload, dict):
            raise ProviderResponseError(
                f"{self.provider} returned an unexpected JSON shape.",
                provider=self.provider,
                status_code=response.status_code,
            )
        return payload

    def _usage(self, payload: dict[str, Any], *, model: str, prompt: str, text: str) -> TokenUsage:
        raw = payload.get("usage")
        prompt_tokens = raw.get("prompt_tokens") if isinstance(raw, dict) else None
        completion_tokens = raw.get("completion_tokens") if isinstance(raw, dict) else None
        if isinstance(prompt_tokens, int) and isinstance(completion_tokens, int):
            status = USAGE_REPORTED
        else:
            prompt_tokens = estimate_tokens(prompt)
            completion_tokens = estimate_tokens(text)
            status = USAGE_ESTIMATED
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_cents=self.pricing.cost_cents(
                provider=self.provider,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
            usage_status=status,
        )


def normalize_endpoint(value: str) -> str:
    """Return the base URL ending with `/v1` and no trailing slash."""

    endpoint = value.strip().rstrip("/")
    if endpoint.endswith("/chat/completions"):
        endpoint = endpoint[: -len("/chat/completions")]
    if not endpoint.endswith("/v1"):
        endpoint = f"{endpoint}/v1"
    return endpoint


def _extract_text(payload: dict[str, Any]) -> str | None:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        return None
    return content


def _finish_reason(payload: dict[str, Any]) -> str | None:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        reason = choices[0].get("finish_reason")
        return reason if isinstance(reason, str) else None
    return None
