"""Deterministic offline backend for smoke runs and tests."""

from __future__ import annotations

from ai_queue.errors import ValidationError
from ai_queue.providers.base import (
    USAGE_ESTIMATED,
    CallResult,
    Credential,
    TestOutcome,
    TokenUsage,
    estimate_tokens,
    validate_credential,
)
from ai_queue.providers.pricing import PricingTable

_ECHO_PREVIEW_CHARS = 200


class EchoAdapter:
    """Returns the head of the prompt without any network I/O."""

    provider = "echo"

    def __init__(self, *, pricing: PricingTable | None = None) -> None:
        self.pricing = pricing or PricingTable.from_env()

    def test(self, credential: Credential, model: str | None = None) -> TestOutcome:
        try:
            validate_credential(credential, provider=self.provider)
        except ValidationError as error:
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
        text = f"[echo:{model}] {prompt.strip()[:_ECHO_PREVIEW_CHARS]}"
        prompt_tokens = estimate_tokens(prompt)
        completion_tokens = estimate_tokens(text)
        return CallResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost_cents=self.pricing.cost_cents(
                    provider=self.provider,
                    model=model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                ),
                usage_status=USAGE_ESTIMATED,
            ),
            meta={"provider": self.provider, "model": model},
        )
