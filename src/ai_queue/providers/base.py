"""Adapter interface shared by all AI backends."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Protocol

from ai_queue.errors import ValidationError

USAGE_REPORTED = "reported"
USAGE_ESTIMATED = "estimated"

CREDENTIAL_TEST_PROMPT = "Reply with OK"
CREDENTIAL_TEST_MAX_TOKENS = 10


@dataclass(slots=True)
class Credential:
    """API key and model binding for one provider."""

    provider: str
    api_key: str
    model: str
    endpoint: str | None = None
    credential_id: str | None = None
    user_id: str | None = None
    is_default: bool = False
    task_kinds: tuple[str, ...] = ()

    def supports(self, task: str) -> bool:
        """Empty task_kinds means the credential serves every task."""

        return not self.task_kinds or task in self.task_kinds

    @property
    def masked_key(self) -> str:
        return mask_secret(self.api_key)


@dataclass(slots=True)
class TokenUsage:
    """Normalized token usage and cost of one inference call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_cents: int = 0
    usage_status: str = USAGE_REPORTED

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, object]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_cents": self.cost_cents,
            "usage_status": self.usage_status,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TokenUsage:
        return cls(
            prompt_tokens=int(raw.get("prompt_tokens", 0)),
            completion_tokens=int(raw.get("completion_tokens", 0)),
            cost_cents=int(raw.get("cost_cents", 0)),
            usage_status=str(raw.get("usage_status", USAGE_REPORTED)),
        )


@dataclass(slots=True)
class CallResult:
    """Text and usage returned by one successful inference call."""

    text: str
    usage: TokenUsage
    meta: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class TestOutcome:
    """Result of a credential check. `error` is set only when `ok` is false."""

    __test__ = False

    ok: bool
    error: str | None = None


class ProviderAdapter(Protocol):
    """Protocol implemented by backend adapters."""

    provider: str

    def test(self, credential: Credential, model: str | None = None) -> TestOutcome:
        """Issue a tiny request to check that the credential works."""

    def infer(
        self,
        credential: Credential,
        model: str,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CallResult:
        """Run one inference call and return normalized text and usage."""


def mask_secret(value: str) -> str:
    """Keep only enough of a key to tell credentials apart."""

    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:3]}...{value[-4:]}"


def validate_credential(credential: Credential, *, provider: str) -> None:
    """Check credential shape before any network call.

    A credential bound to another provider is a programming error and raises
    ValueError; missing fields raise ValidationError.
    """

    if credential.provider != provider:
        raise ValueError(
            f"Credential for provider={credential.provider!r} passed to {provider!r} adapter.",
        )
    if not credential.api_key.strip():
        raise ValidationError(f"Empty API key for provider={provider!r}.")
    if not credential.model.strip():
        raise ValidationError(f"Empty model for provider={provider!r}.")


def estimate_tokens(text: str) -> int:
    """Rough token count for backends that report no usage."""

    return math.ceil(len(text) / 3)
