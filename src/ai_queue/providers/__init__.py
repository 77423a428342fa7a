"""Uniform adapter contract over heterogeneous AI inference backends."""

from __future__ import annotations

from ai_queue.config import Settings
from ai_queue.providers.base import (
    CallResult,
    Credential,
    ProviderAdapter,
    TestOutcome,
    TokenUsage,
    mask_secret,
)
from ai_queue.providers.echo import EchoAdapter
from ai_queue.providers.openai_compatible import DEFAULT_ENDPOINTS, OpenAICompatibleAdapter

__all__ = [
    "CallResult",
    "Credential",
    "EchoAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "TestOutcome",
    "TokenUsage",
    "build_adapters",
    "mask_secret",
]


def build_adapters(settings: Settings) -> dict[str, ProviderAdapter]:
    """Build the closed registry of adapters keyed by provider name."""

    adapters: dict[str, ProviderAdapter] = {"echo": EchoAdapter()}
    for provider, default_endpoint in DEFAULT_ENDPOINTS.items():
        adapters[provider] = OpenAICompatibleAdapter(
            provider=provider,
            default_endpoint=settings.providers.endpoints.get(provider, default_endpoint),
            timeout_seconds=settings.providers.request_timeout_seconds,
        )
    return adapters
