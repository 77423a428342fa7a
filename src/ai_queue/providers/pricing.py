"""Token pricing tables and cost computation in integer cents."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in cents per 1K tokens."""

    input_per_1k: float
    output_per_1k: float

    @property
    def blended_per_1k(self) -> float:
        return (self.input_per_1k + self.output_per_1k) / 2


DEFAULT_PRICING: dict[tuple[str, str], ModelPricing] = {
    ("openai", "gpt-4o-mini"): ModelPricing(input_per_1k=15, output_per_1k=60),
    ("openai", "gpt-4o"): ModelPricing(input_per_1k=250, output_per_1k=1000),
    ("siliconflow", "*"): ModelPricing(input_per_1k=10, output_per_1k=40),
    ("qwen", "*"): ModelPricing(input_per_1k=8, output_per_1k=24),
    ("echo", "*"): ModelPricing(input_per_1k=0, output_per_1k=0),
    ("*", "*"): ModelPricing(input_per_1k=20, output_per_1k=80),
}


class PricingTable:
    """Resolves pricing for provider/model pairs with wildcard fallbacks."""

    def __init__(self, entries: dict[tuple[str, str], ModelPricing] | None = None) -> None:
        self._entries = dict(DEFAULT_PRICING)
        if entries:
            self._entries.update(entries)

    @classmethod
    def from_env(cls) -> PricingTable:
        """Defaults overlaid with the `AI_QUEUE_PRICING` mapping."""

        return cls(parse_pricing_mapping(os.getenv("AI_QUEUE_PRICING", "")))

    def lookup(self, *, provider: str, model: str) -> ModelPricing:
        provider_key = provider.strip().lower()
        for key in ((provider_key, model.strip()), (provider_key, "*"), ("*", "*")):
            pricing = self._entries.get(key)
            if pricing is not None:
                return pricing
        return DEFAULT_PRICING[("*", "*")]

    def cost_cents(
        self,
        *,
        provider: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> int:
        """Round up to whole cents so that no usage is free by truncation."""

        pricing = self.lookup(provider=provider, model=model)
        raw = (prompt_tokens / 1000) * pricing.input_per_1k + (
            completion_tokens / 1000
        ) * pricing.output_per_1k
        return max(0, math.ceil(round(raw, 6)))


def parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `AI_QUEUE_PRICING` mapping.

    Format:
    - `provider:model:input_per_1k:output_per_1k` in cents
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)

    Malformed and negative entries are skipped.
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1k = float(input_price)
            output_per_1k = float(output_price)
        except ValueError:
            continue
        if input_per_1k < 0 or output_per_1k < 0:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1k=input_per_1k,
            output_per_1k=output_per_1k,
        )
    return parsed
