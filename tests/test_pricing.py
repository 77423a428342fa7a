from __future__ import annotations

import allure

from ai_queue.providers.pricing import ModelPricing, PricingTable, parse_pricing_mapping

pytestmark = [
    allure.epic("Usage & Budgets"),
    allure.feature("Pricing"),
]


def test_cost_cents_uses_input_and_output_rates() -> None:
    table = PricingTable()
    cost = table.cost_cents(
        provider="openai",
        model="gpt-4o-mini",
        prompt_tokens=1_000,
        completion_tokens=500,
    )
    assert cost == 45


def test_cost_cents_rounds_fractions_up() -> None:
    table = PricingTable({("openai", "gpt-test"): ModelPricing(input_per_1k=1.5, output_per_1k=0)})
    assert table.cost_cents(
        provider="openai",
        model="gpt-test",
        prompt_tokens=100,
        completion_tokens=0,
    ) == 1
    assert table.cost_cents(
        provider="openai",
        model="gpt-test",
        prompt_tokens=0,
        completion_tokens=0,
    ) == 0


def test_lookup_applies_provider_then_global_wildcards() -> None:
    table = PricingTable()
    assert table.lookup(provider="qwen", model="qwen-max") == ModelPricing(8, 24)
    assert table.lookup(provider="unknown", model="m") == ModelPricing(20, 80)
    assert table.lookup(provider="echo", model="echo-1").blended_per_1k == 0


def test_from_env_overlays_defaults(monkeypatch) -> None:
    monkeypatch.setenv("AI_QUEUE_PRICING", "openai:gpt-test:1.0:3.0,siliconflow:*:2:2")
    table = PricingTable.from_env()

    assert table.lookup(provider="openai", model="gpt-test") == ModelPricing(1.0, 3.0)
    assert table.lookup(provider="siliconflow", model="any") == ModelPricing(2.0, 2.0)
    assert table.lookup(provider="openai", model="gpt-4o-mini") == ModelPricing(15, 60)


def test_parse_pricing_mapping_skips_malformed_and_negative_rows() -> None:
    parsed = parse_pricing_mapping(
        "openai:gpt-a:1:2, broken, qwen:q:-1:2, qwen:q2:x:1, ,OpenAI:gpt-b:0.5:0.5",
    )
    assert parsed == {
        ("openai", "gpt-a"): ModelPricing(1.0, 2.0),
        ("openai", "gpt-b"): ModelPricing(0.5, 0.5),
    }
