from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import allure
import pytest

from ai_queue.ledger import ANONYMOUS_USER_ID, UsageLedger, ledger_period
from ai_queue.providers.base import USAGE_ESTIMATED, TokenUsage

pytestmark = [
    allure.epic("Usage & Budgets"),
    allure.feature("Usage Ledger"),
]


def _usage(cost: int, *, prompt: int = 100, completion: int = 50) -> TokenUsage:
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, cost_cents=cost)


def test_ledger_period_is_utc_calendar_month() -> None:
    assert ledger_period(datetime(2026, 3, 31, 23, 30, tzinfo=UTC)) == "2026-03"
    plus_two = timezone(timedelta(hours=2))
    assert ledger_period(datetime(2026, 4, 1, 1, 0, tzinfo=plus_two)) == "2026-03"
    assert ledger_period(datetime(2026, 4, 1, 1, 0)) == "2026-04"


def test_record_and_aggregate_per_user_and_period(ledger: UsageLedger) -> None:
    march = datetime(2026, 3, 10, tzinfo=UTC)
    ledger.record("alice", _usage(5), job_id="j1", provider="openai", model="gpt-4o-mini")
    ledger.record("alice", _usage(7), job_id="j2", provider="qwen", model="qwen-max")
    ledger.record("bob", _usage(11), job_id="j3", provider="qwen", model="qwen-max")
    ledger.record(
        "alice",
        _usage(100),
        job_id="j4",
        provider="qwen",
        model="qwen-max",
        recorded_at=march,
    )

    totals = ledger.aggregate("alice")
    assert totals.cost_cents == 12
    assert totals.entries == 2
    assert totals.prompt_tokens == 200
    assert totals.completion_tokens == 100

    assert ledger.aggregate("alice", "2026-03").cost_cents == 100
    assert ledger.aggregate("carol").entries == 0


def test_record_is_idempotent_per_job(ledger: UsageLedger) -> None:
    assert ledger.record("alice", _usage(5), job_id="j1", provider="echo", model="e") is True
    assert ledger.record("alice", _usage(5), job_id="j1", provider="echo", model="e") is False

    assert ledger.aggregate("alice").cost_cents == 5
    assert ledger.aggregate("alice").entries == 1


def test_anonymous_usage_is_accounted_under_shared_id(ledger: UsageLedger) -> None:
    ledger.record(
        None,
        TokenUsage(prompt_tokens=3, completion_tokens=1, cost_cents=2, usage_status=USAGE_ESTIMATED),
        job_id="anon-1",
        provider="echo",
        model="e",
    )

    assert ledger.aggregate(None).cost_cents == 2
    assert ledger.aggregate(ANONYMOUS_USER_ID).cost_cents == 2


def test_remaining_uses_default_and_custom_ceiling(ledger: UsageLedger) -> None:
    assert ledger.ceiling("alice") == 1_000
    ledger.record("alice", _usage(40), job_id="j1", provider="echo", model="e")
    assert ledger.remaining("alice") == 960

    ledger.set_ceiling("alice", 30)
    assert ledger.ceiling("alice") == 30
    assert ledger.remaining("alice") == -10

    ledger.set_ceiling("alice", 60)
    assert ledger.remaining("alice") == 20


def test_set_ceiling_rejects_negative(ledger: UsageLedger) -> None:
    with pytest.raises(ValueError, match=">= 0"):
        ledger.set_ceiling("alice", -1)


def test_breakdown_groups_by_provider_and_model(ledger: UsageLedger) -> None:
    ledger.record("alice", _usage(5), job_id="j1", provider="openai", model="gpt-4o-mini")
    ledger.record("alice", _usage(7), job_id="j2", provider="qwen", model="qwen-max")
    ledger.record("alice", _usage(9), job_id="j3", provider="qwen", model="qwen-turbo")

    by_provider = ledger.breakdown("alice")
    assert [(group.group_key, group.totals.cost_cents) for group in by_provider] == [
        ("qwen", 16),
        ("openai", 5),
    ]
    assert by_provider[0].totals.entries == 2

    by_model = ledger.breakdown("alice", group_by="model")
    assert [group.group_key for group in by_model] == ["qwen-turbo", "qwen-max", "gpt-4o-mini"]

    with pytest.raises(ValueError, match="group_by"):
        ledger.breakdown("alice", group_by="user")
