from __future__ import annotations

import allure
import pytest

from ai_queue.credentials import CredentialRepository
from ai_queue.errors import InvalidPayloadError
from ai_queue.ledger import UsageLedger
from ai_queue.providers import EchoAdapter
from ai_queue.providers.base import Credential, TestOutcome, TokenUsage
from ai_queue.providers.pricing import PricingTable
from ai_queue.queue.models import JobState
from ai_queue.queue.repository import JobQueue
from ai_queue.queue.services import JobService, RegisterCredential, SubmitJob

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Service API"),
]


class _RejectingAdapter:
    provider = "openai"

    def __init__(self) -> None:
        self.tested: list[tuple[str, str | None]] = []

    def test(self, credential: Credential, model: str | None = None) -> TestOutcome:
        self.tested.append((credential.api_key, model))
        return TestOutcome(ok=False, error="HTTP 401 access_or_auth")

    def infer(self, *args, **kwargs):  # noqa: ANN002, ANN003, ANN201
        raise AssertionError("not used")


@pytest.fixture()
def service(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> JobService:
    return JobService(
        queue=queue,
        ledger=ledger,
        credentials=credentials,
        adapters={"echo": EchoAdapter(pricing=PricingTable()), "openai": _RejectingAdapter()},
    )


def test_submit_and_status(service: JobService) -> None:
    job = service.submit(
        SubmitJob(
            kind="disagreement_analysis",
            payload={"topic_id": "t1", "statements": [{"text": "a"}, {"text": "b"}]},
            user_id="alice",
            priority=7,
        ),
    )

    details = service.job_status(job.job_id)
    assert details is not None
    assert details.job.state == JobState.QUEUED
    assert details.job.priority == 7
    assert details.events[0].event_type == "enqueued"
    assert service.job_status("missing") is None

    with pytest.raises(InvalidPayloadError):
        service.submit(SubmitJob(kind="evaluate", payload={"text": "no id"}))


def test_register_credential_stores_only_after_successful_test(
    service: JobService,
    credentials: CredentialRepository,
) -> None:
    stored, outcome = service.register_credential(
        RegisterCredential(provider="Echo", api_key=" echo-key-0001 ", model="echo-1", user_id="alice"),
    )
    assert outcome.ok is True
    assert stored is not None
    assert stored.provider == "echo"
    assert stored.api_key == "echo-key-0001"
    assert [item.credential_id for item in credentials.list_credentials(user_id="alice")] == [
        stored.credential_id,
    ]

    rejected, outcome = service.register_credential(
        RegisterCredential(provider="openai", api_key="sk-bad-000001", model="gpt-4o"),
    )
    assert rejected is None
    assert outcome.ok is False
    assert credentials.list_credentials() == []


def test_register_credential_can_skip_probe(
    service: JobService,
    credentials: CredentialRepository,
) -> None:
    stored, outcome = service.register_credential(
        RegisterCredential(
            provider="openai",
            api_key="sk-offline-0001",
            model="gpt-4o",
            is_default=True,
            task_kinds=("summarize",),
            skip_test=True,
        ),
    )

    assert outcome.ok is True
    assert stored is not None
    assert stored.is_default is True
    assert credentials.list_for_user(None, task="evaluate") == []


def test_test_credential_reports_shape_errors_as_failed_outcome(service: JobService) -> None:
    assert service.test_credential("anthropic", "key-000001", "m").ok is False
    assert "API key" in (service.test_credential("echo", "  ", "m").error or "")
    assert service.test_credential("echo", "key", "m", "ftp://bad").ok is False
    assert service.test_credential("echo", "key-000001", "echo-1").ok is True


def test_usage_report_combines_totals_budget_and_breakdown(
    service: JobService,
    ledger: UsageLedger,
) -> None:
    ledger.set_ceiling("alice", 100)
    ledger.record(
        "alice",
        TokenUsage(prompt_tokens=10, completion_tokens=5, cost_cents=30),
        job_id="j1",
        provider="openai",
        model="gpt-4o",
    )
    ledger.record(
        "alice",
        TokenUsage(prompt_tokens=10, completion_tokens=5, cost_cents=12),
        job_id="j2",
        provider="qwen",
        model="qwen-max",
    )

    report = service.usage("alice", group_by="model")

    assert report.user_id == "alice"
    assert report.totals.cost_cents == 42
    assert report.ceiling_cents == 100
    assert report.remaining_cents == 58
    assert [group.group_key for group in report.groups] == ["gpt-4o", "qwen-max"]
