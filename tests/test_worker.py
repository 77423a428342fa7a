from __future__ import annotations

import threading
from datetime import timedelta

import allure
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from ai_queue.credentials import CredentialRepository
from ai_queue.errors import ProviderAuthError, ProviderResponseError, TransientProviderError
from ai_queue.ledger import UsageLedger
from ai_queue.providers import EchoAdapter
from ai_queue.providers.base import CallResult, Credential, TestOutcome, TokenUsage
from ai_queue.providers.pricing import PricingTable
from ai_queue.queue.models import FailureClass, JobResult, JobState
from ai_queue.queue.repository import JobQueue
from ai_queue.queue.worker import JobBudget, QueueWorker, WorkerPool
from ai_queue.retry import RetryExecutor
from ai_queue.routing import ProviderRouter
from ai_queue.storage.common import to_db_datetime, utc_now
from ai_queue.storage.database import Database
from ai_queue.storage.sqlmodel_models import JobRow

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker Execution"),
]

_SUMMARY = {"document_id": "doc-1", "text": "Markets rallied after the announcement."}


class _ScriptedAdapter:
    """Replays queued outcomes; each item is an exception to raise or a text to return."""

    provider = "openai"

    def __init__(self, *outcomes: Exception | str, cost_cents: int = 3) -> None:
        self.outcomes = list(outcomes)
        self.cost_cents = cost_cents
        self.prompts: list[str] = []
        self.lock = threading.Lock()

    def test(self, credential: Credential, model: str | None = None) -> TestOutcome:
        return TestOutcome(ok=True)

    def infer(
        self,
        credential: Credential,
        model: str,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CallResult:
        with self.lock:
            self.prompts.append(prompt)
            outcome = self.outcomes.pop(0) if self.outcomes else "done"
        if isinstance(outcome, Exception):
            raise outcome
        return CallResult(
            text=outcome,
            usage=TokenUsage(prompt_tokens=40, completion_tokens=8, cost_cents=self.cost_cents),
            meta={"provider": self.provider, "model": model},
        )


def _openai_credential(credentials: CredentialRepository) -> Credential:
    return credentials.add(Credential(provider="openai", api_key="sk-test-000001", model="gpt-4o"))


def _worker(  # noqa: PLR0913
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
    adapter,
    *,
    worker_id: str = "worker-test",
    retry_attempts: int = 3,
    stop_event: threading.Event | None = None,
    job_budget: JobBudget | None = None,
) -> QueueWorker:
    return QueueWorker(
        queue=queue,
        router=ProviderRouter(
            credentials=credentials,
            ledger=ledger,
            adapters={adapter.provider: adapter},
            pricing=PricingTable(),
        ),
        ledger=ledger,
        worker_id=worker_id,
        executor=RetryExecutor(sleep=lambda _: None),
        poll_interval_seconds=0.0,
        retry_attempts=retry_attempts,
        retry_initial_delay_seconds=0.0,
        stop_event=stop_event,
        job_budget=job_budget,
    )


def _expire_lease(database: Database, job_id: str) -> None:
    with Session(database.engine) as session:
        session.exec(
            sa_update(JobRow)
            .where(col(JobRow.job_id) == job_id)
            .values(lease_expires_at=to_db_datetime(utc_now() - timedelta(seconds=1))),
        )
        session.commit()


def test_worker_completes_job_with_echo_provider(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
    echo_credential: Credential,
) -> None:
    job = queue.enqueue("summarize", _SUMMARY, user_id="alice")
    worker = _worker(queue, ledger, credentials, EchoAdapter(pricing=PricingTable()))

    summary = worker.run_once()

    assert summary.processed == 1
    assert summary.completed == 1
    details = queue.get_job_details(job.job_id)
    assert details.job.state == JobState.COMPLETED
    assert details.job.result.text.startswith("[echo:echo-1] Summarize the following document")
    assert details.job.result.meta["credential_scope"] == "system"
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "leased",
        "result_attached",
        "completed",
    ]
    assert ledger.aggregate("alice").entries == 1


def test_worker_retries_transient_errors_within_lease(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    adapter = _ScriptedAdapter(
        TransientProviderError("overloaded", provider="openai", status_code=503),
        TransientProviderError("overloaded", provider="openai", status_code=503),
        "third time lucky",
    )
    job = queue.enqueue("summarize", _SUMMARY, user_id="alice")

    summary = _worker(queue, ledger, credentials, adapter, retry_attempts=3).run_once()

    assert summary.completed == 1
    assert len(adapter.prompts) == 3
    details = queue.get_job_details(job.job_id)
    assert details.job.attempts == 1
    assert details.job.result.text == "third time lucky"
    assert [event.event_type for event in details.events].count("call_retry") == 2
    assert ledger.aggregate("alice").cost_cents == 3


def test_worker_requeues_when_in_lease_retries_run_out(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    adapter = _ScriptedAdapter(
        TransientProviderError("down", provider="openai"),
        TransientProviderError("down", provider="openai"),
    )
    job = queue.enqueue("summarize", _SUMMARY)

    summary = _worker(queue, ledger, credentials, adapter, retry_attempts=2).run_once()

    assert summary.retried == 1
    requeued = queue.get_job(job.job_id)
    assert requeued.state == JobState.QUEUED
    assert requeued.failure_class == FailureClass.TRANSIENT

    second = _worker(queue, ledger, credentials, adapter).run_once()
    assert second.completed == 1
    assert queue.get_job(job.job_id).attempts == 2


def test_worker_fails_auth_errors_without_retry(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    adapter = _ScriptedAdapter(ProviderAuthError("invalid key", provider="openai", status_code=401))
    job = queue.enqueue("summarize", _SUMMARY, max_attempts=5)

    summary = _worker(queue, ledger, credentials, adapter).run_once()

    assert summary.failed == 1
    assert len(adapter.prompts) == 1
    failed = queue.get_job(job.job_id)
    assert failed.state == JobState.FAILED
    assert failed.failure_class == FailureClass.AUTH
    assert ledger.aggregate(None).entries == 0


def test_worker_fails_malformed_responses_after_one_retry(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    adapter = _ScriptedAdapter(
        *[ProviderResponseError("empty choices", provider="openai") for _ in range(20)],
    )
    job = queue.enqueue("summarize", _SUMMARY)

    summary = _worker(queue, ledger, credentials, adapter).run_loop(handle_signals=False)

    assert summary.failed == 1
    assert summary.retried == 0
    assert len(adapter.prompts) == 2
    failed = queue.get_job(job.job_id)
    assert failed.state == JobState.FAILED
    assert failed.attempts == 1
    assert failed.failure_class == FailureClass.MALFORMED_RESPONSE


def test_worker_fails_job_over_budget_without_calling_provider(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    adapter = _ScriptedAdapter()
    ledger.set_ceiling("alice", 5)
    job = queue.enqueue("summarize", _SUMMARY, user_id="alice", estimated_max_cost_cents=6)

    summary = _worker(queue, ledger, credentials, adapter).run_once()

    assert summary.failed == 1
    assert adapter.prompts == []
    assert queue.get_job(job.job_id).failure_class == FailureClass.BUDGET_EXCEEDED


def test_worker_fails_job_without_eligible_provider(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    job = queue.enqueue("evaluate", {"document_id": "d", "text": "t"})

    summary = _worker(queue, ledger, credentials, _ScriptedAdapter()).run_once()

    assert summary.failed == 1
    assert queue.get_job(job.job_id).failure_class == FailureClass.NO_ELIGIBLE_PROVIDER


def test_worker_marks_unexpected_errors_failed(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    job = queue.enqueue("summarize", _SUMMARY)

    summary = _worker(queue, ledger, credentials, _ScriptedAdapter(RuntimeError("bug"))).run_once()

    assert summary.failed == 1
    failed = queue.get_job(job.job_id)
    assert failed.failure_class == FailureClass.UNEXPECTED
    assert "RuntimeError: bug" in failed.last_error


def test_redelivered_job_with_result_skips_provider_and_bills_once(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
    database: Database,
) -> None:
    _openai_credential(credentials)
    job = queue.enqueue("summarize", _SUMMARY, user_id="alice")
    leased = queue.lease("crashed-worker")
    result = JobResult(
        text="already done",
        provider="openai",
        model="gpt-4o",
        prompt_tokens=40,
        completion_tokens=8,
        cost_cents=7,
        usage_status="reported",
    )
    assert queue.attach_result(job.job_id, result, lease_token=leased.lease_token)
    assert ledger.record(
        "alice",
        TokenUsage(prompt_tokens=40, completion_tokens=8, cost_cents=7),
        job_id=job.job_id,
        provider="openai",
        model="gpt-4o",
    )
    _expire_lease(database, job.job_id)
    adapter = _ScriptedAdapter(AssertionError("provider must not be called"))

    summary = _worker(queue, ledger, credentials, adapter).run_once()

    assert summary.completed == 1
    assert adapter.prompts == []
    completed = queue.get_job(job.job_id)
    assert completed.state == JobState.COMPLETED
    assert completed.result.text == "already done"
    totals = ledger.aggregate("alice")
    assert totals.entries == 1
    assert totals.cost_cents == 7


def test_crash_after_result_on_last_attempt_still_completes(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
    database: Database,
) -> None:
    _openai_credential(credentials)
    job = queue.enqueue("summarize", _SUMMARY, user_id="alice", max_attempts=1)
    leased = queue.lease("crashed-worker")
    result = JobResult(
        text="finished before crash",
        provider="openai",
        model="gpt-4o",
        prompt_tokens=40,
        completion_tokens=8,
        cost_cents=4,
        usage_status="reported",
    )
    assert queue.attach_result(job.job_id, result, lease_token=leased.lease_token)
    assert ledger.record(
        "alice",
        TokenUsage(prompt_tokens=40, completion_tokens=8, cost_cents=4),
        job_id=job.job_id,
        provider="openai",
        model="gpt-4o",
    )
    _expire_lease(database, job.job_id)
    adapter = _ScriptedAdapter(AssertionError("provider must not be called"))

    summary = _worker(queue, ledger, credentials, adapter).run_once()

    assert summary.completed == 1
    assert adapter.prompts == []
    completed = queue.get_job(job.job_id)
    assert completed.state == JobState.COMPLETED
    assert completed.attempts == 1
    assert ledger.aggregate("alice").entries == 1


def test_worker_reports_corrupt_job_as_failed(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
    database: Database,
) -> None:
    job = queue.enqueue("summarize", _SUMMARY)
    with Session(database.engine) as session:
        session.exec(
            sa_update(JobRow).where(col(JobRow.job_id) == job.job_id).values(kind="translate"),
        )
        session.commit()

    summary = _worker(queue, ledger, credentials, _ScriptedAdapter()).run_once()

    assert summary.processed == 1
    assert summary.failed == 1
    with Session(database.engine) as session:
        row = session.get(JobRow, job.job_id)
        assert row.state == JobState.FAILED.value
        assert row.failure_class == FailureClass.QUEUE_INTEGRITY.value


def test_run_loop_drains_queue_and_honors_max_jobs(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    for _ in range(4):
        queue.enqueue("summarize", _SUMMARY)
    worker = _worker(queue, ledger, credentials, _ScriptedAdapter())

    limited = worker.run_loop(max_jobs=3, handle_signals=False)
    assert limited.processed == 3
    assert limited.completed == 3

    rest = worker.run_loop(handle_signals=False)
    assert rest.processed == 1
    assert rest.idle_polls == 1
    assert queue.count_by_state()[JobState.COMPLETED] == 4


def test_stopped_worker_leases_nothing(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    job = queue.enqueue("summarize", _SUMMARY)
    worker = _worker(queue, ledger, credentials, _ScriptedAdapter())
    worker.stop()

    summary = worker.run_loop(handle_signals=False)

    assert summary.processed == 0
    assert queue.get_job(job.job_id).state == JobState.QUEUED


def test_job_budget_is_shared_and_released_on_idle() -> None:
    budget = JobBudget(2)
    assert budget.acquire() is True
    assert budget.acquire() is True
    assert budget.exhausted is True
    assert budget.acquire() is False
    budget.release()
    assert budget.exhausted is False


def test_worker_pool_processes_each_job_exactly_once(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    job_ids = [queue.enqueue("summarize", _SUMMARY, user_id="alice").job_id for _ in range(9)]
    adapter = _ScriptedAdapter(cost_cents=1)

    pool = WorkerPool(
        lambda worker_id, stop_event, budget: _worker(
            queue,
            ledger,
            credentials,
            adapter,
            worker_id=worker_id,
            stop_event=stop_event,
            job_budget=budget,
        ),
        worker_id="pool",
    )
    summary = pool.run(3)

    assert summary.processed == 9
    assert summary.completed == 9
    assert len(adapter.prompts) == 9
    assert all(queue.get_job(job_id).state == JobState.COMPLETED for job_id in job_ids)
    assert {queue.get_job(job_id).worker_id for job_id in job_ids} <= {
        "pool-1",
        "pool-2",
        "pool-3",
    }
    totals = ledger.aggregate("alice")
    assert totals.entries == 9
    assert totals.cost_cents == 9


def test_worker_pool_respects_shared_max_jobs(
    queue: JobQueue,
    ledger: UsageLedger,
    credentials: CredentialRepository,
) -> None:
    _openai_credential(credentials)
    for _ in range(6):
        queue.enqueue("summarize", _SUMMARY)
    adapter = _ScriptedAdapter()

    pool = WorkerPool(
        lambda worker_id, stop_event, budget: _worker(
            queue,
            ledger,
            credentials,
            adapter,
            worker_id=worker_id,
            stop_event=stop_event,
            job_budget=budget,
        ),
        worker_id="pool",
    )
    summary = pool.run(2, max_jobs=4)

    assert summary.processed == 4
    assert queue.count_by_state()[JobState.QUEUED] == 2
