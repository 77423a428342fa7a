"""Controllers for job queue, worker, usage and credential CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ai_queue.config import Settings
from ai_queue.credentials import CredentialRepository
from ai_queue.errors import ValidationError
from ai_queue.ledger import UsageLedger
from ai_queue.providers import build_adapters
from ai_queue.providers.base import ProviderAdapter
from ai_queue.providers.pricing import PricingTable
from ai_queue.queue.models import JobState, RemoveOutcome
from ai_queue.queue.repository import JobQueue
from ai_queue.queue.services import JobService, RegisterCredential, SubmitJob
from ai_queue.queue.worker import JobBudget, QueueWorker, WorkerPool, WorkerRunSummary
from ai_queue.retry import RetryExecutor
from ai_queue.routing import ProviderRouter
from ai_queue.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    kind: str
    payload_json: str
    user_id: str | None
    priority: int
    max_attempts: int | None
    estimated_max_cost_cents: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    state: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job operations (inspect, remove)."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class QueueCommand:
    """CLI input for queue-wide operations (failed, purge-failed, stats)."""

    db_path: Path | None
    limit: int = 100


@dataclass(slots=True)
class DeadLetterCommand:
    """CLI input for dead-lettering one or all failed jobs."""

    db_path: Path | None
    job_id: str | None
    all_failed: bool


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    concurrency: int | None
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class UsageShowCommand:
    """CLI input for usage report."""

    db_path: Path | None
    user_id: str | None
    period: str | None
    group_by: str = "provider"


@dataclass(slots=True)
class SetBudgetCommand:
    """CLI input for monthly ceiling update."""

    db_path: Path | None
    user_id: str | None
    cents: int


@dataclass(slots=True)
class CredentialTestCommand:
    """CLI input for credential test."""

    db_path: Path | None
    provider: str
    api_key: str
    model: str
    endpoint: str | None


@dataclass(slots=True)
class CredentialAddCommand:
    """CLI input for credential registration."""

    db_path: Path | None
    provider: str
    api_key: str
    model: str
    endpoint: str | None
    user_id: str | None
    is_default: bool
    task_kinds: tuple[str, ...]
    skip_test: bool


@dataclass(slots=True)
class CredentialListCommand:
    """CLI input for credential listing."""

    db_path: Path | None
    user_id: str | None


@dataclass(slots=True)
class CredentialRemoveCommand:
    """CLI input for credential removal."""

    db_path: Path | None
    credential_id: str


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus overall success."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class Runtime:
    """Wired components for one CLI invocation."""

    settings: Settings
    database: Database
    queue: JobQueue
    ledger: UsageLedger
    credentials: CredentialRepository
    adapters: dict[str, ProviderAdapter]
    router: ProviderRouter
    service: JobService


class QueueCliController:
    """Coordinates queue, worker, usage and credential CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        try:
            payload = json.loads(command.payload_json)
        except ValueError as error:
            raise ValidationError(f"Payload is not valid JSON: {error}") from error

        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            job = runtime.service.submit(
                SubmitJob(
                    kind=command.kind,
                    payload=payload,
                    user_id=command.user_id,
                    priority=command.priority,
                    max_attempts=command.max_attempts,
                    estimated_max_cost_cents=command.estimated_max_cost_cents,
                ),
            )
        return [
            f"Job submitted: job_id={job.job_id} kind={job.kind.value} state={job.state.value}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        state = _parse_state(command.state)
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            jobs = runtime.queue.list_jobs(state=state, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} kind={job.kind.value} state={job.state.value} "
                f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
                f"user={job.user_id or '-'} run_after={job.run_after.isoformat()}",
            )
        return lines

    def inspect(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.service.job_status(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        call_retries = sum(event.event_type == "call_retry" for event in details.events)
        lines = [
            f"Job: {job.job_id}",
            f"Kind: {job.kind.value}",
            f"State: {job.state.value}",
            f"User: {job.user_id or '-'}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            # Each queue attempt may make several provider calls inside its lease.
            f"Provider call ceiling: {job.max_attempts * settings.retry.attempts} "
            f"({settings.retry.attempts} per attempt)",
            f"In-lease retries: {call_retries}",
            f"Estimated max cost: {job.estimated_max_cost_cents} cents",
            f"Cancel requested: {'yes' if job.cancel_requested else 'no'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.last_error or '-'}",
        ]
        if job.result is not None:
            lines.extend(
                [
                    f"Result provider: {job.result.provider} model={job.result.model}",
                    f"Result usage: prompt_tokens={job.result.prompt_tokens} "
                    f"completion_tokens={job.result.completion_tokens} "
                    f"cost_cents={job.result.cost_cents} ({job.result.usage_status})",
                    f"Result: {job.result.text}",
                ],
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.state_from.value if event.state_from else '-'} -> "
                f"{event.state_to.value if event.state_to else '-'}",
            )
        return lines

    def failed(self, command: QueueCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            jobs = runtime.queue.list_failed(limit=command.limit)
        lines = [f"Failed jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} kind={job.kind.value} "
                f"failure_class={job.failure_class.value if job.failure_class else '-'} "
                f"attempts={job.attempts}/{job.max_attempts} error={job.last_error or '-'}",
            )
        return lines

    def remove(self, command: JobCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            outcome = runtime.queue.remove(command.job_id)
        if outcome is RemoveOutcome.REMOVED:
            return [f"Job removed: {command.job_id}"]
        if outcome is RemoveOutcome.CANCEL_REQUESTED:
            return [f"Job is active; cancellation requested: {command.job_id}"]
        return [f"Job not found: {command.job_id}"]

    def purge_failed(self, command: QueueCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            purged = runtime.queue.purge_failed()
        return [f"Failed jobs purged: {purged}"]

    def dead_letter(self, command: DeadLetterCommand) -> list[str]:
        if command.all_failed == (command.job_id is not None):
            raise ValueError("Pass exactly one of --job-id or --all-failed.")
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            if command.all_failed:
                moved = runtime.queue.dead_letter_failed()
                return [f"Jobs dead-lettered: {moved}"]
            assert command.job_id is not None
            moved_one = runtime.queue.dead_letter(command.job_id)
        if moved_one:
            return [f"Job dead-lettered: {command.job_id}"]
        return [f"Job not in failed state, nothing to do: {command.job_id}"]

    def stats(self, command: QueueCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            counts = runtime.queue.count_by_state()
        total = sum(counts.values())
        return [
            f"Jobs total: {total}",
            *(f"  {state.value}: {counts[state]}" for state in JobState),
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        concurrency = command.concurrency or settings.queue.concurrency
        logger.info(
            "Starting worker %s: once=%s concurrency=%d max_jobs=%s",
            settings.queue.worker_id,
            command.once,
            concurrency,
            command.max_jobs,
        )
        with _runtime(settings) as runtime:
            executor = RetryExecutor()

            def _worker(
                worker_id: str,
                stop_event: threading.Event | None = None,
                budget: JobBudget | None = None,
            ) -> QueueWorker:
                return QueueWorker(
                    queue=runtime.queue,
                    router=runtime.router,
                    ledger=runtime.ledger,
                    worker_id=worker_id,
                    executor=executor,
                    prompt_settings=settings.prompts,
                    poll_interval_seconds=settings.queue.poll_interval_seconds,
                    retry_attempts=settings.retry.attempts,
                    retry_initial_delay_seconds=settings.retry.initial_delay_seconds,
                    stop_event=stop_event,
                    job_budget=budget,
                )

            if command.once:
                summary = _worker(settings.queue.worker_id).run_once()
            elif concurrency == 1:
                summary = _worker(settings.queue.worker_id).run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                summary = WorkerPool(
                    _worker,
                    worker_id=settings.queue.worker_id,
                    graceful_shutdown_seconds=settings.queue.graceful_shutdown_seconds,
                ).run(
                    concurrency,
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
        return [_render_summary(summary)]

    def usage(self, command: UsageShowCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            report = runtime.service.usage(
                command.user_id,
                command.period,
                group_by=command.group_by,
            )
        lines = [
            f"Usage for {report.user_id} in {report.period}:",
            f"  entries={report.totals.entries} prompt_tokens={report.totals.prompt_tokens} "
            f"completion_tokens={report.totals.completion_tokens} "
            f"cost_cents={report.totals.cost_cents}",
            f"  ceiling_cents={report.ceiling_cents} remaining_cents={report.remaining_cents}",
        ]
        if report.groups:
            lines.append(f"By {command.group_by}:")
        for group in report.groups:
            lines.append(
                f"  {group.group_key} entries={group.totals.entries} "
                f"tokens={group.totals.prompt_tokens + group.totals.completion_tokens} "
                f"cost_cents={group.totals.cost_cents}",
            )
        return lines

    def set_budget(self, command: SetBudgetCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.ledger.set_ceiling(command.user_id, command.cents)
        return [f"Monthly ceiling set: user={command.user_id or 'anonymous'} cents={command.cents}"]

    def test_credential(self, command: CredentialTestCommand) -> CommandResult:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            outcome = runtime.service.test_credential(
                command.provider,
                command.api_key,
                command.model,
                command.endpoint,
            )
        if outcome.ok:
            return CommandResult(lines=[f"Credential OK: provider={command.provider}"])
        return CommandResult(
            lines=[f"Credential test failed: provider={command.provider} error={outcome.error}"],
            success=False,
        )

    def add_credential(self, command: CredentialAddCommand) -> CommandResult:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            credential, outcome = runtime.service.register_credential(
                RegisterCredential(
                    provider=command.provider,
                    api_key=command.api_key,
                    model=command.model,
                    endpoint=command.endpoint,
                    user_id=command.user_id,
                    is_default=command.is_default,
                    task_kinds=command.task_kinds,
                    skip_test=command.skip_test,
                ),
            )
        if credential is None:
            return CommandResult(
                lines=[f"Credential not stored; test failed: {outcome.error}"],
                success=False,
            )
        return CommandResult(
            lines=[
                f"Credential stored: credential_id={credential.credential_id} "
                f"provider={credential.provider} model={credential.model} "
                f"key={credential.masked_key}",
            ],
        )

    def list_credentials(self, command: CredentialListCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            credentials = runtime.credentials.list_credentials(user_id=command.user_id)
        lines = [f"Credentials: {len(credentials)}"]
        for credential in credentials:
            lines.append(
                f"  {credential.credential_id} provider={credential.provider} "
                f"model={credential.model} key={credential.masked_key} "
                f"default={'yes' if credential.is_default else 'no'} "
                f"tasks={','.join(credential.task_kinds) or '*'} "
                f"endpoint={credential.endpoint or '-'}",
            )
        return lines

    def remove_credential(self, command: CredentialRemoveCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            removed = runtime.credentials.remove(command.credential_id)
        if removed:
            return [f"Credential removed: {command.credential_id}"]
        return [f"Credential not found: {command.credential_id}"]


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    settings.validate()
    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    database.init_schema()
    pricing = PricingTable.from_env()
    queue = JobQueue(
        database,
        lease_timeout_seconds=settings.queue.lease_timeout_seconds,
        default_max_attempts=settings.queue.default_max_attempts,
        max_active_jobs=settings.queue.max_active_jobs,
        default_estimated_cost_cents=settings.budget.default_estimated_cost_cents,
        retry_initial_delay_seconds=settings.retry.initial_delay_seconds,
    )
    ledger = UsageLedger(
        database,
        default_ceiling_cents=settings.budget.default_monthly_ceiling_cents,
    )
    credentials = CredentialRepository(database)
    adapters = build_adapters(settings)
    router = ProviderRouter(
        credentials=credentials,
        ledger=ledger,
        adapters=adapters,
        pricing=pricing,
        job_cost_limit_cents=settings.budget.job_cost_limit_cents,
    )
    try:
        yield Runtime(
            settings=settings,
            database=database,
            queue=queue,
            ledger=ledger,
            credentials=credentials,
            adapters=adapters,
            router=router,
            service=JobService(
                queue=queue,
                ledger=ledger,
                credentials=credentials,
                adapters=adapters,
            ),
        )
    finally:
        database.close()


def _parse_state(value: str | None) -> JobState | None:
    if value is None:
        return None
    return JobState(value.strip().lower())


def _render_summary(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} completed={summary.completed} "
        f"failed={summary.failed} retried={summary.retried} "
        f"stale={summary.stale} idle_polls={summary.idle_polls}"
    )
