"""Queue worker that runs leased jobs through the router and provider adapters."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ai_queue.config import PromptSettings
from ai_queue.errors import ProviderResponseError, QueueIntegrityError, TransientProviderError
from ai_queue.ledger import UsageLedger
from ai_queue.providers.base import CallResult, TokenUsage
from ai_queue.queue.models import FailureClass, JobResult, JobState, JobView, classify_failure
from ai_queue.queue.prompts import build_prompt
from ai_queue.queue.repository import JobQueue
from ai_queue.retry import RetryExecutor
from ai_queue.routing import ProviderRouter, RouteContext, RouteDecision
from ai_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    stale: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.retried += other.retried
        self.stale += other.stale
        self.idle_polls += other.idle_polls


class JobBudget:
    """Thread-safe cap on how many jobs a group of workers may lease."""

    def __init__(self, limit: int) -> None:
        self._remaining = limit
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def release(self) -> None:
        with self._lock:
            self._remaining += 1

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._remaining <= 0


def should_retry_in_lease(error: BaseException, attempt: int) -> bool:
    """Malformed responses get one more try; other transient errors use the full budget."""

    if isinstance(error, ProviderResponseError):
        return attempt == 0
    return isinstance(error, TransientProviderError)


class QueueWorker:
    """Consumes queued jobs and executes them via the provider router."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        router: ProviderRouter,
        ledger: UsageLedger,
        worker_id: str,
        executor: RetryExecutor | None = None,
        prompt_settings: PromptSettings | None = None,
        poll_interval_seconds: float = 2.0,
        retry_attempts: int = 3,
        retry_initial_delay_seconds: float = 2.0,
        stop_event: threading.Event | None = None,
        job_budget: JobBudget | None = None,
    ) -> None:
        self.queue = queue
        self.router = router
        self.ledger = ledger
        self.worker_id = worker_id
        self.executor = executor or RetryExecutor()
        self.prompt_settings = prompt_settings or PromptSettings()
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_attempts = retry_attempts
        self.retry_initial_delay_seconds = retry_initial_delay_seconds
        self.stop_event = stop_event or threading.Event()
        self.job_budget = job_budget
        self._current_job_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def stop(self) -> None:
        """Stop leasing new jobs; the job in flight still finishes."""

        self.stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary
        if self.job_budget is not None and not self.job_budget.acquire():
            summary.idle_polls = 1
            return summary

        job = self._lease()
        if job is None:
            if self.job_budget is not None:
                self.job_budget.release()
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if isinstance(job, QueueIntegrityError):
            summary.failed = 1
            return summary

        self._current_job_id = job.job_id
        try:
            self._process(job, summary=summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
        handle_signals: bool = True,
    ) -> WorkerRunSummary:
        """Run worker loop until the queue is idle or max_jobs is reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
            handle_signals: Install SIGINT/SIGTERM handlers for graceful shutdown.
                Only possible from the main thread.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        guard = self._signal_handlers() if handle_signals else _no_signal_handlers()
        with guard:
            while True:
                if self.stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate
                if self.job_budget is not None and self.job_budget.exhausted:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _lease(self) -> JobView | QueueIntegrityError | None:
        recovered = self.queue.recover_expired_leases()
        if recovered:
            logger.info("Worker %s recovered %d expired leases", self.worker_id, recovered)
        if self.stop_requested:
            return None
        try:
            return self.queue.lease(self.worker_id)
        except QueueIntegrityError as error:
            logger.error("Worker %s skipped corrupt job: %s", self.worker_id, error)
            return error

    def _process(self, job: JobView, *, summary: WorkerRunSummary) -> None:
        token = job.lease_token
        if token is None:
            raise QueueIntegrityError(job.job_id, "leased job has no lease token")

        try:
            if job.result is not None and job.result_at is not None:
                logger.info("Job %s already has a result; skipping provider call", job.job_id)
                result, attached_at = job.result, job.result_at
            else:
                result = self._execute(job, lease_token=token)
                attached_at = utc_now()
                if not self.queue.attach_result(
                    job.job_id,
                    result,
                    lease_token=token,
                    attached_at=attached_at,
                ):
                    summary.stale = 1
                    return

            self.ledger.record(
                job.user_id,
                TokenUsage(
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=result.completion_tokens,
                    cost_cents=result.cost_cents,
                    usage_status=result.usage_status,
                ),
                job_id=job.job_id,
                provider=result.provider,
                model=result.model,
                recorded_at=attached_at,
            )
            if self.queue.complete(job.job_id, lease_token=token):
                summary.completed = 1
            else:
                summary.stale = 1
        except Exception as error:  # noqa: BLE001
            self._handle_failure(job=job, lease_token=token, error=error, summary=summary)

    def _execute(self, job: JobView, *, lease_token: str) -> JobResult:
        prompt = build_prompt(job.kind, job.payload, self.prompt_settings)
        ctx = RouteContext(
            user_id=job.user_id,
            task=job.kind.value,
            estimated_max_cost_cents=job.estimated_max_cost_cents,
        )

        def _call() -> tuple[RouteDecision, CallResult]:
            decision = self.router.route(ctx)
            return decision, decision.adapter.infer(
                decision.credential,
                decision.model,
                prompt,
                max_tokens=decision.max_tokens,
            )

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self.queue.extend_lease(job.job_id, lease_token)
            self.queue.add_event(
                job_id=job.job_id,
                event_type="call_retry",
                details={
                    "attempt": attempt + 1,
                    "error": type(error).__name__,
                    "delay_seconds": delay,
                },
            )

        decision, call_result = self.executor.execute(
            _call,
            max_attempts=self.retry_attempts,
            initial_delay=self.retry_initial_delay_seconds,
            should_retry=should_retry_in_lease,
            on_retry=_on_retry,
        )
        return JobResult(
            text=call_result.text,
            provider=decision.provider,
            model=decision.model,
            prompt_tokens=call_result.usage.prompt_tokens,
            completion_tokens=call_result.usage.completion_tokens,
            cost_cents=call_result.usage.cost_cents,
            usage_status=call_result.usage.usage_status,
            meta={**call_result.meta, "credential_scope": decision.credential_scope},
        )

    def _handle_failure(
        self,
        *,
        job: JobView,
        lease_token: str,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        failure_class = classify_failure(error)
        if failure_class is FailureClass.UNEXPECTED:
            logger.exception("Unexpected error while processing job %s", job.job_id)
        else:
            logger.warning(
                "Job %s attempt %d/%d failed (%s): %s",
                job.job_id,
                job.attempts,
                job.max_attempts,
                failure_class.value,
                error,
            )
        new_state = self.queue.fail(
            job.job_id,
            error,
            lease_token=lease_token,
            failure_class=failure_class,
        )
        if new_state is JobState.QUEUED:
            summary.retried = 1
        elif new_state is JobState.FAILED:
            summary.failed = 1
        else:
            summary.stale = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self.stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        logger.warning("Worker %s received %s; finishing current job", self.worker_id, signal_name)
        self.stop_event.set()
        if self._current_job_id is not None:
            self.queue.add_event(
                job_id=self._current_job_id,
                event_type="shutdown_requested",
                details={"signal": signal_name, "worker_id": self.worker_id},
            )


class WorkerPool:
    """Runs N worker threads sharing one queue, router and ledger.

    The per-process bound is the thread count; the global bound on active jobs
    is enforced by the queue's `max_active_jobs`.
    """

    def __init__(
        self,
        worker_factory: Callable[[str, threading.Event, JobBudget | None], QueueWorker],
        *,
        worker_id: str,
        graceful_shutdown_seconds: float = 30.0,
    ) -> None:
        self.worker_factory = worker_factory
        self.worker_id = worker_id
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.stop_event = threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def run(
        self,
        concurrency: int,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run workers until each goes idle, max_jobs is spent, or a signal arrives."""

        if concurrency < 1:
            raise ValueError("concurrency must be >= 1.")
        budget = JobBudget(max_jobs) if max_jobs is not None else None
        summaries: list[WorkerRunSummary] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def _run(worker: QueueWorker) -> None:
            try:
                summary = worker.run_loop(max_idle_polls=max_idle_polls, handle_signals=False)
            except Exception as error:
                logger.exception("Worker %s crashed", worker.worker_id)
                with lock:
                    errors.append(error)
                return
            with lock:
                summaries.append(summary)

        threads = [
            threading.Thread(
                target=_run,
                args=(self.worker_factory(f"{self.worker_id}-{index}", self.stop_event, budget),),
                name=f"{self.worker_id}-{index}",
                daemon=True,
            )
            for index in range(1, concurrency + 1)
        ]
        with self._signal_handlers():
            for thread in threads:
                thread.start()
            while any(thread.is_alive() for thread in threads):
                if self.stop_event.is_set():
                    self._drain(threads)
                    break
                for thread in threads:
                    thread.join(timeout=0.2)

        aggregate = WorkerRunSummary()
        for summary in summaries:
            aggregate.add(summary)
        if errors:
            raise errors[0]
        return aggregate

    def _drain(self, threads: list[threading.Thread]) -> None:
        deadline = time.monotonic() + self.graceful_shutdown_seconds
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        still_running = [thread.name for thread in threads if thread.is_alive()]
        if still_running:
            logger.warning(
                "Graceful shutdown window elapsed; abandoning %s (leases will expire)",
                ", ".join(still_running),
            )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning("Worker pool received signal %s; draining", signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def _no_signal_handlers() -> Iterator[None]:
    yield
