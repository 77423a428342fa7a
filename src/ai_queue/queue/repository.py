"""Durable job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from ai_queue.errors import QueueIntegrityError
from ai_queue.queue.models import (
    RETRYABLE_FAILURE_CLASSES,
    FailureClass,
    JobDetails,
    JobEventView,
    JobKind,
    JobResult,
    JobState,
    JobView,
    RemoveOutcome,
    classify_failure,
)
from ai_queue.queue.payloads import parse_kind, validate_payload
from ai_queue.retry import backoff_delay
from ai_queue.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime, utc_now
from ai_queue.storage.database import Database
from ai_queue.storage.sqlmodel_models import JobEventRow, JobRow

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100
_LAST_ERROR_MAX_CHARS = 2000


class JobQueue:
    """Queue persistence facade with leases, retries and operator management."""

    def __init__(  # noqa: PLR0913
        self,
        database: Database,
        *,
        lease_timeout_seconds: int = 600,
        default_max_attempts: int = 3,
        max_active_jobs: int | None = None,
        default_estimated_cost_cents: int = 10,
        retry_initial_delay_seconds: float = 2.0,
    ) -> None:
        self.database = database
        self.lease_timeout_seconds = lease_timeout_seconds
        self.default_max_attempts = default_max_attempts
        self.max_active_jobs = max_active_jobs
        self.default_estimated_cost_cents = default_estimated_cost_cents
        self.retry_initial_delay_seconds = retry_initial_delay_seconds

    @property
    def engine(self):  # noqa: ANN201
        return self.database.engine

    def enqueue(  # noqa: PLR0913
        self,
        kind: JobKind | str,
        payload: object,
        *,
        user_id: str | None = None,
        max_attempts: int | None = None,
        priority: int = DEFAULT_PRIORITY,
        estimated_max_cost_cents: int | None = None,
        run_after: datetime | None = None,
        job_id: str | None = None,
    ) -> JobView:
        """Validate payload and persist a queued job."""

        job_kind = kind if isinstance(kind, JobKind) else parse_kind(kind)
        normalized = validate_payload(job_kind, payload)
        attempts_cap = max_attempts if max_attempts is not None else self.default_max_attempts
        if attempts_cap < 1:
            raise ValueError("max_attempts must be >= 1.")
        estimate = (
            estimated_max_cost_cents
            if estimated_max_cost_cents is not None
            else self.default_estimated_cost_cents
        )
        if estimate < 0:
            raise ValueError("estimated_max_cost_cents must be >= 0.")

        now = utc_now()
        new_job_id = job_id or str(uuid4())
        with Session(self.engine) as session:
            row = JobRow(
                job_id=new_job_id,
                kind=job_kind.value,
                user_id=user_id,
                payload_json=json.dumps(normalized, ensure_ascii=False, sort_keys=True),
                state=JobState.QUEUED.value,
                priority=priority,
                attempts=0,
                max_attempts=attempts_cap,
                estimated_max_cost_cents=estimate,
                run_after=to_db_datetime(run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            # job_events references jobs; the job row must be inserted first.
            session.flush()
            self._add_event(
                session=session,
                job_id=new_job_id,
                event_type="enqueued",
                state_from=None,
                state_to=JobState.QUEUED,
                details={
                    "kind": job_kind.value,
                    "priority": priority,
                    "max_attempts": attempts_cap,
                    "estimated_max_cost_cents": estimate,
                },
            )
            session.commit()
            session.refresh(row)
            logger.info("Enqueued job %s kind=%s user=%s", new_job_id, job_kind.value, user_id)
            return _to_job_view(row)

    def lease(self, worker_id: str) -> JobView | None:
        """Atomically lease one ready job.

        The lease stamps a fresh token that every later mutation must present.
        Attempts grow only when the job carries no attached result.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobRow)
                    .where(
                        JobRow.state == JobState.QUEUED.value,
                        col(JobRow.run_after) <= to_db_datetime(now),
                        col(JobRow.cancel_requested).is_(False),
                    )
                    .order_by(
                        col(JobRow.priority).asc(),
                        col(JobRow.run_after).asc(),
                        col(JobRow.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                integrity_error = _integrity_problem(candidate)
                if integrity_error is not None:
                    self._force_failed(session=session, row=candidate, reason=integrity_error)
                    raise QueueIntegrityError(candidate.job_id, integrity_error)

                attempts = candidate.attempts + (1 if candidate.result_json is None else 0)
                lease_token = str(uuid4())
                statement = (
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == candidate.job_id,
                        col(JobRow.state) == JobState.QUEUED.value,
                        col(JobRow.attempts) == candidate.attempts,
                    )
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts=attempts,
                        leased_at=to_db_datetime(now),
                        lease_expires_at=to_db_datetime(
                            now + timedelta(seconds=self.lease_timeout_seconds),
                        ),
                        lease_token=lease_token,
                        worker_id=worker_id,
                        finished_at=None,
                        updated_at=to_db_datetime(now),
                    )
                    .execution_options(synchronize_session=False)
                )
                if self.max_active_jobs is not None:
                    statement = statement.where(_active_count() < self.max_active_jobs)
                result = session.exec(statement)  # type: ignore[call-overload]
                if result.rowcount != 1:
                    session.rollback()
                    if self._at_active_ceiling(session=session):
                        return None
                    continue

                leased = session.exec(
                    select(JobRow)
                    .where(JobRow.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=leased.job_id,
                    event_type="leased",
                    state_from=JobState.QUEUED,
                    state_to=JobState.ACTIVE,
                    details={
                        "worker_id": worker_id,
                        "attempts": leased.attempts,
                        "redelivery_with_result": leased.result_json is not None,
                    },
                )
                session.commit()
                logger.debug(
                    "Worker %s leased job %s attempt %d/%d",
                    worker_id,
                    leased.job_id,
                    leased.attempts,
                    leased.max_attempts,
                )
                return _to_job_view(leased)

    def extend_lease(self, job_id: str, lease_token: str) -> bool:
        """Push the lease deadline forward for a long-running call."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(*_held_by(job_id, lease_token))
                .values(
                    lease_expires_at=to_db_datetime(
                        now + timedelta(seconds=self.lease_timeout_seconds),
                    ),
                    updated_at=to_db_datetime(now),
                ),
            )  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def attach_result(
        self,
        job_id: str,
        result: JobResult,
        *,
        lease_token: str,
        attached_at: datetime | None = None,
    ) -> bool:
        """Durably store the result while the job stays active."""

        now = utc_now()
        result_at = attached_at or now
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(JobRow)
                .where(*_held_by(job_id, lease_token))
                .values(
                    result_json=json.dumps(result.to_dict(), ensure_ascii=False, sort_keys=True),
                    result_at=to_db_datetime(result_at),
                    updated_at=to_db_datetime(now),
                ),
            )  # type: ignore[call-overload]
            if update_result.rowcount != 1:
                session.rollback()
                logger.warning("Stale lease for job %s; result not attached", job_id)
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="result_attached",
                state_from=JobState.ACTIVE,
                state_to=JobState.ACTIVE,
                details={
                    "provider": result.provider,
                    "model": result.model,
                    "cost_cents": result.cost_cents,
                },
            )
            session.commit()
            return True

    def complete(
        self,
        job_id: str,
        result: JobResult | None = None,
        *,
        lease_token: str,
    ) -> bool:
        """Mark an active job as completed."""

        now = utc_now()
        values: dict[str, Any] = {
            "state": JobState.COMPLETED.value,
            "finished_at": to_db_datetime(now),
            "lease_token": None,
            "lease_expires_at": None,
            "failure_class": None,
            "last_error": None,
            "updated_at": to_db_datetime(now),
        }
        if result is not None:
            values["result_json"] = json.dumps(result.to_dict(), ensure_ascii=False, sort_keys=True)
            values["result_at"] = to_db_datetime(now)

        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(JobRow).where(*_held_by(job_id, lease_token)).values(**values),
            )  # type: ignore[call-overload]
            if update_result.rowcount != 1:
                session.rollback()
                logger.warning("Stale lease for job %s; completion ignored", job_id)
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                state_from=JobState.ACTIVE,
                state_to=JobState.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def fail(
        self,
        job_id: str,
        error: BaseException,
        *,
        lease_token: str,
        failure_class: FailureClass | None = None,
    ) -> JobState | None:
        """Re-queue with backoff or mark failed, depending on the error class.

        Returns the new state, or None when the lease token is stale.
        """

        resolved_class = failure_class or classify_failure(error)
        message = _error_summary(error)
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(JobRow).where(
                    JobRow.job_id == job_id,
                    JobRow.state == JobState.ACTIVE.value,
                    JobRow.lease_token == lease_token,
                ),
            ).one_or_none()
            if row is None:
                logger.warning("Stale lease for job %s; failure ignored", job_id)
                return None

            attempts, max_attempts = row.attempts, row.max_attempts
            requeue = (
                resolved_class in RETRYABLE_FAILURE_CLASSES
                and attempts < max_attempts
                and not row.cancel_requested
            )
            values: dict[str, Any] = {
                "failure_class": resolved_class.value,
                "last_error": message,
                "lease_token": None,
                "lease_expires_at": None,
                "updated_at": to_db_datetime(now),
            }
            if requeue:
                delay = backoff_delay(attempts - 1, self.retry_initial_delay_seconds)
                run_after = now + timedelta(seconds=delay)
                values.update(
                    state=JobState.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    leased_at=None,
                )
                new_state = JobState.QUEUED
                event_type = "retry_scheduled"
                details: dict[str, object] = {
                    "failure_class": resolved_class.value,
                    "run_after": run_after.isoformat(),
                    "attempts": attempts,
                }
            else:
                values.update(state=JobState.FAILED.value, finished_at=to_db_datetime(now))
                new_state = JobState.FAILED
                event_type = "failed"
                details = {
                    "failure_class": resolved_class.value,
                    "attempts": attempts,
                    "error": message,
                }

            update_result = session.exec(
                sa_update(JobRow).where(*_held_by(job_id, lease_token)).values(**values),
            )  # type: ignore[call-overload]
            if update_result.rowcount != 1:
                session.rollback()
                logger.warning("Stale lease for job %s; failure ignored", job_id)
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                state_from=JobState.ACTIVE,
                state_to=new_state,
                details=details,
            )
            session.commit()

        logger.info(
            "Job %s -> %s (%s, attempt %d/%d)",
            job_id,
            new_state.value,
            resolved_class.value,
            attempts,
            max_attempts,
        )
        return new_state

    def recover_expired_leases(self) -> int:
        """Return active jobs whose lease deadline passed to the queue."""

        now = utc_now()
        recovered = 0
        with Session(self.engine) as session:
            expired = session.exec(
                select(JobRow).where(
                    JobRow.state == JobState.ACTIVE.value,
                    col(JobRow.lease_expires_at).is_not(None),
                    col(JobRow.lease_expires_at) < to_db_datetime(now),
                ),
            ).all()
            candidates = [(row.job_id, row.lease_token, row.worker_id) for row in expired]
            # A job with an attached result only needs completing, whatever its attempts.
            requeue_flags = {
                row.job_id: (row.attempts < row.max_attempts or row.result_json is not None)
                and not row.cancel_requested
                for row in expired
            }

        for job_id, lease_token, worker_id in candidates:
            if lease_token is None:
                continue
            error = f"Lease expired (worker={worker_id or '-'})"
            requeue = requeue_flags[job_id]
            values: dict[str, Any] = {
                "failure_class": FailureClass.LEASE_EXPIRED.value,
                "last_error": error,
                "lease_token": None,
                "lease_expires_at": None,
                "worker_id": None,
                "updated_at": to_db_datetime(now),
            }
            if requeue:
                values.update(
                    state=JobState.QUEUED.value,
                    run_after=to_db_datetime(now),
                    leased_at=None,
                )
            else:
                values.update(state=JobState.FAILED.value, finished_at=to_db_datetime(now))
            new_state = JobState.QUEUED if requeue else JobState.FAILED
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(JobRow).where(*_held_by(job_id, lease_token)).values(**values),
                )  # type: ignore[call-overload]
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="lease_expired",
                    state_from=JobState.ACTIVE,
                    state_to=new_state,
                    details={"worker_id": worker_id},
                )
                session.commit()
            recovered += 1
            logger.warning("Recovered expired lease for job %s -> %s", job_id, new_state.value)
        return recovered

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return a job with its event stream."""

        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            if row is None:
                return None
            job = _to_job_view(row)
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                state_from=JobState(event.state_from) if event.state_from is not None else None,
                state_to=JobState(event.state_to) if event.state_to is not None else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=_decode_object(event.details_json) or {},
            )
            for event in event_rows
        ]
        return JobDetails(job=job, events=events)

    def list_jobs(self, *, state: JobState | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by state."""

        statement = select(JobRow).order_by(col(JobRow.created_at).desc()).limit(limit)
        if state is not None:
            statement = statement.where(JobRow.state == state.value)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_failed(self, *, limit: int = 100) -> list[JobView]:
        return self.list_jobs(state=JobState.FAILED, limit=limit)

    def count_by_state(self) -> dict[JobState, int]:
        counts = dict.fromkeys(JobState, 0)
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow.state, func.count(col(JobRow.job_id))).group_by(JobRow.state),
            ).all()
        for state, count in rows:
            counts[JobState(state)] = int(count)
        return counts

    def remove(self, job_id: str) -> RemoveOutcome:
        """Delete a job, or only flag cancellation while it is active."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            if row is None:
                return RemoveOutcome.NOT_FOUND
            if row.state == JobState.ACTIVE.value:
                if not row.cancel_requested:
                    session.exec(
                        sa_update(JobRow)
                        .where(col(JobRow.job_id) == job_id)
                        .values(cancel_requested=True, updated_at=to_db_datetime(now)),
                    )  # type: ignore[call-overload]
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="cancel_requested",
                        state_from=JobState.ACTIVE,
                        state_to=JobState.ACTIVE,
                        details={},
                    )
                    session.commit()
                return RemoveOutcome.CANCEL_REQUESTED

            result = session.exec(
                sa_delete(JobRow).where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.state) != JobState.ACTIVE.value,
                ),
            )  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return self.remove(job_id)
            session.commit()
        logger.info("Removed job %s", job_id)
        return RemoveOutcome.REMOVED

    def purge_failed(self) -> int:
        """Delete every failed job. Returns the number removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(JobRow).where(col(JobRow.state) == JobState.FAILED.value),
            )  # type: ignore[call-overload]
            session.commit()
        if result.rowcount:
            logger.info("Purged %d failed jobs", result.rowcount)
        return int(result.rowcount or 0)

    def dead_letter(self, job_id: str) -> bool:
        """Move one failed job to dead_lettered. False when it is not failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.state) == JobState.FAILED.value,
                )
                .values(state=JobState.DEAD_LETTERED.value, updated_at=to_db_datetime(now)),
            )  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="dead_lettered",
                state_from=JobState.FAILED,
                state_to=JobState.DEAD_LETTERED,
                details={},
            )
            session.commit()
            return True

    def dead_letter_failed(self) -> int:
        """Move all failed jobs to dead_lettered."""

        with Session(self.engine) as session:
            job_ids = session.exec(
                select(JobRow.job_id).where(JobRow.state == JobState.FAILED.value),
            ).all()
        return sum(1 for job_id in job_ids if self.dead_letter(job_id))

    def add_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an audit event without changing job state."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                state_from=None,
                state_to=None,
                details=details or {},
            )
            session.commit()

    def _at_active_ceiling(self, *, session: Session) -> bool:
        if self.max_active_jobs is None:
            return False
        active = session.exec(
            select(func.count(col(JobRow.job_id))).where(JobRow.state == JobState.ACTIVE.value),
        ).one()
        return int(active) >= self.max_active_jobs

    def _force_failed(self, *, session: Session, row: JobRow, reason: str) -> None:
        now = utc_now()
        result = session.exec(
            sa_update(JobRow)
            .where(col(JobRow.job_id) == row.job_id, col(JobRow.state) == row.state)
            .values(
                state=JobState.FAILED.value,
                failure_class=FailureClass.QUEUE_INTEGRITY.value,
                last_error=reason,
                lease_token=None,
                lease_expires_at=None,
                finished_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )  # type: ignore[call-overload]
        if result.rowcount == 1:
            self._add_event(
                session=session,
                job_id=row.job_id,
                event_type="integrity_failed",
                state_from=JobState.QUEUED,
                state_to=JobState.FAILED,
                details={"reason": reason},
            )
        session.commit()
        logger.error("Job %s forced to failed: %s", row.job_id, reason)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        state_from: JobState | None,
        state_to: JobState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _held_by(job_id: str, lease_token: str) -> tuple[Any, ...]:
    return (
        col(JobRow.job_id) == job_id,
        col(JobRow.state) == JobState.ACTIVE.value,
        col(JobRow.lease_token) == lease_token,
    )


def _active_count() -> Any:
    active_jobs = JobRow.__table__.alias("active_jobs")  # type: ignore[attr-defined]
    return (
        sa_select(func.count())
        .select_from(active_jobs)
        .where(active_jobs.c.state == JobState.ACTIVE.value)
        .scalar_subquery()
    )


def _integrity_problem(row: JobRow) -> str | None:
    try:
        JobKind(row.kind)
    except ValueError:
        return f"unknown job kind {row.kind!r}"
    if _decode_object(row.payload_json) is None:
        return "payload is not a JSON object"
    if row.result_json is not None and _decode_object(row.result_json) is None:
        return "attached result is not a JSON object"
    if row.attempts >= row.max_attempts and row.result_json is None:
        return f"attempts {row.attempts} already reached max_attempts {row.max_attempts}"
    return None


def _decode_object(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _error_summary(error: BaseException) -> str:
    text = str(error).strip() or type(error).__name__
    summary = f"{type(error).__name__}: {text}"
    return summary[:_LAST_ERROR_MAX_CHARS]


def _to_job_view(row: JobRow) -> JobView:
    result_raw = _decode_object(row.result_json)
    return JobView(
        job_id=row.job_id,
        kind=JobKind(row.kind),
        user_id=row.user_id,
        payload=_decode_object(row.payload_json) or {},
        state=JobState(row.state),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        estimated_max_cost_cents=row.estimated_max_cost_cents,
        run_after=to_utc_aware_datetime(row.run_after),
        leased_at=optional_utc(row.leased_at),
        lease_expires_at=optional_utc(row.lease_expires_at),
        lease_token=row.lease_token,
        worker_id=row.worker_id,
        cancel_requested=row.cancel_requested,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        last_error=row.last_error,
        result=JobResult.from_dict(result_raw) if result_raw is not None else None,
        result_at=optional_utc(row.result_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
