"""Append-only usage ledger with per-user monthly budgets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from ai_queue.providers.base import TokenUsage
from ai_queue.storage.common import to_db_datetime, utc_now
from ai_queue.storage.database import Database
from ai_queue.storage.sqlmodel_models import UsageLedgerRow, UserBudgetRow

logger = logging.getLogger(__name__)

ANONYMOUS_USER_ID = "anonymous"
SUPPORTED_GROUP_BY = ("provider", "model")


@dataclass(slots=True)
class UsageTotals:
    """Aggregated usage for one user and period."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_cents: int = 0
    entries: int = 0


@dataclass(slots=True)
class UsageGroup:
    """Usage totals for one provider or model within a period."""

    group_key: str
    totals: UsageTotals


def ledger_period(at: datetime | None = None) -> str:
    """Calendar month in UTC, formatted `YYYY-MM`."""

    moment = at or utc_now()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m")


def account_user(user_id: str | None) -> str:
    return user_id or ANONYMOUS_USER_ID


class UsageLedger:
    """Usage and budget persistence backed by SQLModel + SQLite."""

    def __init__(self, database: Database, *, default_ceiling_cents: int) -> None:
        self.database = database
        self.default_ceiling_cents = default_ceiling_cents

    def record(  # noqa: PLR0913
        self,
        user_id: str | None,
        usage: TokenUsage,
        *,
        job_id: str,
        provider: str,
        model: str,
        recorded_at: datetime | None = None,
    ) -> bool:
        """Append one entry for a completed job.

        Returns False when the job already has an entry; the ledger never
        holds two rows for one job id.
        """

        now = utc_now()
        statement = (
            sqlite_insert(UsageLedgerRow)
            .values(
                job_id=job_id,
                user_id=account_user(user_id),
                period=ledger_period(recorded_at or now),
                provider=provider,
                model=model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                cost_cents=max(0, usage.cost_cents),
                usage_status=usage.usage_status,
                created_at=to_db_datetime(now),
            )
            .on_conflict_do_nothing(index_elements=["job_id"])
        )
        with Session(self.database.engine) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
        recorded = result.rowcount == 1
        if not recorded:
            logger.info("Ledger entry already exists for job %s; skipped", job_id)
        return recorded

    def aggregate(self, user_id: str | None, period: str | None = None) -> UsageTotals:
        """Sum usage for a user in a period (current month by default)."""

        with Session(self.database.engine) as session:
            row = session.exec(
                select(
                    func.coalesce(func.sum(UsageLedgerRow.prompt_tokens), 0),
                    func.coalesce(func.sum(UsageLedgerRow.completion_tokens), 0),
                    func.coalesce(func.sum(UsageLedgerRow.cost_cents), 0),
                    func.count(col(UsageLedgerRow.entry_id)),
                ).where(
                    UsageLedgerRow.user_id == account_user(user_id),
                    UsageLedgerRow.period == (period or ledger_period()),
                ),
            ).one()
        return UsageTotals(
            prompt_tokens=int(row[0]),
            completion_tokens=int(row[1]),
            cost_cents=int(row[2]),
            entries=int(row[3]),
        )

    def breakdown(
        self,
        user_id: str | None,
        period: str | None = None,
        *,
        group_by: str = "provider",
    ) -> list[UsageGroup]:
        """Totals grouped by provider or model, most expensive first."""

        if group_by not in SUPPORTED_GROUP_BY:
            raise ValueError(
                f"Unsupported group_by: {group_by!r}. Use one of {SUPPORTED_GROUP_BY}.",
            )
        key = col(UsageLedgerRow.provider) if group_by == "provider" else col(UsageLedgerRow.model)
        cost = func.sum(UsageLedgerRow.cost_cents)
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(
                    key,
                    func.sum(UsageLedgerRow.prompt_tokens),
                    func.sum(UsageLedgerRow.completion_tokens),
                    cost,
                    func.count(col(UsageLedgerRow.entry_id)),
                )
                .where(
                    UsageLedgerRow.user_id == account_user(user_id),
                    UsageLedgerRow.period == (period or ledger_period()),
                )
                .group_by(key)
                .order_by(cost.desc(), key.asc()),
            ).all()
        return [
            UsageGroup(
                group_key=str(row[0]),
                totals=UsageTotals(
                    prompt_tokens=int(row[1] or 0),
                    completion_tokens=int(row[2] or 0),
                    cost_cents=int(row[3] or 0),
                    entries=int(row[4] or 0),
                ),
            )
            for row in rows
        ]

    def remaining(self, user_id: str | None, period: str | None = None) -> int:
        """Ceiling minus spend; negative after an overrun."""

        return self.ceiling(user_id) - self.aggregate(user_id, period).cost_cents

    def ceiling(self, user_id: str | None) -> int:
        with Session(self.database.engine) as session:
            row = session.exec(
                select(UserBudgetRow).where(UserBudgetRow.user_id == account_user(user_id)),
            ).one_or_none()
        if row is None:
            return self.default_ceiling_cents
        return row.monthly_ceiling_cents

    def set_ceiling(self, user_id: str | None, cents: int) -> None:
        """Create or replace the monthly ceiling for a user."""

        if cents < 0:
            raise ValueError("Monthly ceiling must be >= 0 cents.")
        user = account_user(user_id)
        now = to_db_datetime(utc_now())
        with Session(self.database.engine) as session:
            row = session.exec(
                select(UserBudgetRow).where(UserBudgetRow.user_id == user),
            ).one_or_none()
            if row is None:
                row = UserBudgetRow(user_id=user, monthly_ceiling_cents=cents, updated_at=now)
            else:
                row.monthly_ceiling_cents = cents
                row.updated_at = now
            session.add(row)
            session.commit()
        logger.info("Monthly ceiling for %s set to %d cents", user, cents)
