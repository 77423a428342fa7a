"""SQLModel ORM tables for queue, ledger and credential storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_lease", "state", "priority", "run_after"),
        Index("idx_jobs_lease_expiry", "state", "lease_expires_at"),
    )

    job_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    user_id: str | None = Field(default=None, index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    state: str = Field(index=True)
    priority: int = Field(default=100)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    estimated_max_cost_cents: int = Field(default=0)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    leased_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    lease_token: str | None = None
    worker_id: str | None = Field(default=None, index=True)
    cancel_requested: bool = Field(default=False)
    failure_class: str | None = Field(default=None, index=True)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    result_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    state_from: str | None = None
    state_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageLedgerRow(SQLModel, table=True):
    __tablename__ = "usage_ledger"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", name="uq_usage_ledger_job_id"),
        Index("idx_usage_ledger_user_period", "user_id", "period"),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    job_id: str
    user_id: str
    period: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_cents: int = 0
    usage_status: str = "reported"
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserBudgetRow(SQLModel, table=True):
    __tablename__ = "user_budgets"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True)
    monthly_ceiling_cents: int
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProviderCredentialRow(SQLModel, table=True):
    __tablename__ = "provider_credentials"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_provider_credentials_user", "user_id", "provider"),)

    credential_id: str = Field(primary_key=True)
    user_id: str | None = None
    provider: str
    model: str
    api_key: str = Field(sa_column=Column(Text, nullable=False))
    endpoint: str | None = None
    is_default: bool = Field(default=False)
    task_kinds: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
