"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ai_queue.errors import (
    BudgetExceededError,
    NoEligibleProviderError,
    ProviderAuthError,
    ProviderRequestError,
    ProviderResponseError,
    QueueIntegrityError,
    TransientProviderError,
    ValidationError,
)


class JobKind(str, Enum):
    """Supported inference tasks."""

    SUMMARIZE = "summarize"
    EVALUATE = "evaluate"
    DISAGREEMENT_ANALYSIS = "disagreement_analysis"


class JobState(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.DEAD_LETTERED})


class FailureClass(str, Enum):
    """Normalized failure classes used by queue retry policy."""

    VALIDATION = "validation"
    AUTH = "auth"
    REQUEST = "request"
    BUDGET_EXCEEDED = "budget_exceeded"
    NO_ELIGIBLE_PROVIDER = "no_eligible_provider"
    TRANSIENT = "transient"
    MALFORMED_RESPONSE = "malformed_response"
    QUEUE_INTEGRITY = "queue_integrity"
    LEASE_EXPIRED = "lease_expired"
    UNEXPECTED = "unexpected"


RETRYABLE_FAILURE_CLASSES = frozenset({FailureClass.TRANSIENT, FailureClass.LEASE_EXPIRED})


def classify_failure(error: BaseException) -> FailureClass:  # noqa: PLR0911
    """Map an exception raised while processing a job to a failure class."""

    if isinstance(error, ValidationError):
        return FailureClass.VALIDATION
    if isinstance(error, ProviderAuthError):
        return FailureClass.AUTH
    if isinstance(error, ProviderRequestError):
        return FailureClass.REQUEST
    # Malformed responses already had their single retry inside the lease.
    if isinstance(error, ProviderResponseError):
        return FailureClass.MALFORMED_RESPONSE
    if isinstance(error, TransientProviderError):
        return FailureClass.TRANSIENT
    if isinstance(error, BudgetExceededError):
        return FailureClass.BUDGET_EXCEEDED
    if isinstance(error, NoEligibleProviderError):
        return FailureClass.NO_ELIGIBLE_PROVIDER
    if isinstance(error, QueueIntegrityError):
        return FailureClass.QUEUE_INTEGRITY
    return FailureClass.UNEXPECTED


@dataclass(slots=True)
class JobResult:
    """Inference output attached to a job before it completes."""

    text: str
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    cost_cents: int
    usage_status: str
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_cents": self.cost_cents,
            "usage_status": self.usage_status,
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobResult:
        meta = raw.get("meta")
        return cls(
            text=str(raw["text"]),
            provider=str(raw["provider"]),
            model=str(raw["model"]),
            prompt_tokens=int(raw.get("prompt_tokens", 0)),
            completion_tokens=int(raw.get("completion_tokens", 0)),
            cost_cents=int(raw.get("cost_cents", 0)),
            usage_status=str(raw.get("usage_status", "reported")),
            meta=meta if isinstance(meta, dict) else {},
        )


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    kind: JobKind
    user_id: str | None
    payload: dict[str, Any]
    state: JobState
    priority: int
    attempts: int
    max_attempts: int
    estimated_max_cost_cents: int
    run_after: datetime
    leased_at: datetime | None
    lease_expires_at: datetime | None
    lease_token: str | None
    worker_id: str | None
    cancel_requested: bool
    failure_class: FailureClass | None
    last_error: str | None
    result: JobResult | None
    result_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def attempts_left(self) -> bool:
        return self.attempts < self.max_attempts


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    state_from: JobState | None
    state_to: JobState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


class RemoveOutcome(str, Enum):
    """Result of an operator remove request."""

    REMOVED = "removed"
    CANCEL_REQUESTED = "cancel_requested"
    NOT_FOUND = "not_found"
