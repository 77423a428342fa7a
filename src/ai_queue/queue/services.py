"""Use-case services: job submission, status, credential tests and usage queries."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ai_queue.config import SUPPORTED_PROVIDERS, validate_endpoint_url
from ai_queue.credentials import CredentialRepository
from ai_queue.errors import ValidationError
from ai_queue.ledger import UsageGroup, UsageLedger, UsageTotals, account_user, ledger_period
from ai_queue.providers.base import Credential, ProviderAdapter, TestOutcome
from ai_queue.queue.models import JobDetails, JobView
from ai_queue.queue.repository import JobQueue


@dataclass(slots=True)
class SubmitJob:
    """High-level command to submit one inference job."""

    kind: str
    payload: dict[str, Any]
    user_id: str | None = None
    priority: int = 100
    max_attempts: int | None = None
    estimated_max_cost_cents: int | None = None


@dataclass(slots=True)
class RegisterCredential:
    """High-level command to store a provider credential."""

    provider: str
    api_key: str
    model: str
    endpoint: str | None = None
    user_id: str | None = None
    is_default: bool = False
    task_kinds: tuple[str, ...] = ()
    skip_test: bool = False


@dataclass(slots=True)
class UsageReport:
    """Usage totals, budget and breakdown for one user and period."""

    user_id: str
    period: str
    totals: UsageTotals
    ceiling_cents: int
    remaining_cents: int
    groups: list[UsageGroup]


class JobService:
    """Coordinates queue, ledger and credential operations for callers."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        ledger: UsageLedger,
        credentials: CredentialRepository,
        adapters: Mapping[str, ProviderAdapter],
    ) -> None:
        self.queue = queue
        self.ledger = ledger
        self.credentials = credentials
        self.adapters = adapters

    def submit(self, command: SubmitJob) -> JobView:
        return self.queue.enqueue(
            command.kind,
            command.payload,
            user_id=command.user_id,
            priority=command.priority,
            max_attempts=command.max_attempts,
            estimated_max_cost_cents=command.estimated_max_cost_cents,
        )

    def job_status(self, job_id: str) -> JobDetails | None:
        return self.queue.get_job_details(job_id)

    def test_credential(
        self,
        provider: str,
        api_key: str,
        model: str,
        endpoint: str | None = None,
    ) -> TestOutcome:
        """Probe a credential with a tiny request. Unknown providers fail the test."""

        try:
            credential = _build_credential(
                provider=provider,
                api_key=api_key,
                model=model,
                endpoint=endpoint,
            )
        except ValidationError as error:
            return TestOutcome(ok=False, error=str(error))
        adapter = self.adapters.get(credential.provider)
        if adapter is None:
            return TestOutcome(ok=False, error=f"No adapter registered for {provider!r}.")
        return adapter.test(credential, credential.model)

    def register_credential(
        self,
        command: RegisterCredential,
    ) -> tuple[Credential | None, TestOutcome]:
        """Test then store a credential. Nothing is stored when the test fails."""

        if command.skip_test:
            outcome = TestOutcome(ok=True)
        else:
            outcome = self.test_credential(
                command.provider,
                command.api_key,
                command.model,
                command.endpoint,
            )
        if not outcome.ok:
            return None, outcome
        credential = _build_credential(
            provider=command.provider,
            api_key=command.api_key,
            model=command.model,
            endpoint=command.endpoint,
        )
        credential.user_id = command.user_id
        credential.is_default = command.is_default
        credential.task_kinds = command.task_kinds
        return self.credentials.add(credential), outcome

    def usage(
        self,
        user_id: str | None,
        period: str | None = None,
        *,
        group_by: str = "provider",
    ) -> UsageReport:
        resolved_period = period or ledger_period()
        ceiling = self.ledger.ceiling(user_id)
        totals = self.ledger.aggregate(user_id, resolved_period)
        return UsageReport(
            user_id=account_user(user_id),
            period=resolved_period,
            totals=totals,
            ceiling_cents=ceiling,
            remaining_cents=ceiling - totals.cost_cents,
            groups=self.ledger.breakdown(user_id, resolved_period, group_by=group_by),
        )


def _build_credential(
    *,
    provider: str,
    api_key: str,
    model: str,
    endpoint: str | None,
) -> Credential:
    normalized_provider = provider.strip().lower()
    if normalized_provider not in SUPPORTED_PROVIDERS:
        raise ValidationError(
            f"Unsupported provider: {provider!r}. Use one of {', '.join(SUPPORTED_PROVIDERS)}.",
        )
    if not api_key.strip():
        raise ValidationError("API key must not be empty.")
    if not model.strip():
        raise ValidationError("Model must not be empty.")
    if endpoint:
        try:
            validate_endpoint_url(endpoint)
        except ValueError as error:
            raise ValidationError(str(error)) from error
    return Credential(
        provider=normalized_provider,
        api_key=api_key.strip(),
        model=model.strip(),
        endpoint=endpoint or None,
    )
