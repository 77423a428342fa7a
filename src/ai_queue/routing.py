"""Provider selection under credential and budget constraints."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from ai_queue.credentials import CredentialStore
from ai_queue.errors import BudgetExceededError, NoEligibleProviderError
from ai_queue.ledger import UsageLedger, account_user, ledger_period
from ai_queue.providers.base import Credential, ProviderAdapter
from ai_queue.providers.pricing import PricingTable

logger = logging.getLogger(__name__)

DEFAULT_JOB_COST_LIMIT_CENTS = 50

# (estimate threshold in cents, max_tokens) checked top-down.
_MAX_TOKENS_TIERS: tuple[tuple[int, int], ...] = ((200, 4000), (100, 3000))
_DEFAULT_MAX_TOKENS = 2000


@dataclass(slots=True, frozen=True)
class RouteContext:
    """Who is asking, for what task, and the worst-case cost they accept."""

    user_id: str | None
    task: str
    estimated_max_cost_cents: int


@dataclass(slots=True)
class RouteDecision:
    """Adapter, credential and model selected for one call."""

    adapter: ProviderAdapter
    credential: Credential
    model: str
    max_tokens: int
    credential_scope: str

    @property
    def provider(self) -> str:
        return self.credential.provider


class ProviderRouter:
    """Picks a backend for a route context. Performs no network I/O."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        credentials: CredentialStore,
        ledger: UsageLedger,
        adapters: Mapping[str, ProviderAdapter],
        pricing: PricingTable | None = None,
        job_cost_limit_cents: int = DEFAULT_JOB_COST_LIMIT_CENTS,
    ) -> None:
        self.credentials = credentials
        self.ledger = ledger
        self.adapters = adapters
        self.pricing = pricing or PricingTable.from_env()
        self.job_cost_limit_cents = job_cost_limit_cents

    def route(self, ctx: RouteContext) -> RouteDecision:
        """Resolve a decision or raise a RoutingError subclass."""

        estimate = ctx.estimated_max_cost_cents
        if estimate > self.job_cost_limit_cents:
            raise BudgetExceededError(
                f"Estimated cost {estimate} cents exceeds the per-job cap of "
                f"{self.job_cost_limit_cents} cents.",
                estimated_cents=estimate,
            )

        candidates, scope = self._eligible(ctx)
        credential = self._select(candidates)

        user = account_user(ctx.user_id)
        remaining = self.ledger.remaining(user, ledger_period())
        if estimate > remaining:
            raise BudgetExceededError(
                f"Estimated cost {estimate} cents exceeds remaining monthly budget "
                f"of {remaining} cents for user {user}.",
                estimated_cents=estimate,
                remaining_cents=remaining,
            )

        decision = RouteDecision(
            adapter=self.adapters[credential.provider],
            credential=credential,
            model=credential.model,
            max_tokens=max_tokens_for_estimate(estimate),
            credential_scope=scope,
        )
        logger.debug(
            "Routed task=%s user=%s to provider=%s model=%s scope=%s key=%s",
            ctx.task,
            user,
            decision.provider,
            decision.model,
            scope,
            credential.masked_key,
        )
        return decision

    def _eligible(self, ctx: RouteContext) -> tuple[list[Credential], str]:
        if ctx.user_id is not None:
            own = self._with_adapter(self.credentials.list_for_user(ctx.user_id, task=ctx.task))
            if own:
                return own, "user"
        system = self._with_adapter(self.credentials.list_for_user(None, task=ctx.task))
        if system:
            return system, "system"
        raise NoEligibleProviderError(
            f"No provider credential configured for task={ctx.task!r} "
            f"(user={account_user(ctx.user_id)}).",
        )

    def _with_adapter(self, credentials: list[Credential]) -> list[Credential]:
        return [credential for credential in credentials if credential.provider in self.adapters]

    def _select(self, candidates: list[Credential]) -> Credential:
        defaults = [credential for credential in candidates if credential.is_default]
        pool = defaults or candidates
        return min(
            pool,
            key=lambda credential: (
                self.pricing.lookup(
                    provider=credential.provider,
                    model=credential.model,
                ).blended_per_1k,
                credential.provider,
                credential.credential_id or "",
            ),
        )


def max_tokens_for_estimate(estimated_max_cost_cents: int) -> int:
    for threshold, max_tokens in _MAX_TOKENS_TIERS:
        if estimated_max_cost_cents > threshold:
            return max_tokens
    return _DEFAULT_MAX_TOKENS
