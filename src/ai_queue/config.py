"""Runtime configuration for the job queue, worker, router and providers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_PROVIDERS = ("openai", "siliconflow", "qwen", "echo")


@dataclass(slots=True)
class QueueSettings:
    """Queue and worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    concurrency: int = 3
    max_active_jobs: int | None = None
    lease_timeout_seconds: int = 600
    default_max_attempts: int = 3
    graceful_shutdown_seconds: int = 30


@dataclass(slots=True)
class RetrySettings:
    """In-lease retry policy for provider calls."""

    attempts: int = 3
    initial_delay_seconds: float = 2.0


@dataclass(slots=True)
class BudgetSettings:
    """Cost ceilings used by the router."""

    default_monthly_ceiling_cents: int = 1_000
    job_cost_limit_cents: int = 50
    default_estimated_cost_cents: int = 10


@dataclass(slots=True)
class ProviderSettings:
    """HTTP settings for provider adapters."""

    request_timeout_seconds: float = 60.0
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PromptSettings:
    """Per-kind input text limits in characters."""

    summarize_text_limit: int = 10_000
    evaluate_text_limit: int = 8_000
    disagreement_text_limit: int = 15_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".ai_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    prompts: PromptSettings = field(default_factory=PromptSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AI_QUEUE_DB_PATH", ".ai_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AI_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                worker_id=os.getenv("AI_QUEUE_WORKER_ID", f"worker-{socket.gethostname()}"),
                poll_interval_seconds=float(os.getenv("AI_QUEUE_POLL_INTERVAL_SECONDS", "2.0")),
                concurrency=int(os.getenv("AI_QUEUE_CONCURRENCY", "3")),
                max_active_jobs=_env_optional_int("AI_QUEUE_MAX_ACTIVE_JOBS"),
                lease_timeout_seconds=int(os.getenv("AI_QUEUE_LEASE_TIMEOUT_SECONDS", "600")),
                default_max_attempts=int(os.getenv("AI_QUEUE_MAX_ATTEMPTS", "3")),
                graceful_shutdown_seconds=int(
                    os.getenv("AI_QUEUE_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            retry=RetrySettings(
                attempts=int(os.getenv("AI_QUEUE_RETRY_ATTEMPTS", "3")),
                initial_delay_seconds=float(
                    os.getenv("AI_QUEUE_RETRY_INITIAL_DELAY_SECONDS", "2.0"),
                ),
            ),
            budget=BudgetSettings(
                default_monthly_ceiling_cents=int(
                    os.getenv("AI_QUEUE_DEFAULT_MONTHLY_CEILING_CENTS", "1000"),
                ),
                job_cost_limit_cents=int(os.getenv("AI_QUEUE_JOB_COST_LIMIT_CENTS", "50")),
                default_estimated_cost_cents=int(
                    os.getenv("AI_QUEUE_DEFAULT_ESTIMATED_COST_CENTS", "10"),
                ),
            ),
            providers=ProviderSettings(
                request_timeout_seconds=float(
                    os.getenv("AI_QUEUE_PROVIDER_TIMEOUT_SECONDS", "60.0"),
                ),
                endpoints=_collect_endpoint_overrides(),
            ),
            prompts=PromptSettings(
                summarize_text_limit=int(os.getenv("AI_QUEUE_SUMMARIZE_TEXT_LIMIT", "10000")),
                evaluate_text_limit=int(os.getenv("AI_QUEUE_EVALUATE_TEXT_LIMIT", "8000")),
                disagreement_text_limit=int(
                    os.getenv("AI_QUEUE_DISAGREEMENT_TEXT_LIMIT", "15000"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.queue.concurrency <= 0:
            raise ValueError("AI_QUEUE_CONCURRENCY must be > 0.")
        if self.queue.max_active_jobs is not None and self.queue.max_active_jobs <= 0:
            raise ValueError("AI_QUEUE_MAX_ACTIVE_JOBS must be > 0 when set.")
        if self.queue.lease_timeout_seconds <= 0:
            raise ValueError("AI_QUEUE_LEASE_TIMEOUT_SECONDS must be > 0.")
        if self.queue.default_max_attempts <= 0:
            raise ValueError("AI_QUEUE_MAX_ATTEMPTS must be > 0.")
        if self.retry.attempts <= 0:
            raise ValueError("AI_QUEUE_RETRY_ATTEMPTS must be > 0.")
        if self.retry.initial_delay_seconds < 0:
            raise ValueError("AI_QUEUE_RETRY_INITIAL_DELAY_SECONDS must be >= 0.")
        if self.budget.default_monthly_ceiling_cents < 0:
            raise ValueError("AI_QUEUE_DEFAULT_MONTHLY_CEILING_CENTS must be >= 0.")
        if self.budget.job_cost_limit_cents <= 0:
            raise ValueError("AI_QUEUE_JOB_COST_LIMIT_CENTS must be > 0.")
        if self.budget.default_estimated_cost_cents < 0:
            raise ValueError("AI_QUEUE_DEFAULT_ESTIMATED_COST_CENTS must be >= 0.")
        for provider, endpoint in self.providers.endpoints.items():
            if provider not in SUPPORTED_PROVIDERS:
                raise ValueError(f"Endpoint override for unsupported provider: {provider!r}")
            validate_endpoint_url(endpoint)


def validate_endpoint_url(value: str) -> None:
    """Raise ValueError unless value is an absolute http(s) URL."""

    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid provider endpoint: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _collect_endpoint_overrides() -> dict[str, str]:
    """Parse `AI_QUEUE_PROVIDER_ENDPOINTS` as `provider|url` pairs separated by `,`."""

    raw = os.getenv("AI_QUEUE_PROVIDER_ENDPOINTS", "").strip()
    if not raw:
        return {}

    overrides: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid AI_QUEUE_PROVIDER_ENDPOINTS entry: "
                f"{token!r}. Expected format '<provider>|<url>'.",
            )
        provider, url = token.split("|", 1)
        overrides[provider.strip().lower()] = url.strip()
    return overrides


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error

