"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from ai_queue.credentials import CredentialRepository
from ai_queue.ledger import UsageLedger
from ai_queue.providers.base import Credential
from ai_queue.queue.repository import JobQueue
from ai_queue.storage.database import Database


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database(tmp_path / "queue.db")
    db.init_schema()
    yield db
    db.close()


@pytest.fixture()
def queue(database: Database) -> JobQueue:
    return JobQueue(database, lease_timeout_seconds=60, retry_initial_delay_seconds=0.0)


@pytest.fixture()
def ledger(database: Database) -> UsageLedger:
    return UsageLedger(database, default_ceiling_cents=1_000)


@pytest.fixture()
def credentials(database: Database) -> CredentialRepository:
    return CredentialRepository(database)


@pytest.fixture()
def echo_credential(credentials: CredentialRepository) -> Credential:
    """System-wide echo credential so the router always has a candidate."""

    return credentials.add(Credential(provider="echo", api_key="echo-local-key", model="echo-1"))


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in ("AI_QUEUE_PRICING", "AI_QUEUE_PROVIDER_ENDPOINTS", "AI_QUEUE_MAX_ACTIVE_JOBS"):
        monkeypatch.delenv(name, raising=False)
