"""Credential lookup consumed by the router, with a SQLite-backed store."""

from __future__ import annotations

import logging
from typing import Protocol
from uuid import uuid4

from sqlmodel import Session, col, select

from ai_queue.providers.base import Credential
from ai_queue.storage.common import to_db_datetime, utc_now
from ai_queue.storage.database import Database
from ai_queue.storage.sqlmodel_models import ProviderCredentialRow

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Read-only credential lookup used by the router."""

    def list_for_user(self, user_id: str | None, *, task: str) -> list[Credential]:
        """Credentials owned by `user_id` (system credentials for None) eligible for task."""


class CredentialRepository:
    """Provider credentials persisted alongside the queue."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def add(self, credential: Credential) -> Credential:
        """Store a credential, assigning an id when it has none."""

        credential_id = credential.credential_id or str(uuid4())
        with Session(self.database.engine) as session:
            if credential.is_default:
                self._clear_default(session=session, user_id=credential.user_id)
            session.add(
                ProviderCredentialRow(
                    credential_id=credential_id,
                    user_id=credential.user_id,
                    provider=credential.provider,
                    model=credential.model,
                    api_key=credential.api_key,
                    endpoint=credential.endpoint,
                    is_default=credential.is_default,
                    task_kinds=",".join(credential.task_kinds),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        logger.info(
            "Stored credential %s provider=%s user=%s key=%s",
            credential_id,
            credential.provider,
            credential.user_id or "<system>",
            credential.masked_key,
        )
        return Credential(
            provider=credential.provider,
            api_key=credential.api_key,
            model=credential.model,
            endpoint=credential.endpoint,
            credential_id=credential_id,
            user_id=credential.user_id,
            is_default=credential.is_default,
            task_kinds=credential.task_kinds,
        )

    def list_for_user(self, user_id: str | None, *, task: str) -> list[Credential]:
        credentials = self.list_credentials(user_id=user_id)
        return [credential for credential in credentials if credential.supports(task)]

    def list_credentials(self, *, user_id: str | None = None) -> list[Credential]:
        """Credentials owned by one user, or system credentials when user_id is None."""

        statement = select(ProviderCredentialRow).order_by(
            col(ProviderCredentialRow.provider).asc(),
            col(ProviderCredentialRow.credential_id).asc(),
        )
        if user_id is None:
            statement = statement.where(col(ProviderCredentialRow.user_id).is_(None))
        else:
            statement = statement.where(ProviderCredentialRow.user_id == user_id)
        with Session(self.database.engine) as session:
            rows = session.exec(statement).all()
        return [_to_credential(row) for row in rows]

    def remove(self, credential_id: str) -> bool:
        """Delete one credential; False when it does not exist."""

        with Session(self.database.engine) as session:
            row = session.get(ProviderCredentialRow, credential_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True

    def _clear_default(self, *, session: Session, user_id: str | None) -> None:
        statement = select(ProviderCredentialRow).where(
            col(ProviderCredentialRow.is_default).is_(True),
        )
        if user_id is None:
            statement = statement.where(col(ProviderCredentialRow.user_id).is_(None))
        else:
            statement = statement.where(ProviderCredentialRow.user_id == user_id)
        for row in session.exec(statement).all():
            row.is_default = False
            session.add(row)


def _to_credential(row: ProviderCredentialRow) -> Credential:
    return Credential(
        provider=row.provider,
        api_key=row.api_key,
        model=row.model,
        endpoint=row.endpoint,
        credential_id=row.credential_id,
        user_id=row.user_id,
        is_default=row.is_default,
        task_kinds=tuple(kind for kind in row.task_kinds.split(",") if kind),
    )
