"""Shared database handle injected into queue, ledger and credential repositories."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

from ai_queue.storage.common import build_sqlite_engine, sqlite_url

logger = logging.getLogger(__name__)

_ROOT_DIR = Path(__file__).resolve().parents[3]
_MIGRATION_LOCK = threading.Lock()


class Database:
    """Owns the SQLAlchemy engine for one SQLite file.

    Repositories receive this object explicitly instead of reaching for a
    process-wide client.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run Alembic migrations up to head."""

        with _MIGRATION_LOCK:
            config = Config(str(_ROOT_DIR / "alembic.ini"))
            config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
            config.set_main_option("sqlalchemy.url", sqlite_url(self.db_path))
            command.upgrade(config, "head")
        logger.debug("Schema is at head for %s", self.db_path)

    def close(self) -> None:
        """Release pooled connections."""

        self.engine.dispose()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
