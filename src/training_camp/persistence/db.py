"""Async SQLite connection manager for training-camp persistence."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from training_camp.exceptions import ConstraintViolation, StorageError
from training_camp.persistence.paths import ignore_database_files

log = structlog.get_logger(__name__)

_PRAGMA_WAL = "PRAGMA journal_mode = WAL"
_PRAGMA_FK = "PRAGMA foreign_keys = ON"


class DatabaseManager:
    """Manages an aiosqlite connection with WAL mode and foreign keys enabled.

    Every write is a single statement committed before the call returns, so
    a crash loses at most the statement in flight. Driver errors are
    re-raised as :class:`StorageError` (integrity failures as
    :class:`ConstraintViolation`).

    Usage::

        db = DatabaseManager(resolve_db_path(config))
        await db.initialize()
        rows = await db.execute("SELECT * FROM sessions")
        await db.close()
    """

    def __init__(self, db_path: Path | str, *, manage_gitignore: bool = True) -> None:
        self._db_path = Path(db_path)
        self._manage_gitignore = manage_gitignore
        self._conn: aiosqlite.Connection | None = None
        log.debug("db_manager_created", path=str(self._db_path))

    @property
    def path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the connection, enable pragmas, and run migrations."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        if self._manage_gitignore:
            ignore_database_files(self._db_path)

        try:
            self._conn = await aiosqlite.connect(self._db_path)
            self._conn.row_factory = aiosqlite.Row

            await self._conn.execute(_PRAGMA_WAL)
            await self._conn.execute(_PRAGMA_FK)
            await self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self._db_path}: {exc}") from exc

        from training_camp.persistence.migrations import run_migrations
        await run_migrations(self)

        log.info("db_initialized", path=str(self._db_path))

    async def close(self) -> None:
        """Close the underlying connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            log.debug("db_closed", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Execute a SELECT statement and return rows as plain dicts."""
        conn = self._require_connection()
        try:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]
        except sqlite3.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc

    async def execute_write(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an INSERT / UPDATE / DELETE / DDL statement and commit it.

        Returns the number of rows affected (0 for DDL).
        """
        conn = self._require_connection()
        try:
            async with conn.execute(sql, params) as cursor:
                await conn.commit()
                return cursor.rowcount if cursor.rowcount >= 0 else 0
        except sqlite3.IntegrityError as exc:
            await conn.rollback()
            raise ConstraintViolation(str(exc)) from exc
        except sqlite3.Error as exc:
            await conn.rollback()
            raise StorageError(f"Write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError(
                "DatabaseManager is not initialized. Call await db.initialize() first."
            )
        return self._conn
