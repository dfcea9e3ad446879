"""Single shared DB-API connection for the bridge.

Opened once at startup, used synchronously by every event and closed at
shutdown. All driver errors are re-raised as :class:`StorageError`
carrying the driver's error text.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from typing import Any

import psycopg2

from mqtt2sql.config import StorageDriver, StorageSettings
from mqtt2sql.exceptions import StorageError
from mqtt2sql.storage.dialect import DIALECTS, Dialect

_logger = logging.getLogger(__name__)

_DRIVER_ERRORS: tuple[type[Exception], ...] = (psycopg2.Error, sqlite3.Error)


def _connect(settings: StorageSettings) -> Any:
    if settings.driver is StorageDriver.SQLITE:
        # Autocommit: every statement is its own transaction.
        return sqlite3.connect(settings.database or ":memory:", isolation_level=None)
    conn = psycopg2.connect(
        host=settings.hostname or None,
        port=settings.port,
        user=settings.username or None,
        password=settings.password or None,
        dbname=settings.database or None,
        connect_timeout=settings.connect_timeout,
    )
    conn.autocommit = True
    return conn


def _error_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


class Database:
    """Thin synchronous wrapper around one DB-API connection."""

    def __init__(
        self,
        settings: StorageSettings,
        *,
        connect: Callable[[StorageSettings], Any] = _connect,
    ) -> None:
        self._settings = settings
        self._dialect = DIALECTS[settings.driver]
        self._connect = connect
        self._conn: Any | None = None
        self.last_error: str = ""

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def is_open(self) -> bool:
        conn = self._conn
        if conn is None:
            return False
        # psycopg2 exposes a non-zero ``closed`` once the connection is gone.
        return not getattr(conn, "closed", 0)

    def open(self) -> bool:
        """Open the connection. Returns ``False`` and records the error text on failure."""
        if self.is_open:
            return True
        try:
            self._conn = self._connect(self._settings)
        except _DRIVER_ERRORS as exc:
            self.last_error = _error_text(exc)
            _logger.error("Failed to open database: %s", self.last_error)
            return False
        self.last_error = ""
        _logger.info(
            "Database opened driver=%s host=%s database=%s",
            self._dialect.name,
            self._settings.hostname or "-",
            self._settings.database or "-",
        )
        return True

    def close(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is None:
            return
        try:
            conn.close()
        except _DRIVER_ERRORS:
            _logger.debug("Database close failed", exc_info=True)

    def _require_conn(self, table: str) -> Any:
        if not self.is_open:
            raise StorageError("Database not open!", table=table)
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = (), *, table: str = "") -> int:
        """Execute a statement and return the affected row count."""
        conn = self._require_conn(table)
        try:
            cur = conn.cursor()
            try:
                cur.execute(sql, tuple(params))
                return max(cur.rowcount, 0)
            finally:
                cur.close()
        except _DRIVER_ERRORS as exc:
            raise StorageError(_error_text(exc), table=table) from exc

    def fetch_one(self, sql: str, params: Sequence[Any] = (), *, table: str = "") -> tuple[Any, ...] | None:
        """Execute a query and return its first row (or ``None``)."""
        conn = self._require_conn(table)
        try:
            cur = conn.cursor()
            try:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            finally:
                cur.close()
        except _DRIVER_ERRORS as exc:
            raise StorageError(_error_text(exc), table=table) from exc
        return tuple(row) if row is not None else None

    def fetch_all(self, sql: str, params: Sequence[Any] = (), *, table: str = "") -> list[tuple[Any, ...]]:
        """Execute a query and return all rows."""
        conn = self._require_conn(table)
        try:
            cur = conn.cursor()
            try:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            finally:
                cur.close()
        except _DRIVER_ERRORS as exc:
            raise StorageError(_error_text(exc), table=table) from exc
        return [tuple(row) for row in rows]
