"""Retention sweeper.

Deletes value rows older than the retention window, one statement per
value table. A failing table is logged and does not stop the others.
The seen-topics table is never swept.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from mqtt2sql.exceptions import StorageError
from mqtt2sql.models.topic import ValueType
from mqtt2sql.storage.router import StorageRouter

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RetentionSweeper:
    def __init__(
        self,
        router: StorageRouter,
        *,
        retention: timedelta,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self._router = router
        self._retention = retention
        self._clock = clock

    @property
    def retention(self) -> timedelta:
        return self._retention

    def sweep(self) -> dict[ValueType, int | None]:
        """Run one sweep.

        Returns the deleted row count per value type, ``None`` for tables
        whose delete failed.
        """
        cutoff = self._clock() - self._retention
        _logger.info("Cleaning up SQL database, deleting rows before %s", cutoff.isoformat())
        results: dict[ValueType, int | None] = {}
        for value_type in ValueType:
            try:
                results[value_type] = self._router.delete_before(value_type, cutoff)
            except StorageError as exc:
                results[value_type] = None
                _logger.error("SQL error: can not clean up %s: %s", exc.table or value_type, exc)
        _logger.info(
            "Cleanup finished %s",
            " ".join(f"{vt.value}={count if count is not None else 'failed'}" for vt, count in results.items()),
        )
        return results
