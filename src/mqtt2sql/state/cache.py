"""In-memory last-value cache.

Holds the most recently *written* value per series key and value type.
Populated lazily and never persisted; storage is the source of truth
after a restart.
"""

from __future__ import annotations

from typing import Any

from mqtt2sql.models.topic import SeriesKey, ValueType

CacheKey = tuple[SeriesKey, ValueType]


class LastValueCache:
    def __init__(self) -> None:
        self._values: dict[CacheKey, Any] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def get(self, key: SeriesKey, value_type: ValueType) -> tuple[bool, Any]:
        """Return ``(present, value)``; a cached ``None`` is still present."""
        cache_key = (key, value_type)
        if cache_key in self._values:
            return True, self._values[cache_key]
        return False, None

    def set(self, key: SeriesKey, value_type: ValueType, value: Any) -> None:
        self._values[(key, value_type)] = value

    def snapshot(self) -> dict[CacheKey, Any]:
        return dict(self._values)
