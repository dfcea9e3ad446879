"""Change detection against the last recorded value.

A value is written when no baseline exists for its series (neither in the
cache nor in storage) or when it differs from that baseline. Doubles are
compared with a tolerance sized for single-precision noise; every other
type uses exact equality.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from typing import Any

from mqtt2sql.exceptions import StorageError
from mqtt2sql.models.topic import SeriesKey, ValueType
from mqtt2sql.state.cache import LastValueCache

_logger = logging.getLogger(__name__)

# A few float32 ulps (epsilon 2**-23), plus an absolute floor so values
# around zero compare sanely.
FLOAT32_EPSILON = 1.1920929e-07
DOUBLE_REL_TOLERANCE = 4 * FLOAT32_EPSILON
DOUBLE_ABS_TOLERANCE = 1e-6

BaselineLookup = Callable[[SeriesKey, ValueType], tuple[bool, Any]]


def values_equal(value_type: ValueType, old: Any, new: Any) -> bool:
    """Compare two values of *value_type* under the change-detection rule."""
    if value_type is ValueType.DOUBLE:
        try:
            return math.isclose(
                float(old),
                float(new),
                rel_tol=DOUBLE_REL_TOLERANCE,
                abs_tol=DOUBLE_ABS_TOLERANCE,
            )
        except (TypeError, ValueError):
            return False
    if value_type is ValueType.BOOL:
        return old is not None and bool(old) == bool(new)
    return bool(old == new)


class ChangeDetector:
    """Decides whether a new value must be written for a series.

    ``baseline`` is consulted on a cache miss and returns the most recent
    stored value for a series. A baseline found in storage is cached, since
    it is by definition the most recently written value.
    """

    def __init__(self, cache: LastValueCache, baseline: BaselineLookup) -> None:
        self._cache = cache
        self._baseline = baseline

    @property
    def cache(self) -> LastValueCache:
        return self._cache

    def should_write(self, key: SeriesKey, value_type: ValueType, new_value: Any) -> bool:
        found, previous = self._cache.get(key, value_type)
        if not found:
            try:
                found, previous = self._baseline(key, value_type)
            except StorageError as exc:
                # Without a baseline the value is treated as new.
                _logger.error("SQL error: can not read last value of %s: %s", key, exc)
                return True
            if not found:
                _logger.debug("No baseline for %s, first observation", key)
                return True
            _logger.debug("Baseline for %s loaded from storage: %r", key, previous)
            self._cache.set(key, value_type, previous)

        if values_equal(value_type, previous, new_value):
            _logger.debug("Value for %s unchanged (%r), skipping write", key, new_value)
            return False
        return True

    def record_write(self, key: SeriesKey, value_type: ValueType, value: Any) -> None:
        """Remember *value* as the last written *value_type* value for *key*."""
        self._cache.set(key, value_type, value)
