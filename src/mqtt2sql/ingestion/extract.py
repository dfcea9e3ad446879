"""Value extraction and type coercion.

Turns a raw MQTT payload into a value of the entry's declared
:class:`ValueType`. Every failure raises :class:`ExtractionError`; the
caller drops the message.
"""

from __future__ import annotations

import json
import math
from typing import Any

from mqtt2sql.exceptions import ExtractionError
from mqtt2sql.ingestion.path import PathSyntaxError, resolve_scalar
from mqtt2sql.models.topic import TopicConfigEntry, ValueType

StoredValue = str | bool | int | float

_TRUE_WORDS = frozenset({"1", "true", "yes", "y", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "n", "off"})


def decode_text(payload: bytes, *, topic: str = "") -> str:
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ExtractionError(f"payload is not valid UTF-8: {exc}", topic=topic) from exc


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_WORDS:
            return True
        if normalized in _FALSE_WORDS:
            return False
    raise ValueError(f"{value!r} is not a boolean")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            value = float(text)
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    raise ValueError(f"{value!r} is not an integer")


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a number")
    result = float(value.strip() if isinstance(value, str) else value)
    if math.isnan(result) or math.isinf(result):
        raise ValueError(f"{value!r} is not a finite number")
    return result


_COERCERS = {
    ValueType.STRING: _to_string,
    ValueType.BOOL: _to_bool,
    ValueType.INTEGER: _to_int,
    ValueType.DOUBLE: _to_float,
}


def coerce(value: Any, value_type: ValueType) -> StoredValue:
    """Convert *value* to *value_type*, raising :class:`ValueError` on failure."""
    try:
        return _COERCERS[value_type](value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"cannot convert {value!r} to {value_type}: {exc}") from exc


def extract_value(topic: str, payload: bytes, entry: TopicConfigEntry) -> StoredValue:
    """Extract, coerce and scale the value *entry* describes from *payload*."""
    query = entry.extraction_query
    text = decode_text(payload, topic=topic)

    raw: Any
    if query is None:
        raw = text
    else:
        try:
            document = json.loads(text)
        except ValueError as exc:
            raise ExtractionError(f"payload is not valid JSON: {exc}", topic=topic, query=query) from exc
        try:
            found, raw = resolve_scalar(document, query)
        except PathSyntaxError as exc:
            raise ExtractionError(str(exc), topic=topic, query=query) from exc
        if not found:
            raise ExtractionError("query did not resolve to a scalar value", topic=topic, query=query)

    try:
        value = coerce(raw, entry.value_type)
    except ValueError as exc:
        raise ExtractionError(str(exc), topic=topic, query=query) from exc

    if entry.value_type is ValueType.DOUBLE and entry.scale_factor is not None:
        value = float(value) * entry.scale_factor
    return value
