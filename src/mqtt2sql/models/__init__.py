"""Data models for mqtt2sql."""

from mqtt2sql.models.topic import (
    SeriesKey,
    SeriesKeyMode,
    TopicConfigEntry,
    ValueType,
    parse_value_type,
)

__all__ = [
    "SeriesKey",
    "SeriesKeyMode",
    "TopicConfigEntry",
    "ValueType",
    "parse_value_type",
]
