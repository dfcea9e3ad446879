"""Topic configuration model.

A :class:`TopicConfigEntry` describes how values published on one topic
pattern are extracted, typed and stored. Entries are loaded once at
startup (from the INI file and optionally the ``{prefix}_config`` table)
and never change afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ValueType(StrEnum):
    """Closed set of storable value types; each maps to one table."""

    STRING = "string"
    BOOL = "bool"
    INTEGER = "integer"
    DOUBLE = "double"


_VALUE_TYPE_ALIASES: dict[str, ValueType] = {
    "string": ValueType.STRING,
    "str": ValueType.STRING,
    "text": ValueType.STRING,
    "qstring": ValueType.STRING,
    "bool": ValueType.BOOL,
    "boolean": ValueType.BOOL,
    "integer": ValueType.INTEGER,
    "int": ValueType.INTEGER,
    "long": ValueType.INTEGER,
    "double": ValueType.DOUBLE,
    "float": ValueType.DOUBLE,
    "real": ValueType.DOUBLE,
}


def parse_value_type(value: Any) -> ValueType:
    """Resolve a configured type name (or alias) to a :class:`ValueType`."""
    if isinstance(value, ValueType):
        return value
    name = str(value or "").strip().lower()
    try:
        return _VALUE_TYPE_ALIASES[name]
    except KeyError:
        raise ValueError(f"unknown value type {value!r}") from None


class SeriesKeyMode(StrEnum):
    """How a series is identified in the value tables."""

    SENSOR_ID = "sensor_id"
    GROUP_NAME = "group_name"


@dataclass(frozen=True, slots=True)
class SeriesKey:
    """Identity of one logical sensor series.

    Exactly one of the two shapes is populated, depending on the
    deployment's :class:`SeriesKeyMode`.
    """

    sensor_id: int | None = None
    group: str | None = None
    name: str | None = None

    @property
    def mode(self) -> SeriesKeyMode:
        return SeriesKeyMode.SENSOR_ID if self.sensor_id is not None else SeriesKeyMode.GROUP_NAME

    def params(self) -> tuple[Any, ...]:
        """Bound parameters matching the mode's key columns."""
        if self.mode is SeriesKeyMode.SENSOR_ID:
            return (self.sensor_id,)
        return (self.group or "", self.name)

    def __str__(self) -> str:
        if self.sensor_id is not None:
            return str(self.sensor_id)
        if self.group:
            return f"{self.group}/{self.name}"
        return str(self.name)


class TopicConfigEntry(BaseModel):
    """Extraction and storage rule for one subscribed topic pattern."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    topic_pattern: str = Field(..., description="MQTT topic filter, may contain + and #")
    extraction_query: str | None = Field(
        default=None,
        description="Path into the JSON payload, e.g. '$.value' or '$.data.items[0]'",
    )
    value_type: ValueType = ValueType.STRING
    scale_factor: float | None = None
    sensor_id: int | None = None
    group: str = ""
    name: str | None = None
    unit: str | None = None

    @field_validator("topic_pattern")
    @classmethod
    def _normalize_topic(cls, value: str) -> str:
        topic = value.strip()
        if not topic:
            raise ValueError("topic must be non-empty")
        return topic

    @field_validator("extraction_query", "unit", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("extraction_query")
    @classmethod
    def _check_query_syntax(cls, value: str | None) -> str | None:
        from mqtt2sql.ingestion.path import parse_path

        if value is not None:
            parse_path(value)
        return value

    @field_validator("value_type", mode="before")
    @classmethod
    def _parse_value_type(cls, value: Any) -> ValueType:
        return parse_value_type(value)

    @model_validator(mode="after")
    def _check_scale_factor(self) -> TopicConfigEntry:
        if self.scale_factor is not None and self.value_type is not ValueType.DOUBLE:
            raise ValueError(f"scale is only supported for double values, not {self.value_type}")
        return self

    def series_key(self, mode: SeriesKeyMode) -> SeriesKey:
        """Build the series key for *mode*.

        Raises :class:`ValueError` when the entry lacks the identity the
        mode requires.
        """
        if mode is SeriesKeyMode.SENSOR_ID:
            if self.sensor_id is None:
                raise ValueError(f"topic {self.topic_pattern!r} has no sensorid")
            return SeriesKey(sensor_id=self.sensor_id)
        if not self.name:
            raise ValueError(f"topic {self.topic_pattern!r} has no sensor name")
        return SeriesKey(group=self.group, name=self.name)
