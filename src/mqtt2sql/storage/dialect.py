"""SQL dialect descriptions for the supported drivers.

A dialect only holds fixed strings; nothing in it is ever derived from
message content.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from mqtt2sql.config import StorageDriver
from mqtt2sql.models.topic import SeriesKeyMode, ValueType


def _bind_native(ts: datetime) -> Any:
    return ts


def _bind_iso(ts: datetime) -> Any:
    # Fixed-width UTC text keeps lexicographic order equal to time order.
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class Dialect:
    name: str
    placeholder: str
    identity_type: str
    timestamp_type: str
    value_types: MappingProxyType[ValueType, str]
    key_columns: MappingProxyType[SeriesKeyMode, tuple[tuple[str, str], ...]]
    bind_timestamp: Callable[[datetime], Any]

    def placeholders(self, count: int) -> str:
        return ", ".join([self.placeholder] * count)


POSTGRES = Dialect(
    name="postgres",
    placeholder="%s",
    identity_type="integer GENERATED ALWAYS AS IDENTITY PRIMARY KEY",
    timestamp_type="timestamp with time zone",
    value_types=MappingProxyType(
        {
            ValueType.STRING: "text",
            ValueType.BOOL: "boolean",
            ValueType.INTEGER: "bigint",
            ValueType.DOUBLE: "double precision",
        }
    ),
    key_columns=MappingProxyType(
        {
            SeriesKeyMode.SENSOR_ID: (("sensorid", "integer"),),
            SeriesKeyMode.GROUP_NAME: (("groupname", "varchar(100)"), ("sensor", "varchar(100)")),
        }
    ),
    bind_timestamp=_bind_native,
)

SQLITE = Dialect(
    name="sqlite",
    placeholder="?",
    identity_type="INTEGER PRIMARY KEY AUTOINCREMENT",
    timestamp_type="TEXT",
    value_types=MappingProxyType(
        {
            ValueType.STRING: "TEXT",
            ValueType.BOOL: "INTEGER",
            ValueType.INTEGER: "INTEGER",
            ValueType.DOUBLE: "REAL",
        }
    ),
    key_columns=MappingProxyType(
        {
            SeriesKeyMode.SENSOR_ID: (("sensorid", "INTEGER"),),
            SeriesKeyMode.GROUP_NAME: (("groupname", "TEXT"), ("sensor", "TEXT")),
        }
    ),
    bind_timestamp=_bind_iso,
)

DIALECTS: dict[StorageDriver, Dialect] = {
    StorageDriver.POSTGRES: POSTGRES,
    StorageDriver.SQLITE: SQLITE,
}
