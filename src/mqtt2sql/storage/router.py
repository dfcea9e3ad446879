"""Type-routed persistence.

Owns the schema (one value table per :class:`ValueType`, the seen-topics
table and the optional topic configuration table) and every statement
the pipeline issues. Table and column names come from the closed
:class:`ValueType` set, the series key mode and the configured prefix;
values are always bound parameters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from mqtt2sql.exceptions import StorageError
from mqtt2sql.models.topic import (
    SeriesKey,
    SeriesKeyMode,
    TopicConfigEntry,
    ValueType,
    parse_value_type,
)
from mqtt2sql.storage.database import Database

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class _TableStatements:
    table: str
    create: str
    create_key_index: str
    create_ts_index: str
    insert: str
    latest: str
    delete_before: str


class StorageRouter:
    """Schema bootstrap plus insert/select/delete dispatch by value type."""

    def __init__(
        self,
        db: Database,
        *,
        prefix: str,
        mode: SeriesKeyMode,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._mode = mode
        self._clock = clock
        dialect = db.dialect
        self._statements = MappingProxyType({vt: self._build_statements(prefix, vt) for vt in ValueType})
        self.seen_table = f"{prefix}_sensors_seen"
        self.config_table = f"{prefix}_config"
        ph = dialect.placeholder
        self._seen_create = (
            f"CREATE TABLE IF NOT EXISTS {self.seen_table} "
            f"(ts {dialect.timestamp_type}, topic varchar(255) PRIMARY KEY, "
            f"data {dialect.value_types[ValueType.STRING]})"
        )
        self._seen_upsert = (
            f"INSERT INTO {self.seen_table} (ts, topic, data) VALUES ({dialect.placeholders(3)}) "
            "ON CONFLICT (topic) DO UPDATE SET ts = EXCLUDED.ts, data = EXCLUDED.data"
        )
        self._config_create = (
            f"CREATE TABLE IF NOT EXISTS {self.config_table} "
            f"(sensorid {dialect.identity_type}, groupname varchar(100), sensor varchar(100), "
            "topic varchar(100), jsonpath varchar(100), datatype varchar(10), scaling real, "
            f"unit varchar(10), lastdata {dialect.value_types[ValueType.STRING]})"
        )
        self._config_select = (
            f"SELECT sensorid, groupname, sensor, topic, jsonpath, datatype, scaling, unit FROM {self.config_table}"
        )
        self._seen_select = f"SELECT ts, data FROM {self.seen_table} WHERE topic = {ph}"

    def _build_statements(self, prefix: str, value_type: ValueType) -> _TableStatements:
        dialect = self._db.dialect
        table = f"{prefix}_{value_type.value}"
        key_columns = dialect.key_columns[self._mode]
        key_names = [name for name, _ in key_columns]
        key_ddl = ", ".join(f"{name} {sql_type}" for name, sql_type in key_columns)
        key_where = " AND ".join(f"{name} = {dialect.placeholder}" for name in key_names)
        ph = dialect.placeholder
        return _TableStatements(
            table=table,
            create=(
                f"CREATE TABLE IF NOT EXISTS {table} (id {dialect.identity_type}, "
                f"ts {dialect.timestamp_type}, {key_ddl}, value {dialect.value_types[value_type]})"
            ),
            create_key_index=f"CREATE INDEX IF NOT EXISTS {table}_key_idx ON {table} ({', '.join(key_names)})",
            create_ts_index=f"CREATE INDEX IF NOT EXISTS {table}_ts_idx ON {table} (ts)",
            insert=(
                f"INSERT INTO {table} (ts, {', '.join(key_names)}, value) "
                f"VALUES ({dialect.placeholders(len(key_names) + 2)})"
            ),
            latest=f"SELECT value FROM {table} WHERE {key_where} ORDER BY ts DESC LIMIT 1",
            delete_before=f"DELETE FROM {table} WHERE ts < {ph}",
        )

    @property
    def tables(self) -> dict[ValueType, str]:
        return {vt: stmts.table for vt, stmts in self._statements.items()}

    def table_for(self, value_type: ValueType) -> str:
        return self._statements[value_type].table

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def bootstrap(self, *, with_config_table: bool = False) -> bool:
        """Create missing tables and indexes. Returns ``False`` if any statement failed."""
        ok = True
        statements: list[tuple[str, str]] = []
        for stmts in self._statements.values():
            statements.append((stmts.table, stmts.create))
            statements.append((stmts.table, stmts.create_key_index))
            statements.append((stmts.table, stmts.create_ts_index))
        statements.append((self.seen_table, self._seen_create))
        if with_config_table:
            statements.append((self.config_table, self._config_create))

        for table, sql in statements:
            try:
                self._db.execute(sql, table=table)
            except StorageError as exc:
                ok = False
                _logger.error("Error while creating %s table: %s", table, exc)
        if ok:
            _logger.info("Schema ready tables=%s", ", ".join(self.tables.values()))
        return ok

    def load_topic_entries(self) -> list[TopicConfigEntry]:
        """Read topic entries from the configuration table.

        Rows that do not form a valid entry are logged and skipped.
        """
        try:
            rows = self._db.fetch_all(self._config_select, table=self.config_table)
        except StorageError as exc:
            _logger.error("Error while getting config from %s table: %s", self.config_table, exc)
            return []

        entries: list[TopicConfigEntry] = []
        for sensor_id, group, sensor, topic, jsonpath, datatype, scaling, unit in rows:
            try:
                value_type = parse_value_type(datatype)
                entries.append(
                    TopicConfigEntry(
                        topic_pattern=topic or "",
                        extraction_query=jsonpath,
                        value_type=value_type,
                        scale_factor=scaling if value_type is ValueType.DOUBLE else None,
                        sensor_id=sensor_id,
                        group=group or "",
                        name=sensor,
                        unit=unit,
                    )
                )
            except (ValidationError, ValueError) as exc:
                _logger.warning("Skipping %s row sensorid=%s: %s", self.config_table, sensor_id, exc)
        _logger.info("Loaded %d topic entries from %s", len(entries), self.config_table)
        return entries

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def insert(self, key: SeriesKey, value_type: ValueType, value: Any) -> bool:
        """Insert a timestamped row into *value_type*'s table.

        Storage errors are logged and the value is dropped.
        """
        stmts = self._statements[value_type]
        params = (self._db.dialect.bind_timestamp(self._clock()), *key.params(), value)
        try:
            self._db.execute(stmts.insert, params, table=stmts.table)
        except StorageError as exc:
            _logger.error("SQL error: can not insert into %s series=%s: %s", stmts.table, key, exc)
            return False
        _logger.debug("Stored %s=%r in %s", key, value, stmts.table)
        return True

    def latest_value(self, key: SeriesKey, value_type: ValueType) -> tuple[bool, Any]:
        """Return ``(found, value)`` for the most recent row of *key*.

        Raises :class:`StorageError` when the lookup fails.
        """
        stmts = self._statements[value_type]
        row = self._db.fetch_one(stmts.latest, key.params(), table=stmts.table)
        if row is None:
            return False, None
        value = row[0]
        if value_type is ValueType.BOOL and value is not None:
            value = bool(value)
        return True, value

    def delete_before(self, value_type: ValueType, cutoff: datetime) -> int:
        """Delete rows older than *cutoff*; raises :class:`StorageError` on failure."""
        stmts = self._statements[value_type]
        return self._db.execute(
            stmts.delete_before,
            (self._db.dialect.bind_timestamp(cutoff),),
            table=stmts.table,
        )

    # ------------------------------------------------------------------
    # Seen topics
    # ------------------------------------------------------------------

    def upsert_seen(self, topic: str, payload: str, seen_at: datetime) -> bool:
        """Record *topic* as seen at *seen_at* with its latest payload."""
        params = (self._db.dialect.bind_timestamp(seen_at), topic, payload)
        try:
            self._db.execute(self._seen_upsert, params, table=self.seen_table)
        except StorageError as exc:
            _logger.error("SQL error: can not record seen topic %s: %s", topic, exc)
            return False
        return True

    def seen_record(self, topic: str) -> tuple[Any, str] | None:
        """Return ``(last_seen, payload)`` for *topic*; raises :class:`StorageError`."""
        row = self._db.fetch_one(self._seen_select, (topic,), table=self.seen_table)
        if row is None:
            return None
        return row[0], row[1]
