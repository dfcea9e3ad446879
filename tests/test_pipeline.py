from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from _support import BASE_TIME, FakeClock, bridge_config, count_rows

from mqtt2sql._mqtt import ConnectionErrorKind, ConnectionEvent, MessageEvent, SubscriptionEvent
from mqtt2sql.exceptions import EXIT_OK, EXIT_STORAGE_OPEN_FAILED, EXIT_TRANSPORT_ERROR, TransportError
from mqtt2sql.models.topic import SeriesKey, TopicConfigEntry, ValueType
from mqtt2sql.pipeline import BridgeErrorSignal, PipelineOrchestrator, SweepTick
from mqtt2sql.storage.database import Database

TEMP = TopicConfigEntry(
    topic_pattern="sensors/temp1",
    extraction_query="$.value",
    value_type=ValueType.DOUBLE,
    scale_factor=0.1,
    name="temp1",
)


class _FakeRuntime:
    def __init__(self, *, loop: Any, settings: Any, patterns: Any, on_event: Any, logger: Any = None) -> None:
        self.patterns = tuple(patterns)
        self.on_event = on_event
        self.started = False
        self.stopped = False
        self.start_error: Exception | None = None

    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def stop(self) -> None:
        self.stopped = True


class _RuntimeFactory:
    def __init__(self, start_error: Exception | None = None) -> None:
        self.start_error = start_error
        self.instances: list[_FakeRuntime] = []

    def __call__(self, **kwargs: Any) -> _FakeRuntime:
        runtime = _FakeRuntime(**kwargs)
        runtime.start_error = self.start_error
        self.instances.append(runtime)
        return runtime


def _orchestrator(
    *entries: TopicConfigEntry, database: Database | None = None, mqtt_topic: str = "#", **kwargs: Any
) -> PipelineOrchestrator:
    config = bridge_config(*entries, mqtt_topic=mqtt_topic)
    orchestrator = PipelineOrchestrator(
        config,
        database=database or Database(config.storage),
        clock=kwargs.pop("clock", FakeClock()),
        **kwargs,
    )
    orchestrator.open_storage()
    return orchestrator


def _values(orchestrator: PipelineOrchestrator, value_type: ValueType) -> list[Any]:
    table = orchestrator.router.table_for(value_type)
    rows = orchestrator.router._db.fetch_all(f"SELECT value FROM {table} ORDER BY id")
    return [row[0] for row in rows]


def test_scaled_double_is_written_only_on_change() -> None:
    orchestrator = _orchestrator(TEMP)

    assert orchestrator.handle_message("sensors/temp1", b'{"value": 215}') == 1
    assert orchestrator.handle_message("sensors/temp1", b'{"value": 215}') == 0
    assert orchestrator.handle_message("sensors/temp1", b'{"value": 300}') == 1

    assert _values(orchestrator, ValueType.DOUBLE) == [pytest.approx(21.5), pytest.approx(30.0)]
    assert orchestrator.cache.get(SeriesKey(group="", name="temp1"), ValueType.DOUBLE) == (True, pytest.approx(30.0))


@pytest.mark.parametrize(
    ("value_type", "payload", "changed", "expected"),
    [
        (ValueType.STRING, b'{"v": "on"}', b'{"v": "off"}', ["on", "off"]),
        (ValueType.BOOL, b'{"v": true}', b'{"v": false}', [1, 0]),
        (ValueType.INTEGER, b'{"v": 7}', b'{"v": 8}', [7, 8]),
        (ValueType.DOUBLE, b'{"v": 1.0}', b'{"v": 1.5}', [1.0, 1.5]),
    ],
)
def test_repeated_values_are_not_rewritten_for_any_type(
    value_type: ValueType, payload: bytes, changed: bytes, expected: list[Any]
) -> None:
    entry = TopicConfigEntry(topic_pattern="t/x", extraction_query="$.v", value_type=value_type, name="x")
    orchestrator = _orchestrator(entry)

    for body in (payload, payload, payload, changed, changed):
        orchestrator.handle_message("t/x", body)

    assert _values(orchestrator, value_type) == expected


def test_small_double_noise_is_suppressed() -> None:
    entry = TopicConfigEntry(topic_pattern="t/x", extraction_query="$.v", value_type="double", name="x")
    orchestrator = _orchestrator(entry)

    orchestrator.handle_message("t/x", b'{"v": 1.0}')
    orchestrator.handle_message("t/x", b'{"v": 1.0000001}')

    assert _values(orchestrator, ValueType.DOUBLE) == [1.0]


def test_extraction_failure_drops_message_without_touching_cache(caplog: pytest.LogCaptureFixture) -> None:
    orchestrator = _orchestrator(TEMP)
    orchestrator.handle_message("sensors/temp1", b'{"value": 215}')

    assert orchestrator.handle_message("sensors/temp1", b"not json") == 0
    assert orchestrator.handle_message("sensors/temp1", b'{"other": 1}') == 0

    assert "Dropping message topic=sensors/temp1" in caplog.text
    assert orchestrator.cache.get(SeriesKey(group="", name="temp1"), ValueType.DOUBLE) == (True, pytest.approx(21.5))
    assert _values(orchestrator, ValueType.DOUBLE) == [pytest.approx(21.5)]


def test_cold_start_reads_baseline_from_storage() -> None:
    config = bridge_config(TEMP)
    db = Database(config.storage)
    first = _orchestrator(TEMP, database=db)
    first.handle_message("sensors/temp1", b'{"value": 215}')

    # A fresh orchestrator on the same storage starts with an empty cache.
    second = _orchestrator(TEMP, database=db, clock=FakeClock(now=BASE_TIME + timedelta(hours=1)))
    assert len(second.cache) == 0
    assert second.handle_message("sensors/temp1", b'{"value": 215}') == 0
    assert second.handle_message("sensors/temp1", b'{"value": 216}') == 1

    assert count_rows(db, "mqtt_double") == 2


def test_unconfigured_topics_are_only_discovered() -> None:
    orchestrator = _orchestrator(TEMP)

    assert orchestrator.handle_message("other/topic", b"hello") == 0
    assert orchestrator.handle_message("sensors/temp1", b'{"value": 215}') == 1

    db = orchestrator.router._db
    assert count_rows(db, "mqtt_sensors_seen") == 2
    assert orchestrator.discovery.seen_topics == frozenset({"other/topic", "sensors/temp1"})
    for value_type in ValueType:
        expected = 1 if value_type is ValueType.DOUBLE else 0
        assert count_rows(db, orchestrator.router.table_for(value_type)) == expected


def test_wildcard_pattern_writes_each_matching_entry() -> None:
    door = TopicConfigEntry(topic_pattern="home/+/door", value_type="string", name="doors")
    kitchen = TopicConfigEntry(topic_pattern="home/kitchen/door", value_type="bool", name="kitchen_door")
    orchestrator = _orchestrator(door, kitchen)

    assert orchestrator.handle_message("home/kitchen/door", b"true") == 2

    assert _values(orchestrator, ValueType.STRING) == ["true"]
    assert _values(orchestrator, ValueType.BOOL) == [1]


def test_storage_failure_during_insert_is_logged_and_not_cached(caplog: pytest.LogCaptureFixture) -> None:
    orchestrator = _orchestrator(TEMP)
    orchestrator.router._db.execute("DROP TABLE mqtt_double")

    assert orchestrator.handle_message("sensors/temp1", b'{"value": 215}') == 0

    assert "can not insert into mqtt_double" in caplog.text
    assert len(orchestrator.cache) == 0


def test_connection_and_subscription_events_raise_signals() -> None:
    signals: list[BridgeErrorSignal] = []
    orchestrator = _orchestrator(TEMP, on_error=signals.append)

    orchestrator.handle_event(ConnectionEvent(ConnectionErrorKind.NO_ERROR))
    orchestrator.handle_event(SubscriptionEvent("sensors/temp1", ok=True))
    orchestrator.handle_event(SubscriptionEvent("sensors/temp1", ok=False, detail="rc=128"))
    orchestrator.handle_event(ConnectionEvent(ConnectionErrorKind.TRANSPORT_INVALID, "rc=7"))
    orchestrator.handle_event(ConnectionEvent(ConnectionErrorKind.BAD_USERNAME_OR_PASSWORD))

    assert [s.fatal for s in signals] == [False, False, True]
    assert signals[0].message == "Failed to subscribe to sensors/temp1: rc=128"
    assert signals[1].exit_code == EXIT_OK
    assert signals[2].exit_code == EXIT_TRANSPORT_ERROR
    assert signals[2].message.startswith("MQTT error: Error: The data in the username or password is malformed.")


def test_series_shared_across_value_types_writes_each_first_observation() -> None:
    text = TopicConfigEntry(topic_pattern="a/s", value_type="string", name="x")
    number = TopicConfigEntry(topic_pattern="a/d", value_type="double", name="x")
    orchestrator = _orchestrator(text, number)

    assert orchestrator.handle_message("a/s", b"5") == 1
    assert orchestrator.handle_message("a/d", b"5") == 1
    assert orchestrator.handle_message("a/d", b"5") == 0

    assert _values(orchestrator, ValueType.STRING) == ["5"]
    assert _values(orchestrator, ValueType.DOUBLE) == [5.0]


def test_large_meter_reading_change_is_written() -> None:
    meter = TopicConfigEntry(topic_pattern="m", value_type="double", name="meter")
    orchestrator = _orchestrator(meter)

    assert orchestrator.handle_message("m", b"123456.0") == 1
    assert orchestrator.handle_message("m", b"123456.5") == 1

    assert _values(orchestrator, ValueType.DOUBLE) == [123456.0, 123456.5]


def test_discovery_only_records_topics_under_catch_all_filter() -> None:
    orchestrator = _orchestrator(TEMP, mqtt_topic="disc/#")

    assert orchestrator.handle_message("sensors/temp1", b'{"value": 215}') == 1
    orchestrator.handle_message("disc/new", b"hello")

    assert orchestrator.discovery.seen_topics == frozenset({"disc/new"})
    assert count_rows(orchestrator.router._db, "mqtt_sensors_seen") == 1


def test_unexpected_sweep_error_is_logged_and_contained(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    orchestrator = _orchestrator(TEMP)

    def _explode() -> dict:
        raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator.sweeper, "sweep", _explode)

    orchestrator.handle_event(SweepTick())

    assert "Unexpected error during retention sweep" in caplog.text
    assert orchestrator.handle_message("sensors/temp1", b'{"value": 215}') == 1


# ----------------------------------------------------------------------
# run()
# ----------------------------------------------------------------------


def _file_config(tmp_path: Path, *entries: TopicConfigEntry, **kwargs: Any):
    return bridge_config(*entries, database=str(tmp_path / "bridge.db"), **kwargs)


@pytest.mark.asyncio
async def test_run_processes_queued_events_in_order_until_stopped(tmp_path: Path) -> None:
    config = _file_config(tmp_path, TEMP)
    factory = _RuntimeFactory()
    orchestrator = PipelineOrchestrator(config, runtime_factory=factory, clock=FakeClock())

    for value in (215, 215, 300, 250):
        orchestrator.submit(MessageEvent("sensors/temp1", f'{{"value": {value}}}'.encode()))
    orchestrator.request_stop()

    assert await orchestrator.run() == EXIT_OK

    runtime = factory.instances[0]
    assert runtime.patterns == ("sensors/temp1",)
    assert runtime.started and runtime.stopped
    db = Database(config.storage)
    assert db.open()
    try:
        rows = db.fetch_all("SELECT value FROM mqtt_double ORDER BY id")
    finally:
        db.close()
    assert [row[0] for row in rows] == [pytest.approx(21.5), pytest.approx(30.0), pytest.approx(25.0)]


@pytest.mark.asyncio
async def test_run_stops_on_fatal_connection_error(tmp_path: Path) -> None:
    signals: list[BridgeErrorSignal] = []
    factory = _RuntimeFactory()
    orchestrator = PipelineOrchestrator(
        _file_config(tmp_path, TEMP), runtime_factory=factory, on_error=signals.append, clock=FakeClock()
    )
    orchestrator.submit(ConnectionEvent(ConnectionErrorKind.TRANSPORT_INVALID))
    orchestrator.submit(ConnectionEvent(ConnectionErrorKind.NOT_AUTHORIZED, "rc=135"))
    orchestrator.submit(MessageEvent("sensors/temp1", b'{"value": 1}'))

    assert await orchestrator.run() == EXIT_TRANSPORT_ERROR

    assert [s.fatal for s in signals] == [False, True]
    assert orchestrator.discovery.seen_topics == frozenset()
    assert factory.instances[0].stopped


@pytest.mark.asyncio
async def test_run_reports_storage_open_failure(tmp_path: Path) -> None:
    def _refuse(_settings: Any) -> Any:
        raise sqlite3.OperationalError("unable to open database file")

    signals: list[BridgeErrorSignal] = []
    factory = _RuntimeFactory()
    config = _file_config(tmp_path, TEMP)
    orchestrator = PipelineOrchestrator(
        config,
        database=Database(config.storage, connect=_refuse),
        runtime_factory=factory,
        on_error=signals.append,
    )

    assert await orchestrator.run() == EXIT_STORAGE_OPEN_FAILED

    assert factory.instances == []
    assert signals == [
        BridgeErrorSignal("Error: Failed to open database: unable to open database file", EXIT_STORAGE_OPEN_FAILED)
    ]


@pytest.mark.asyncio
async def test_run_reports_broker_connect_failure(tmp_path: Path) -> None:
    factory = _RuntimeFactory(start_error=TransportError("broker unreachable"))
    orchestrator = PipelineOrchestrator(_file_config(tmp_path, TEMP), runtime_factory=factory)

    assert await orchestrator.run() == EXIT_TRANSPORT_ERROR


@pytest.mark.asyncio
async def test_run_fires_retention_sweeps(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    orchestrator = PipelineOrchestrator(
        _file_config(tmp_path, TEMP, cleanup_interval=0.01),
        runtime_factory=_RuntimeFactory(),
    )
    sweeps: list[int] = []
    monkeypatch.setattr(orchestrator.sweeper, "sweep", lambda: sweeps.append(1) or {})

    task = asyncio.create_task(orchestrator.run())
    for _ in range(200):
        if len(sweeps) >= 2:
            break
        await asyncio.sleep(0.01)
    orchestrator.request_stop()

    assert await task == EXIT_OK
    assert len(sweeps) >= 2
