"""Pipeline orchestrator.

Owns the storage connection, the last-value cache and the MQTT runtime,
and processes every bus message and sweep timer firing from one asyncio
queue, strictly one event at a time and in delivery order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from paho.mqtt.client import topic_matches_sub

from mqtt2sql._mqtt import (
    BusEvent,
    ConnectionEvent,
    MessageEvent,
    MqttRuntime,
    SubscriptionEvent,
)
from mqtt2sql._redact import redact_for_log
from mqtt2sql.config import BridgeConfig
from mqtt2sql.discovery import TopicDiscoveryTracker
from mqtt2sql.exceptions import (
    EXIT_OK,
    EXIT_TRANSPORT_ERROR,
    ExtractionError,
    Mqtt2SqlError,
    StorageOpenError,
)
from mqtt2sql.ingestion.extract import extract_value
from mqtt2sql.models.topic import TopicConfigEntry
from mqtt2sql.registry import TopicRegistry
from mqtt2sql.retention import RetentionSweeper
from mqtt2sql.state.cache import LastValueCache
from mqtt2sql.state.change import ChangeDetector
from mqtt2sql.storage.database import Database
from mqtt2sql.storage.router import StorageRouter

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class BridgeErrorSignal:
    """Error reported upwards. A zero ``exit_code`` is advisory."""

    message: str
    exit_code: int = EXIT_OK

    @property
    def fatal(self) -> bool:
        return self.exit_code != EXIT_OK


@dataclass(frozen=True)
class SweepTick:
    """Retention timer firing."""


class _Stop:
    pass


_STOP = _Stop()

PipelineEvent = BusEvent | SweepTick


class PipelineOrchestrator:
    """Routes bus messages through extraction, change detection and storage.

    Usage::

        orchestrator = PipelineOrchestrator(config, on_error=print_signal)
        exit_code = await orchestrator.run()
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        database: Database | None = None,
        on_error: Callable[[BridgeErrorSignal], None] | None = None,
        runtime_factory: Callable[..., MqttRuntime] = MqttRuntime,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._registry = TopicRegistry(config.topics, mode=config.storage.series_key)
        self._db = database or Database(config.storage)
        self._router = StorageRouter(
            self._db,
            prefix=config.storage.prefix,
            mode=config.storage.series_key,
            clock=clock,
        )
        self._cache = LastValueCache()
        self._detector = ChangeDetector(self._cache, self._router.latest_value)
        self._discovery = TopicDiscoveryTracker(self._router, clock=clock)
        self._sweeper = RetentionSweeper(self._router, retention=config.storage.retention, clock=clock)
        self._on_error = on_error
        self._runtime_factory = runtime_factory
        self._runtime: MqttRuntime | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._fatal: BridgeErrorSignal | None = None

    @property
    def registry(self) -> TopicRegistry:
        return self._registry

    @property
    def router(self) -> StorageRouter:
        return self._router

    @property
    def cache(self) -> LastValueCache:
        return self._cache

    @property
    def discovery(self) -> TopicDiscoveryTracker:
        return self._discovery

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open_storage(self) -> None:
        """Open the connection and bootstrap the schema.

        Raises :class:`StorageOpenError` when the connection cannot be opened.
        """
        if not self._db.open():
            raise StorageOpenError(f"Error: Failed to open database: {self._db.last_error}")
        with_config_table = self._config.storage.config_table
        self._router.bootstrap(with_config_table=with_config_table)
        if with_config_table:
            self._registry = self._registry.extended(self._router.load_topic_entries())
        _logger.info("Topic registry ready with %d entries", len(self._registry))

    def submit(self, event: PipelineEvent) -> None:
        """Queue an event for processing. Must be called on the loop thread."""
        self._queue.put_nowait(event)

    def request_stop(self) -> None:
        """Ask :meth:`run` to return after the events already queued."""
        self._queue.put_nowait(_STOP)

    async def run(self) -> int:
        """Run the bridge until stopped or a fatal error occurs.

        Returns the process exit code: zero after :meth:`request_stop`,
        otherwise the exit code of the fatal error.
        """
        loop = asyncio.get_running_loop()
        sweep_task: asyncio.Task[None] | None = None
        try:
            self.open_storage()
            runtime = self._runtime_factory(
                loop=loop,
                settings=self._config.mqtt,
                patterns=self._registry.patterns,
                on_event=self.submit,
                logger=logging.getLogger("mqtt2sql.mqtt"),
            )
            self._runtime = runtime
            await loop.run_in_executor(None, runtime.start)
            sweep_task = asyncio.create_task(self._sweep_timer())

            while self._fatal is None:
                event = await self._queue.get()
                if event is _STOP:
                    break
                self.handle_event(event)
        except Mqtt2SqlError as exc:
            self._signal(BridgeErrorSignal(str(exc), exc.exit_code))
        finally:
            if sweep_task is not None:
                sweep_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweep_task
            await self._stop_runtime(loop)
            self._db.close()
        return self._fatal.exit_code if self._fatal is not None else EXIT_OK

    async def _stop_runtime(self, loop: asyncio.AbstractEventLoop) -> None:
        runtime = self._runtime
        self._runtime = None
        if runtime is None:
            return
        try:
            await loop.run_in_executor(None, runtime.stop)
        except Exception:
            _logger.debug("MQTT runtime stop failed", exc_info=True)

    async def _sweep_timer(self) -> None:
        interval = self._config.cleanup_interval
        while True:
            await asyncio.sleep(interval)
            self.submit(SweepTick())

    def _signal(self, signal: BridgeErrorSignal) -> None:
        if signal.fatal:
            _logger.error("%s (exit code %d)", signal.message, signal.exit_code)
            if self._fatal is None:
                self._fatal = signal
        else:
            _logger.warning("%s", signal.message)
        if self._on_error is not None:
            self._on_error(signal)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_event(self, event: PipelineEvent) -> None:
        """Process one event to completion."""
        if isinstance(event, MessageEvent):
            try:
                self.handle_message(event.topic, event.payload)
            except Exception:
                _logger.exception("Unexpected error while handling message topic=%s", event.topic)
        elif isinstance(event, SweepTick):
            try:
                self._sweeper.sweep()
            except Exception:
                _logger.exception("Unexpected error during retention sweep")
        elif isinstance(event, ConnectionEvent):
            self._handle_connection(event)
        elif isinstance(event, SubscriptionEvent):
            self._handle_subscription(event)

    def _handle_connection(self, event: ConnectionEvent) -> None:
        if event.connected:
            _logger.info("MQTT connected, subscribing %d topics", len(self._registry) + 1)
            return
        message = f"MQTT error: {event.kind.description}"
        if event.detail:
            message = f"{message} ({event.detail})"
        if event.kind.is_fatal:
            self._signal(BridgeErrorSignal(message, EXIT_TRANSPORT_ERROR))
        else:
            self._signal(BridgeErrorSignal(message))

    def _handle_subscription(self, event: SubscriptionEvent) -> None:
        if event.ok:
            _logger.info("Subscribed to %s", event.pattern)
            return
        detail = f": {event.detail}" if event.detail else ""
        self._signal(BridgeErrorSignal(f"Failed to subscribe to {event.pattern}{detail}"))

    def handle_message(self, topic: str, payload: bytes) -> int:
        """Handle one message; returns the number of rows written."""
        _logger.debug(
            "Message received topic=%s payload=%s",
            topic,
            redact_for_log(payload.decode("utf-8", errors="replace"), max_string=200),
        )
        if topic_matches_sub(self._config.mqtt.topic, topic):
            self._discovery.record(topic, payload)
        written = 0
        for entry in self._registry.match(topic):
            if self._process_entry(entry, topic, payload):
                written += 1
        return written

    def _process_entry(self, entry: TopicConfigEntry, topic: str, payload: bytes) -> bool:
        try:
            value = extract_value(topic, payload, entry)
        except ExtractionError as exc:
            _logger.warning(
                "Dropping message topic=%s query=%s type=%s: %s",
                topic,
                entry.extraction_query,
                entry.value_type,
                exc,
            )
            return False

        key = self._registry.series_key(entry)
        if not self._detector.should_write(key, entry.value_type, value):
            return False
        if not self._router.insert(key, entry.value_type, value):
            return False
        self._detector.record_write(key, entry.value_type, value)
        return True
