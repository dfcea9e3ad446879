"""Internal MQTT runtime and bus event types."""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import ssl
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from mqtt2sql.config import MqttSettings
from mqtt2sql.exceptions import TransportError

_PROTOCOLS: dict[int, Any] = {
    3: mqtt.MQTTv31,
    4: mqtt.MQTTv311,
    5: mqtt.MQTTv5,
}


class ConnectionErrorKind(enum.IntEnum):
    """Classification of broker connection errors."""

    NO_ERROR = 0
    INVALID_PROTOCOL_VERSION = 1
    ID_REJECTED = 2
    SERVER_UNAVAILABLE = 3
    BAD_USERNAME_OR_PASSWORD = 4
    NOT_AUTHORIZED = 5
    TRANSPORT_INVALID = 256
    PROTOCOL_VIOLATION = 257
    UNKNOWN_ERROR = 258

    @property
    def description(self) -> str:
        return _KIND_DESCRIPTIONS[self]

    @property
    def is_fatal(self) -> bool:
        """Errors after which the bridge cannot continue."""
        return self not in (ConnectionErrorKind.NO_ERROR, ConnectionErrorKind.TRANSPORT_INVALID)


_KIND_DESCRIPTIONS: dict[ConnectionErrorKind, str] = {
    ConnectionErrorKind.NO_ERROR: "No error occurred.",
    ConnectionErrorKind.INVALID_PROTOCOL_VERSION: (
        "Error: The broker does not accept a connection using the specified protocol version."
    ),
    ConnectionErrorKind.ID_REJECTED: "Error: The client ID is malformed. This might be related to its length.",
    ConnectionErrorKind.SERVER_UNAVAILABLE: (
        "Error: The network connection has been established, but the service is unavailable on the broker side."
    ),
    ConnectionErrorKind.BAD_USERNAME_OR_PASSWORD: "Error: The data in the username or password is malformed.",
    ConnectionErrorKind.NOT_AUTHORIZED: "Error: The client is not authorized to connect.",
    ConnectionErrorKind.TRANSPORT_INVALID: (
        "Error: The underlying transport caused an error. "
        "For example, the connection might have been interrupted unexpectedly."
    ),
    ConnectionErrorKind.PROTOCOL_VIOLATION: (
        "Error: The client encountered a protocol violation, and therefore closed the connection."
    ),
    ConnectionErrorKind.UNKNOWN_ERROR: "Error: An unknown error occurred.",
}

# MQTT 5 reason codes (paho maps MQTT 3 CONNACK codes onto these) and the
# raw MQTT 3 CONNACK return codes.
_REASON_KINDS: dict[int, ConnectionErrorKind] = {
    0: ConnectionErrorKind.NO_ERROR,
    1: ConnectionErrorKind.INVALID_PROTOCOL_VERSION,
    2: ConnectionErrorKind.ID_REJECTED,
    3: ConnectionErrorKind.SERVER_UNAVAILABLE,
    4: ConnectionErrorKind.BAD_USERNAME_OR_PASSWORD,
    5: ConnectionErrorKind.NOT_AUTHORIZED,
    128: ConnectionErrorKind.UNKNOWN_ERROR,
    129: ConnectionErrorKind.PROTOCOL_VIOLATION,
    130: ConnectionErrorKind.PROTOCOL_VIOLATION,
    132: ConnectionErrorKind.INVALID_PROTOCOL_VERSION,
    133: ConnectionErrorKind.ID_REJECTED,
    134: ConnectionErrorKind.BAD_USERNAME_OR_PASSWORD,
    135: ConnectionErrorKind.NOT_AUTHORIZED,
    136: ConnectionErrorKind.SERVER_UNAVAILABLE,
    137: ConnectionErrorKind.SERVER_UNAVAILABLE,
    138: ConnectionErrorKind.NOT_AUTHORIZED,
    140: ConnectionErrorKind.BAD_USERNAME_OR_PASSWORD,
}


def classify_reason_code(reason_code: Any) -> ConnectionErrorKind:
    """Map a paho reason code (object or int) to a :class:`ConnectionErrorKind`."""
    value = getattr(reason_code, "value", reason_code)
    try:
        return _REASON_KINDS.get(int(value), ConnectionErrorKind.UNKNOWN_ERROR)
    except (TypeError, ValueError):
        return ConnectionErrorKind.UNKNOWN_ERROR


@dataclass(frozen=True)
class MessageEvent:
    """A message delivered by the broker."""

    topic: str
    payload: bytes


@dataclass(frozen=True)
class ConnectionEvent:
    """Connection lifecycle change; ``kind`` is ``NO_ERROR`` on (re)connect."""

    kind: ConnectionErrorKind
    detail: str = ""

    @property
    def connected(self) -> bool:
        return self.kind is ConnectionErrorKind.NO_ERROR


@dataclass(frozen=True)
class SubscriptionEvent:
    """Outcome of one subscription request."""

    pattern: str
    ok: bool
    detail: str = ""


BusEvent = MessageEvent | ConnectionEvent | SubscriptionEvent


class MqttRuntime:
    """Threaded paho-mqtt runtime that emits bus events onto an asyncio loop.

    Subscriptions are issued from the connect callback, so they are
    repeated after paho's automatic reconnect.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        patterns: Sequence[str],
        on_event: Callable[[BusEvent], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._settings = settings
        self._on_event = on_event
        self._logger = logger or logging.getLogger(__name__)
        # Configured patterns first, then the catch-all filter once.
        ordered = [p for p in patterns if p != settings.topic]
        self._patterns: tuple[str, ...] = (*dict.fromkeys(ordered), settings.topic)
        self._pending: dict[int, str] = {}
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def _emit(self, event: BusEvent) -> None:
        self._loop.call_soon_threadsafe(self._on_event, event)

    def _build_client(self) -> mqtt.Client:
        settings = self._settings
        client_id = settings.client_id or f"mqtt2sql-{secrets.token_hex(4)}"
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=_PROTOCOLS[settings.version],
        )
        client.enable_logger(self._logger)
        if settings.username and settings.password:
            client.username_pw_set(settings.username, settings.password)
        if settings.use_tls:
            if settings.tls_insecure:
                client.tls_set(cert_reqs=ssl.CERT_NONE)
                client.tls_insecure_set(True)
            else:
                client.tls_set()
        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect
        self._logger.debug(
            "Prepared MQTT client client_id=%s tls=%s version=%s",
            client_id,
            settings.use_tls,
            settings.version,
        )
        return client

    def start(self) -> None:
        """Connect to the broker and start the network loop thread.

        Raises :class:`TransportError` when the broker cannot be reached.
        """
        self.stop()
        settings = self._settings
        client = self._build_client()
        self._logger.info("Connecting to MQTT broker host=%s port=%s", settings.hostname, settings.port)
        try:
            client.connect(settings.hostname, settings.port, keepalive=settings.keepalive)
        except (OSError, ValueError) as exc:
            raise TransportError(f"{ConnectionErrorKind.TRANSPORT_INVALID.description} ({exc})") from exc
        client.loop_start()
        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._pending.clear()

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
        kind = classify_reason_code(reason_code)
        if kind is not ConnectionErrorKind.NO_ERROR:
            self._logger.warning("MQTT connect failed: %s", reason_code)
            self._emit(ConnectionEvent(kind, str(reason_code)))
            return
        self._logger.info("MQTT connection established")
        self._emit(ConnectionEvent(kind))
        for pattern in self._patterns:
            result, mid = client.subscribe(pattern, qos=0)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._emit(SubscriptionEvent(pattern, ok=False, detail=mqtt.error_string(result)))
                continue
            self._pending[mid] = pattern
            self._logger.debug("MQTT subscribing topic=%s mid=%s", pattern, mid)

    def _on_subscribe(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        mid: int,
        reason_code_list: Sequence[Any],
        _properties: Any,
    ) -> None:
        pattern = self._pending.pop(mid, None)
        if pattern is None:
            return
        failures = [rc for rc in reason_code_list if getattr(rc, "is_failure", False)]
        if failures:
            self._emit(SubscriptionEvent(pattern, ok=False, detail=str(failures[0])))
        else:
            self._emit(SubscriptionEvent(pattern, ok=True))

    def _on_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._emit(MessageEvent(topic=msg.topic, payload=bytes(msg.payload)))

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if not self._running:
            return
        self._logger.warning("MQTT disconnected: %s", reason_code)
        self._emit(ConnectionEvent(ConnectionErrorKind.TRANSPORT_INVALID, str(reason_code)))
