"""Bridge configuration for mqtt2sql."""

from __future__ import annotations

import configparser
import dataclasses
import os
import re
from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mqtt2sql.exceptions import Mqtt2SqlConfigError
from mqtt2sql.models.topic import SeriesKeyMode, TopicConfigEntry

SENSOR_SECTION_PREFIX = "sensor:"

# MQTT protocol level as configured -> human name. Level 3 is MQTT 3.1,
# 4 is MQTT 3.1.1, 5 is MQTT 5.
MQTT_VERSIONS: dict[int, str] = {3: "3.1", 4: "3.1.1", 5: "5.0"}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StorageDriver(StrEnum):
    POSTGRES = "postgres"
    SQLITE = "sqlite"


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker connection parameters.

    Parameters
    ----------
    hostname : str
        Broker host name. Required.
    port : int
        Broker port. Defaults to 8883.
    username, password : str
        Credentials. Only sent when both are set.
    version : int
        Protocol level: 3 (MQTT 3.1), 4 (MQTT 3.1.1) or 5 (MQTT 5).
    use_tls : bool
        Connect with TLS.
    tls_insecure : bool
        Skip broker certificate verification when using TLS.
    client_id : str
        Client identifier. Generated when empty.
    keepalive : int
        Keepalive in seconds.
    topic : str
        Catch-all topic filter used for topic discovery.
    """

    hostname: str
    port: int = 8883
    username: str = ""
    password: str = ""
    version: int = 3
    use_tls: bool = False
    tls_insecure: bool = False
    client_id: str = ""
    keepalive: int = 60
    topic: str = "#"


@dataclasses.dataclass(frozen=True)
class StorageSettings:
    """Relational store parameters.

    ``prefix`` is the only configurable part of any table name and must be
    a plain SQL identifier. ``max_storage_hours`` is the retention window.
    """

    driver: StorageDriver = StorageDriver.POSTGRES
    hostname: str = ""
    port: int = 5432
    username: str = ""
    password: str = ""
    database: str = ""
    prefix: str = "mqtt"
    max_storage_hours: int = 7 * 24
    series_key: SeriesKeyMode = SeriesKeyMode.GROUP_NAME
    config_table: bool = False
    connect_timeout: int = 10

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.max_storage_hours)


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Complete bridge configuration.

    Loaded once at startup and immutable afterwards.
    """

    mqtt: MqttSettings
    storage: StorageSettings = dataclasses.field(default_factory=StorageSettings)
    topics: tuple[TopicConfigEntry, ...] = ()
    cleanup_interval: float = 3600.0

    def __post_init__(self) -> None:
        if not self.mqtt.hostname.strip():
            raise Mqtt2SqlConfigError("Error: hostname is empty!")
        if self.mqtt.version not in MQTT_VERSIONS:
            raise Mqtt2SqlConfigError(f"Error: invalid MQTT version: {self.mqtt.version}")
        if not _IDENTIFIER_RE.match(self.storage.prefix):
            raise Mqtt2SqlConfigError(f"Error: invalid table prefix: {self.storage.prefix!r}")
        if self.storage.max_storage_hours <= 0:
            raise Mqtt2SqlConfigError("Error: maxstoragehours must be positive")
        if self.cleanup_interval <= 0:
            raise Mqtt2SqlConfigError("Error: cleanupinterval must be positive")

    @classmethod
    def from_ini(cls, path: str | Path, **overrides: Any) -> BridgeConfig:
        """Read configuration from an INI file.

        Environment variables (``MQTT2SQL_MQTT_*`` and ``MQTT2SQL_PSQL_*``)
        override file values; explicit keyword arguments override both.
        Accepted keyword arguments are ``mqtt``, ``storage``, ``topics``
        and ``cleanup_interval``, each a mapping of field overrides or a
        complete value.
        """
        parser = configparser.ConfigParser(interpolation=None)
        try:
            with open(path, encoding="utf-8") as fh:
                parser.read_file(fh)
        except OSError as exc:
            raise Mqtt2SqlConfigError(f"Error while reading config file: {path}: {exc}") from exc
        except configparser.Error as exc:
            raise Mqtt2SqlConfigError(f"Error while parsing config file: {path}: {exc}") from exc
        return cls.from_parser(parser, **overrides)

    @classmethod
    def from_parser(cls, parser: configparser.ConfigParser, **overrides: Any) -> BridgeConfig:
        """Build configuration from an already parsed INI document."""
        env = os.environ
        try:
            mqtt_kwargs = _read_mqtt(parser)
            storage_kwargs = _read_storage(parser)
            cleanup_interval = parser.getfloat("bridge", "cleanupinterval", fallback=3600.0)
        except ValueError as exc:
            raise Mqtt2SqlConfigError(f"Error: {exc}") from exc

        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val
        for env_key, field_name in _ENV_STORAGE_MAP.items():
            val = env.get(env_key)
            if val is not None:
                storage_kwargs[field_name] = val

        mqtt_override = overrides.pop("mqtt", None)
        if isinstance(mqtt_override, dict):
            mqtt_kwargs.update(mqtt_override)
        storage_override = overrides.pop("storage", None)
        if isinstance(storage_override, dict):
            storage_kwargs.update(storage_override)

        mqtt = mqtt_override if isinstance(mqtt_override, MqttSettings) else MqttSettings(**mqtt_kwargs)
        storage = (
            storage_override if isinstance(storage_override, StorageSettings) else StorageSettings(**storage_kwargs)
        )

        config_kwargs: dict[str, Any] = {
            "mqtt": mqtt,
            "storage": storage,
            "topics": tuple(_read_topics(parser)),
            "cleanup_interval": cleanup_interval,
        }
        config_kwargs.update(overrides)
        return cls(**config_kwargs)


_ENV_MQTT_MAP = {
    "MQTT2SQL_MQTT_HOSTNAME": "hostname",
    "MQTT2SQL_MQTT_USERNAME": "username",
    "MQTT2SQL_MQTT_PASSWORD": "password",
}

_ENV_STORAGE_MAP = {
    "MQTT2SQL_PSQL_HOSTNAME": "hostname",
    "MQTT2SQL_PSQL_USERNAME": "username",
    "MQTT2SQL_PSQL_PASSWORD": "password",
    "MQTT2SQL_PSQL_DATABASE": "database",
}


def _read_mqtt(parser: configparser.ConfigParser) -> dict[str, Any]:
    section = "mqtt"
    return {
        "hostname": parser.get(section, "hostname", fallback="").strip(),
        "port": parser.getint(section, "port", fallback=8883),
        "username": parser.get(section, "username", fallback=""),
        "password": parser.get(section, "password", fallback=""),
        "version": parser.getint(section, "version", fallback=3),
        "use_tls": parser.getboolean(section, "usetls", fallback=False),
        "tls_insecure": parser.getboolean(section, "tlsinsecure", fallback=False),
        "client_id": parser.get(section, "clientid", fallback=""),
        "keepalive": parser.getint(section, "keepalive", fallback=60),
        "topic": parser.get(section, "topic", fallback="#").strip() or "#",
    }


def _read_storage(parser: configparser.ConfigParser) -> dict[str, Any]:
    section = "psql"
    driver = parser.get(section, "driver", fallback=StorageDriver.POSTGRES.value).strip().lower()
    series_key = parser.get(section, "serieskey", fallback=SeriesKeyMode.GROUP_NAME.value).strip().lower()
    return {
        "driver": StorageDriver(driver),
        "hostname": parser.get(section, "hostname", fallback=""),
        "port": parser.getint(section, "port", fallback=5432),
        "username": parser.get(section, "username", fallback=""),
        "password": parser.get(section, "password", fallback=""),
        "database": parser.get(section, "database", fallback=""),
        "prefix": parser.get(section, "prefix", fallback="mqtt").strip(),
        "max_storage_hours": parser.getint(section, "maxstoragehours", fallback=7 * 24),
        "series_key": SeriesKeyMode(series_key),
        "config_table": parser.getboolean(section, "configtable", fallback=False),
        "connect_timeout": parser.getint(section, "connecttimeout", fallback=10),
    }


def _read_topics(parser: configparser.ConfigParser) -> list[TopicConfigEntry]:
    entries: list[TopicConfigEntry] = []
    for section in parser.sections():
        if not section.startswith(SENSOR_SECTION_PREFIX):
            continue
        values = parser[section]
        sensor_id = values.get("sensorid")
        scale = values.get("scale")
        try:
            entries.append(
                TopicConfigEntry(
                    topic_pattern=values.get("topic", ""),
                    extraction_query=values.get("query"),
                    value_type=values.get("type", "string"),
                    scale_factor=float(scale) if scale else None,
                    sensor_id=int(sensor_id) if sensor_id else None,
                    group=values.get("group", ""),
                    name=values.get("name") or section[len(SENSOR_SECTION_PREFIX) :].strip(),
                    unit=values.get("unit"),
                )
            )
        except (ValidationError, ValueError) as exc:
            raise Mqtt2SqlConfigError(f"Error: invalid sensor section [{section}]: {exc}") from exc
    return entries
