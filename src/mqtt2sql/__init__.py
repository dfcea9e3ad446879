"""mqtt2sql - Store MQTT telemetry as a time series in a relational database."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mqtt2sql")
except PackageNotFoundError:
    __version__ = "0+local"
from mqtt2sql.config import BridgeConfig, MqttSettings, StorageDriver, StorageSettings
from mqtt2sql.exceptions import (
    ExtractionError,
    Mqtt2SqlConfigError,
    Mqtt2SqlError,
    StorageError,
    StorageOpenError,
    TransportError,
)
from mqtt2sql.models import SeriesKey, SeriesKeyMode, TopicConfigEntry, ValueType
from mqtt2sql.pipeline import BridgeErrorSignal, PipelineOrchestrator
from mqtt2sql.registry import TopicRegistry

__all__ = [
    "__version__",
    "BridgeConfig",
    "BridgeErrorSignal",
    "ExtractionError",
    "Mqtt2SqlConfigError",
    "Mqtt2SqlError",
    "MqttSettings",
    "PipelineOrchestrator",
    "SeriesKey",
    "SeriesKeyMode",
    "StorageDriver",
    "StorageError",
    "StorageOpenError",
    "StorageSettings",
    "TopicConfigEntry",
    "TopicRegistry",
    "TransportError",
    "ValueType",
]
