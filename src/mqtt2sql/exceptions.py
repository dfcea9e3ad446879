"""Custom exception hierarchy for mqtt2sql."""

from __future__ import annotations

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_STORAGE_OPEN_FAILED = 2
EXIT_TRANSPORT_ERROR = 3


class Mqtt2SqlError(Exception):
    """Base exception for all mqtt2sql errors.

    ``exit_code`` is the process exit code requested when the error
    escapes to the command line. Zero means the error is never fatal.
    """

    exit_code: int = EXIT_OK


class Mqtt2SqlConfigError(Mqtt2SqlError):
    """Invalid or missing configuration."""

    exit_code = EXIT_CONFIG_ERROR


class StorageError(Mqtt2SqlError):
    """A single statement failed (connection closed, prepare or execute error)."""

    def __init__(self, message: str, *, table: str = "") -> None:
        self.table = table
        super().__init__(message)


class StorageOpenError(StorageError):
    """The storage connection could not be opened at startup."""

    exit_code = EXIT_STORAGE_OPEN_FAILED


class TransportError(Mqtt2SqlError):
    """The broker connection failed in a way the bridge cannot recover from."""

    exit_code = EXIT_TRANSPORT_ERROR


class ExtractionError(Mqtt2SqlError):
    """A payload could not be turned into a typed value.

    Covers parse failures, queries that resolve to no scalar node and
    type coercion failures. The message is dropped.
    """

    def __init__(self, message: str, *, topic: str = "", query: str | None = None) -> None:
        self.topic = topic
        self.query = query
        super().__init__(message)
