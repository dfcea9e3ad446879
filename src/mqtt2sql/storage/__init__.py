"""Relational storage: connection wrapper, dialects and the type router."""

from mqtt2sql.storage.database import Database
from mqtt2sql.storage.dialect import DIALECTS, POSTGRES, SQLITE, Dialect
from mqtt2sql.storage.router import StorageRouter

__all__ = [
    "DIALECTS",
    "Database",
    "Dialect",
    "POSTGRES",
    "SQLITE",
    "StorageRouter",
]
