"""Ingestion helpers: payload path queries, extraction and coercion."""

from mqtt2sql.ingestion.extract import StoredValue, coerce, extract_value
from mqtt2sql.ingestion.path import PathSyntaxError, parse_path, resolve_scalar

__all__ = [
    "PathSyntaxError",
    "StoredValue",
    "coerce",
    "extract_value",
    "parse_path",
    "resolve_scalar",
]
