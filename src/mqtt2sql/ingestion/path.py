"""Path queries into parsed JSON payloads.

Paths use the same notation as flattened payload keys: dot notation for
object members and ``[idx]`` for list items, optionally rooted at ``$``
(``$.data.items[0].value``). Members whose names contain dots or
brackets can be quoted: ``$['a.b']``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

_TOKEN_RE = re.compile(
    r"""
    \.(?P<member>[^.\[\]]+)            # .name
    | \[(?P<index>-?\d+)\]             # [0]
    | \[(?P<quote>['"])(?P<quoted>.*?)(?P=quote)\]  # ['name']
    """,
    re.VERBOSE,
)

PathStep = str | int


class PathSyntaxError(ValueError):
    """The query string is not a valid path."""


@lru_cache(maxsize=256)
def parse_path(query: str) -> tuple[PathStep, ...]:
    """Split *query* into member names and list indexes."""
    text = query.strip()
    if text.startswith("$"):
        text = text[1:]
    elif text and not text.startswith(("[", ".")):
        text = "." + text
    if not text:
        return ()

    steps: list[PathStep] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise PathSyntaxError(f"invalid path {query!r} at offset {pos}")
        if match.group("member") is not None:
            steps.append(match.group("member"))
        elif match.group("index") is not None:
            steps.append(int(match.group("index")))
        else:
            steps.append(match.group("quoted"))
        pos = match.end()
    return tuple(steps)


_MISSING = object()


def _step(node: Any, step: PathStep) -> Any:
    if isinstance(step, int):
        if isinstance(node, list) and -len(node) <= step < len(node):
            return node[step]
        return _MISSING
    if isinstance(node, Mapping):
        return node.get(step, _MISSING)
    return _MISSING


def resolve_scalar(document: Any, query: str) -> tuple[bool, Any]:
    """Walk *document* along *query*.

    Returns ``(True, value)`` when the path ends on a scalar (string,
    number or boolean) and ``(False, None)`` when any step is missing or
    the final node is an object, array or null.
    """
    node = document
    for step in parse_path(query):
        node = _step(node, step)
        if node is _MISSING:
            return False, None
    if node is None or isinstance(node, (Mapping, list)):
        return False, None
    return True, node
