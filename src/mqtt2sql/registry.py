"""Topic configuration registry.

Immutable mapping from subscribed topic patterns to their
:class:`TopicConfigEntry`. Built once at startup.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from types import MappingProxyType

from paho.mqtt.client import topic_matches_sub

from mqtt2sql.exceptions import Mqtt2SqlConfigError
from mqtt2sql.models.topic import SeriesKey, SeriesKeyMode, TopicConfigEntry

_logger = logging.getLogger(__name__)


class TopicRegistry:
    """Lookup of topic entries by pattern and by concrete topic.

    Every pattern maps to exactly one entry. Each entry's series key is
    resolved eagerly so a misconfigured entry fails at startup rather than
    on its first message.
    """

    def __init__(self, entries: Iterable[TopicConfigEntry], *, mode: SeriesKeyMode) -> None:
        self._mode = mode
        by_pattern: dict[str, TopicConfigEntry] = {}
        keys: dict[str, SeriesKey] = {}
        for entry in entries:
            if entry.topic_pattern in by_pattern:
                raise Mqtt2SqlConfigError(f"Error: topic {entry.topic_pattern!r} is configured more than once")
            try:
                keys[entry.topic_pattern] = entry.series_key(mode)
            except ValueError as exc:
                raise Mqtt2SqlConfigError(f"Error: {exc}") from exc
            by_pattern[entry.topic_pattern] = entry
        self._entries = MappingProxyType(by_pattern)
        self._keys = MappingProxyType(keys)
        _logger.debug("Topic registry built with %d entries mode=%s", len(by_pattern), mode)

    @property
    def mode(self) -> SeriesKeyMode:
        return self._mode

    @property
    def patterns(self) -> tuple[str, ...]:
        """Distinct configured patterns, one subscription each."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TopicConfigEntry]:
        return iter(self._entries.values())

    def lookup(self, pattern: str) -> TopicConfigEntry | None:
        """Return the entry configured for *pattern*, if any."""
        return self._entries.get(pattern)

    def series_key(self, entry: TopicConfigEntry) -> SeriesKey:
        return self._keys[entry.topic_pattern]

    def match(self, topic: str) -> list[TopicConfigEntry]:
        """Return the entries whose pattern matches the concrete *topic*."""
        exact = self._entries.get(topic)
        matches = [exact] if exact is not None else []
        for pattern, entry in self._entries.items():
            if pattern == topic:
                continue
            if ("+" in pattern or "#" in pattern) and topic_matches_sub(pattern, topic):
                matches.append(entry)
        return matches

    def extended(self, entries: Iterable[TopicConfigEntry]) -> TopicRegistry:
        """Return a new registry with *entries* added to the current ones."""
        return TopicRegistry([*self._entries.values(), *entries], mode=self._mode)
