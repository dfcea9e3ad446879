"""Topic discovery.

Every message on the catch-all subscription upserts one row per topic in
``{prefix}_sensors_seen`` holding the last sighting time and the latest
raw payload. Runs independently of extraction and change detection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from mqtt2sql._redact import redact_for_log
from mqtt2sql.storage.router import StorageRouter

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TopicDiscoveryTracker:
    def __init__(
        self,
        router: StorageRouter,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._router = router
        self._clock = clock
        self._seen: set[str] = set()

    @property
    def seen_topics(self) -> frozenset[str]:
        """Topics sighted since this process started."""
        return frozenset(self._seen)

    def record(self, topic: str, payload: bytes) -> bool:
        """Upsert the sighting of *topic*. Returns ``False`` if the write failed."""
        text = payload.decode("utf-8", errors="replace")
        if topic not in self._seen:
            self._seen.add(topic)
            _logger.info("New topic seen: %s payload=%s", topic, redact_for_log(text, max_string=120))
        return self._router.upsert_seen(topic, text, self._clock())
