"""Process-wide TTL cache for fetched template bundles."""

import logging
import threading
import time
from collections.abc import Callable

from app.models.generation_models import TemplateContent

logger = logging.getLogger(__name__)


class TemplateCache:
    """Thread-safe template store with time-based expiry.

    Upserts are idempotent: concurrent runs fetching the same template may both
    write it, the last write wins and both values are equivalent.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, TemplateContent]] = {}

    def get(self, name: str) -> TemplateContent | None:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return None
            stored_at, content = entry
            age = self._clock() - stored_at
            if age > self.ttl:
                del self._entries[name]
                logger.info("Template %s cache expired (%.0fs old)", name, age)
                return None
            return content

    def set(self, name: str, content: TemplateContent) -> None:
        with self._lock:
            self._entries[name] = (self._clock(), content)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Template cache cleared (%d templates removed)", count)

    def stats(self) -> dict[str, object]:
        with self._lock:
            return {"template_count": len(self._entries), "templates": list(self._entries)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
