"""Short-lived memory of message ids we just sent."""

from __future__ import annotations

import threading
import time
from typing import Callable


class RecentlySentGuard:
    """Hold sent ids for a TTL so the next poll cannot mistake them for new mail.

    The store's ``sentByUs`` flag is authoritative once written; this only
    covers the window before that write lands.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expires: dict[str, float] = {}
        self._lock = threading.Lock()

    def mark(self, message_id: str) -> None:
        if not message_id:
            return
        with self._lock:
            self._expires[str(message_id)] = self._clock() + self.ttl_seconds

    def is_marked(self, message_id: str) -> bool:
        with self._lock:
            self._purge()
            return str(message_id) in self._expires

    __contains__ = is_marked

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._expires)

    def _purge(self) -> None:
        now = self._clock()
        expired = [message_id for message_id, deadline in self._expires.items() if deadline <= now]
        for message_id in expired:
            del self._expires[message_id]
