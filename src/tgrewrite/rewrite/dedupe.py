"""Short-lived memory of messages the engine already rewrote."""

from __future__ import annotations

import time
from typing import Callable, Dict, Tuple

__all__ = ["DedupeCache", "DEFAULT_DEDUPE_TTL"]

DEFAULT_DEDUPE_TTL = 300.0

MessageKey = Tuple[int, int]


class DedupeCache:
    """TTL set of ``(conversation_id, message_id)`` pairs.

    Only successful edits are remembered, so a re-delivered update for the
    same message is dropped before it costs another model call. Expired
    entries are evicted whenever the cache is queried.
    """

    def __init__(self, ttl: float = DEFAULT_DEDUPE_TTL, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = max(0.0, float(ttl))
        self._clock = clock
        self._entries: Dict[MessageKey, float] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, conversation_id: int, message_id: int) -> bool:
        self._evict_expired()
        return (conversation_id, message_id) in self._entries

    def remember(self, conversation_id: int, message_id: int) -> None:
        self._evict_expired()
        self._entries[(conversation_id, message_id)] = self._clock()

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, seen_at in self._entries.items() if now - seen_at > self._ttl]
        for key in expired:
            del self._entries[key]
