"""Conversation context cache with one-shot history backfill."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import AbstractSet, Awaitable, Callable, Deque, Dict, List, Protocol, Set

from .types import ContextMessage, InboundEvent, resolve_sender_name

__all__ = [
    "ContextScope",
    "ContextCache",
    "CachedHistory",
    "HistoryProvider",
    "HistoryFetcher",
]

LOGGER = logging.getLogger(__name__)


class HistoryProvider(Protocol):
    """Message-history query used to build generation context."""

    async def history(
        self,
        conversation_id: int,
        before: int,
        limit: int,
        topic_root_id: int | None = None,
    ) -> List[ContextMessage]:
        ...


HistoryFetcher = Callable[[int, int, int, "int | None"], Awaitable[List[ContextMessage]]]


@dataclass(frozen=True, slots=True)
class ContextScope:
    chat_id: int
    topic_root_id: int | None = None


@dataclass(slots=True)
class _CachedMessage:
    message_id: int
    message: ContextMessage


class ContextCache:
    """Keeps the most recent messages per chat (and forum topic)."""

    def __init__(self, per_scope_limit: int) -> None:
        self._limit = max(0, int(per_scope_limit))
        self._entries: Dict[ContextScope, Deque[_CachedMessage]] = {}
        self._hydrated: Set[ContextScope] = set()

    @property
    def per_scope_limit(self) -> int:
        return self._limit

    def set_limit(self, per_scope_limit: int) -> None:
        self._limit = max(0, int(per_scope_limit))
        for messages in self._entries.values():
            while len(messages) > self._limit:
                messages.popleft()

    def retain_chats(self, chats: AbstractSet[int]) -> None:
        self._entries = {scope: msgs for scope, msgs in self._entries.items() if scope.chat_id in chats}
        self._hydrated = {scope for scope in self._hydrated if scope.chat_id in chats}

    def observe(self, event: InboundEvent) -> None:
        text = (event.text or "").strip()
        if not text:
            return
        sender = resolve_sender_name(event.is_self_authored, event.sender_name)
        scope = ContextScope(event.conversation_id, event.topic_root_id)
        self.record(scope, event.message_id, ContextMessage(sender_name=sender, text=text))

    def record(self, scope: ContextScope, message_id: int, message: ContextMessage) -> None:
        messages = self._entries.setdefault(scope, deque())
        if any(cached.message_id == message_id for cached in messages):
            return
        messages.append(_CachedMessage(message_id=message_id, message=message))
        while len(messages) > self._limit:
            messages.popleft()

    def recent_before(self, scope: ContextScope, message_id: int, count: int) -> List[ContextMessage]:
        """Return up to ``count`` cached messages, oldest first, excluding ``message_id``."""

        if count <= 0:
            return []
        recent: List[ContextMessage] = []
        for cached in reversed(self._entries.get(scope, ())):
            if cached.message_id == message_id:
                continue
            recent.append(cached.message)
            if len(recent) >= count:
                break
        recent.reverse()
        return recent

    def should_backfill(self, scope: ContextScope, count: int, cached_count: int) -> bool:
        return count > 0 and cached_count < count and scope not in self._hydrated

    def mark_hydrated(self, scope: ContextScope) -> None:
        self._hydrated.add(scope)

    def is_hydrated(self, scope: ContextScope) -> bool:
        return scope in self._hydrated


class CachedHistory:
    """History provider that serves from the cache and backfills once per scope."""

    def __init__(self, cache: ContextCache, fetcher: HistoryFetcher) -> None:
        self._cache = cache
        self._fetch = fetcher

    @property
    def cache(self) -> ContextCache:
        return self._cache

    async def history(
        self,
        conversation_id: int,
        before: int,
        limit: int,
        topic_root_id: int | None = None,
    ) -> List[ContextMessage]:
        scope = ContextScope(conversation_id, topic_root_id)
        context = self._cache.recent_before(scope, before, limit)
        if not self._cache.should_backfill(scope, limit, len(context)):
            return context

        LOGGER.info(
            "Fetching context messages from telegram (chat_id=%s, topic_root_id=%s, message_id=%s, requested=%s, cached=%s)",
            conversation_id,
            topic_root_id,
            before,
            limit,
            len(context),
        )
        self._cache.mark_hydrated(scope)
        try:
            fetched = await self._fetch(conversation_id, before, limit, topic_root_id)
        except Exception as exc:  # noqa: BLE001 - degrade to cached context
            LOGGER.warning(
                "Failed to fetch context messages; using cached context only (chat_id=%s, message_id=%s): %s",
                conversation_id,
                before,
                exc,
            )
            return context
        LOGGER.info(
            "Fetched %s context message(s) from telegram (chat_id=%s, message_id=%s)",
            len(fetched),
            conversation_id,
            before,
        )
        return list(fetched)[-limit:]
