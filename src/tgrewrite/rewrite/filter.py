"""Eligibility rules that turn inbound chat events into rewrite tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import List

from .context import HistoryProvider
from .types import ContextMessage, InboundEvent, RewriteTask, Snapshot

__all__ = ["EventFilter", "INTERNAL_MARKER", "strip_internal_marker", "has_internal_marker"]

LOGGER = logging.getLogger(__name__)

# Zero-width sequence reserved for engine-produced text. The coordinator strips
# it from model output and appends it to edits when ``mark_edits`` is enabled.
INTERNAL_MARKER = "\u2063\u200b\u2063"
_DEFAULT_HISTORY_TIMEOUT = 10.0


def has_internal_marker(text: str | None) -> bool:
    return bool(text) and INTERNAL_MARKER in text  # type: ignore[operator]


def strip_internal_marker(text: str) -> str:
    return text.replace(INTERNAL_MARKER, "")


class EventFilter:
    """Decides which events become :class:`RewriteTask` instances.

    Rules are evaluated in order and the first failing rule rejects:

    1. the message was sent by the controlled account,
    2. its chat is monitored by the snapshot in effect at filter time,
    3. it carries non-blank text,
    4. the text does not carry :data:`INTERNAL_MARKER`.

    Accepted events pull up to ``snapshot.context_depth`` preceding messages
    through the history provider; the read is bounded by ``history_timeout``
    and a failed read falls back to an empty context.
    """

    def __init__(
        self,
        history: HistoryProvider | None = None,
        *,
        history_timeout: float = _DEFAULT_HISTORY_TIMEOUT,
    ) -> None:
        self._history = history
        self._history_timeout = max(0.0, float(history_timeout))

    def rejection_reason(self, event: InboundEvent, snapshot: Snapshot) -> str | None:
        if not event.is_self_authored:
            return "not_self_authored"
        if not snapshot.monitors(event.conversation_id):
            return "chat_not_monitored"
        if not event.text or not event.text.strip():
            return "no_text"
        if has_internal_marker(event.text):
            return "internal_marker"
        return None

    async def accept(self, event: InboundEvent, snapshot: Snapshot) -> RewriteTask | None:
        reason = self.rejection_reason(event, snapshot)
        if reason is not None:
            LOGGER.debug(
                "Rejected event (chat_id=%s, message_id=%s, reason=%s)",
                event.conversation_id,
                event.message_id,
                reason,
            )
            return None

        context = await self._load_context(event, snapshot.context_depth)
        return RewriteTask(
            conversation_id=event.conversation_id,
            message_id=event.message_id,
            original_text=(event.text or "").strip(),
            context=tuple(context),
            topic_root_id=event.topic_root_id,
        )

    async def _load_context(self, event: InboundEvent, depth: int) -> List[ContextMessage]:
        if depth <= 0 or self._history is None:
            return []
        try:
            messages = await asyncio.wait_for(
                self._history.history(
                    event.conversation_id,
                    event.message_id,
                    depth,
                    event.topic_root_id,
                ),
                timeout=self._history_timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Context history timed out after %.1fs (chat_id=%s, message_id=%s)",
                self._history_timeout,
                event.conversation_id,
                event.message_id,
            )
            return []
        except Exception as exc:  # noqa: BLE001 - context is best effort
            LOGGER.warning(
                "Context history failed (chat_id=%s, message_id=%s): %s",
                event.conversation_id,
                event.message_id,
                exc,
            )
            return []
        return list(messages)[-depth:]
