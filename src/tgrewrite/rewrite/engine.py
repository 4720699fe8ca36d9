"""Engine loop feeding inbound events and settings reloads into the coordinator."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping

from .context import ContextCache
from .coordinator import CoordinatorClosedError, RewriteCoordinator
from .dedupe import DedupeCache
from .filter import EventFilter
from .settings_store import SettingsStore
from .types import InboundEvent, RewriteResult, Snapshot, TaskOutcome

__all__ = ["RewriteEngine", "NoticeListener"]

LOGGER = logging.getLogger(__name__)

NoticeListener = Callable[[str, Mapping[str, Any]], Any]


class RewriteEngine:
    """Glue between the transport, the settings store, and the coordinator.

    Each conversation gets its own lane: events of one chat are filtered and
    submitted in arrival order, so submission order matches send order, while
    a slow history read in one chat never holds up another. Generation and
    editing then proceed concurrently in the coordinator.
    """

    def __init__(
        self,
        settings: SettingsStore,
        event_filter: EventFilter,
        coordinator: RewriteCoordinator,
        *,
        context_cache: ContextCache | None = None,
        dedupe: DedupeCache | None = None,
        skip_before: datetime | None = None,
        shutdown_grace: float = 10.0,
        on_notice: NoticeListener | None = None,
    ) -> None:
        self._settings = settings
        self._filter = event_filter
        self._coordinator = coordinator
        self._cache = context_cache
        self._dedupe = dedupe if dedupe is not None else DedupeCache()
        self._lanes: Dict[int, "asyncio.Task[None]"] = {}
        self._lane_queues: Dict[int, "asyncio.Queue[InboundEvent]"] = {}
        self._skip_before = skip_before
        self._shutdown_grace = shutdown_grace
        self._on_notice = on_notice

    @property
    def settings(self) -> SettingsStore:
        return self._settings

    @property
    def coordinator(self) -> RewriteCoordinator:
        return self._coordinator

    async def handle_event(self, event: InboundEvent) -> "asyncio.Task[RewriteResult] | None":
        """Filter one event against the current snapshot and submit it when eligible."""

        snapshot = self._settings.current()
        if not snapshot.monitors(event.conversation_id):
            LOGGER.debug(
                "Ignoring message from unmonitored chat (chat_id=%s, message_id=%s)",
                event.conversation_id,
                event.message_id,
            )
            return None

        LOGGER.info(
            "Received message update in monitored chat (chat_id=%s, topic_root_id=%s, message_id=%s, outgoing=%s)",
            event.conversation_id,
            event.topic_root_id,
            event.message_id,
            event.is_self_authored,
        )
        if self._cache is not None:
            self._cache.observe(event)
        if self._skip_before is not None and event.timestamp < self._skip_before:
            LOGGER.info(
                "Skipping historical message during catch-up (chat_id=%s, message_id=%s, sent=%s)",
                event.conversation_id,
                event.message_id,
                event.timestamp.isoformat(),
            )
            return None

        if self._dedupe.contains(event.conversation_id, event.message_id):
            LOGGER.info(
                "Skipping message that was already rewritten (chat_id=%s, message_id=%s)",
                event.conversation_id,
                event.message_id,
            )
            return None

        task = await self._filter.accept(event, snapshot)
        if task is None:
            return None
        runner = self._coordinator.submit(task)
        runner.add_done_callback(self._remember_edit)
        return runner

    def apply_snapshot(self, snapshot: Snapshot) -> bool:
        """Install a reloaded snapshot; invalid ones keep the previous settings active."""

        if not self._settings.install(snapshot):
            LOGGER.warning("Ignoring config reload; keeping previous active config")
            return False
        active = self._settings.current()
        if self._cache is not None:
            self._cache.retain_chats(active.monitored_chats)
            self._cache.set_limit(active.context_depth)
        LOGGER.info(
            "Config reloaded (model=%s, chats=%s)",
            active.model_identifier,
            sorted(active.monitored_chats),
        )
        self._notice("config_reloaded", {"model": active.model_identifier, "chats": sorted(active.monitored_chats)})
        return True

    async def run(
        self,
        events: AsyncIterator[InboundEvent],
        config_updates: AsyncIterator[Snapshot] | None = None,
        shutdown_signal: Awaitable[Any] | None = None,
    ) -> None:
        """Process events until shutdown, stream end, or a fatal auth failure.

        Raises :class:`AuthInvalidError` when the Telegram session stops being
        authorized, and re-raises errors from the event stream itself.
        """

        consumer = asyncio.create_task(self._consume_events(events), name="rewrite-events")
        reloader: asyncio.Task[Any] | None = None
        if config_updates is not None:
            reloader = asyncio.create_task(self._consume_config(config_updates), name="rewrite-config")
        fatal = asyncio.create_task(self._coordinator.wait_fatal(), name="rewrite-fatal")
        watched: list[asyncio.Task[Any]] = [consumer, fatal]
        stop: asyncio.Task[Any] | None = None
        if shutdown_signal is not None:
            stop = asyncio.create_task(_await(shutdown_signal), name="rewrite-shutdown")
            watched.append(stop)

        self._notice("runtime_ready", {"skip_before": self._skip_before.isoformat() if self._skip_before else None})
        try:
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        finally:
            background = [*watched, reloader] if reloader is not None else watched
            for task in background:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self._coordinator.shutdown(grace=self._shutdown_grace)

        if stop is not None and stop in done:
            LOGGER.info("Shutdown signal received")
        if fatal in done and not fatal.cancelled():
            raise fatal.result()
        self._coordinator.raise_if_fatal()
        if consumer in done and not consumer.cancelled():
            error = consumer.exception()
            if error is not None:
                raise error

    async def _consume_events(self, events: AsyncIterator[InboundEvent]) -> None:
        try:
            async for event in events:
                self._enqueue(event)
            LOGGER.info("Inbound event stream ended; waiting for in-flight rewrites")
            while self._lanes:
                await asyncio.gather(*self._lanes.values(), return_exceptions=True)
        finally:
            for lane in list(self._lanes.values()):
                lane.cancel()
        await self._coordinator.drain()

    def _enqueue(self, event: InboundEvent) -> None:
        conversation_id = event.conversation_id
        queue = self._lane_queues.get(conversation_id)
        if queue is None:
            queue = asyncio.Queue()
            self._lane_queues[conversation_id] = queue
            self._lanes[conversation_id] = asyncio.create_task(
                self._run_lane(conversation_id, queue),
                name=f"rewrite-lane-{conversation_id}",
            )
        queue.put_nowait(event)

    async def _run_lane(self, conversation_id: int, queue: "asyncio.Queue[InboundEvent]") -> None:
        try:
            while not queue.empty():
                event = queue.get_nowait()
                try:
                    await self.handle_event(event)
                except CoordinatorClosedError:
                    return
                except Exception as exc:  # noqa: BLE001 - keep the lane alive
                    LOGGER.error("Failed to process message: %s", exc, exc_info=True)
        finally:
            # No await between the empty check and removal, so nothing is lost.
            self._lanes.pop(conversation_id, None)
            self._lane_queues.pop(conversation_id, None)

    def _remember_edit(self, runner: "asyncio.Task[RewriteResult]") -> None:
        if runner.cancelled() or runner.exception() is not None:
            return
        result = runner.result()
        if result.outcome is TaskOutcome.DONE:
            self._dedupe.remember(result.conversation_id, result.message_id)

    async def _consume_config(self, updates: AsyncIterator[Snapshot]) -> None:
        async for snapshot in updates:
            self.apply_snapshot(snapshot)

    def _notice(self, name: str, payload: Mapping[str, Any]) -> None:
        if self._on_notice is None:
            return
        with contextlib.suppress(Exception):
            self._on_notice(name, payload)


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable
