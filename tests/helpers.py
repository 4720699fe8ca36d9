"""Shared test helpers and stub classes.

Import from here instead of duplicating fakes in individual test files.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Deque, Dict, Iterable, List, Sequence, Tuple

from tgrewrite.rewrite.coordinator import RewriteCoordinator
from tgrewrite.rewrite.types import ContextMessage, InboundEvent, RewriteResult, RewriteTask, Snapshot

CHAT_ID = -1001234567890
OTHER_CHAT_ID = -1009876543210


def make_snapshot(**overrides: Any) -> Snapshot:
    values: Dict[str, Any] = {
        "system_prompt": "rewrite formally",
        "chats": [CHAT_ID],
        "model": "test-model",
        "credential": None,
        "context_depth": 0,
    }
    values.update(overrides)
    return Snapshot.build(**values)


def make_event(
    message_id: int = 1,
    text: str | None = "hello",
    *,
    conversation_id: int = CHAT_ID,
    outgoing: bool = True,
    timestamp: datetime | None = None,
    topic_root_id: int | None = None,
    sender_name: str | None = None,
) -> InboundEvent:
    return InboundEvent(
        conversation_id=conversation_id,
        message_id=message_id,
        is_self_authored=outgoing,
        text=text,
        timestamp=timestamp or datetime.now(timezone.utc),
        topic_root_id=topic_root_id,
        sender_name=sender_name,
    )


async def iterate(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item
        await asyncio.sleep(0)


@dataclass
class GenerateCall:
    prompt: str
    body: str
    context: Tuple[ContextMessage, ...]
    timeout: float
    model: str
    credential: str | None


class FakeGenerator:
    """Scripted generation backend.

    Outcomes queued with :meth:`script` are consumed per message body; a queued
    exception is raised instead of returned. Bodies without a script go
    through ``default``. :meth:`delay` makes calls for a body sleep first.
    """

    def __init__(self, default: Callable[[str], str] | None = None) -> None:
        self.calls: List[GenerateCall] = []
        self._default = default or (lambda body: f"Rewritten: {body}")
        self._scripts: Dict[str, Deque[Any]] = {}
        self._delays: Dict[str, float] = {}
        self._gates: Dict[str, asyncio.Event] = {}

    def script(self, body: str, *outcomes: Any) -> None:
        self._scripts.setdefault(body, deque()).extend(outcomes)

    def delay(self, body: str, seconds: float) -> None:
        self._delays[body] = seconds

    def hold(self, body: str) -> asyncio.Event:
        gate = self._gates.setdefault(body, asyncio.Event())
        return gate

    def calls_for(self, body: str) -> List[GenerateCall]:
        return [call for call in self.calls if call.body == body]

    async def generate(
        self,
        prompt: str,
        body: str,
        context: Sequence[ContextMessage],
        timeout: float,
        *,
        model: str,
        credential: str | None = None,
    ) -> str:
        self.calls.append(GenerateCall(prompt, body, tuple(context), timeout, model, credential))
        gate = self._gates.get(body)
        if gate is not None:
            await gate.wait()
        delay = self._delays.get(body)
        if delay:
            await asyncio.sleep(delay)
        queue = self._scripts.get(body)
        if queue:
            outcome = queue.popleft()
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return self._default(body)


@dataclass
class FakeTransport:
    """In-memory edit transport and history source.

    ``texts`` holds what each message currently says; a message that was never
    posted reads as deleted. Successful edits overwrite the stored text.
    """

    edits: List[Tuple[int, int, str]] = field(default_factory=list)
    attempts: List[Tuple[int, int, str]] = field(default_factory=list)
    history_calls: List[Tuple[int, int, int, int | None]] = field(default_factory=list)
    history: Dict[Tuple[int, int | None], List[ContextMessage]] = field(default_factory=dict)
    history_error: BaseException | None = None
    texts: Dict[Tuple[int, int], str | None] = field(default_factory=dict)
    reads: List[Tuple[int, int]] = field(default_factory=list)
    read_error: BaseException | None = None
    _scripts: Dict[Tuple[int, int], Deque[BaseException]] = field(default_factory=dict)
    _gates: Dict[Tuple[int, int], asyncio.Event] = field(default_factory=dict)

    def fail(self, conversation_id: int, message_id: int, *errors: BaseException) -> None:
        self._scripts.setdefault((conversation_id, message_id), deque()).extend(errors)

    def hold(self, conversation_id: int, message_id: int) -> asyncio.Event:
        return self._gates.setdefault((conversation_id, message_id), asyncio.Event())

    def post(self, conversation_id: int, message_id: int, text: str) -> None:
        self.texts.setdefault((conversation_id, message_id), text)

    def change(self, conversation_id: int, message_id: int, text: str | None) -> None:
        """Simulate the user editing (or, with ``None``, deleting) a message."""

        self.texts[(conversation_id, message_id)] = text

    def edited_ids(self) -> List[int]:
        return [message_id for _, message_id, _ in self.edits]

    async def edit(self, conversation_id: int, message_id: int, text: str) -> None:
        self.attempts.append((conversation_id, message_id, text))
        gate = self._gates.get((conversation_id, message_id))
        if gate is not None:
            await gate.wait()
        queue = self._scripts.get((conversation_id, message_id))
        if queue:
            raise queue.popleft()
        self.edits.append((conversation_id, message_id, text))
        self.texts[(conversation_id, message_id)] = text

    async def current_text(self, conversation_id: int, message_id: int) -> str | None:
        self.reads.append((conversation_id, message_id))
        if self.read_error is not None:
            raise self.read_error
        return self.texts.get((conversation_id, message_id))

    async def fetch_history(
        self,
        conversation_id: int,
        before: int,
        limit: int,
        topic_root_id: int | None = None,
    ) -> List[ContextMessage]:
        self.history_calls.append((conversation_id, before, limit, topic_root_id))
        if self.history_error is not None:
            raise self.history_error
        return list(self.history.get((conversation_id, topic_root_id), []))[-limit:]


class PostingCoordinator(RewriteCoordinator):
    """Coordinator whose submitted messages are first posted to the fake transport."""

    def __init__(self, settings: Any, generator: Any, transport: FakeTransport, **kwargs: Any) -> None:
        super().__init__(settings, generator, transport, **kwargs)
        self.fake_transport = transport

    def submit(self, task: RewriteTask) -> "asyncio.Task[RewriteResult]":
        self.fake_transport.post(task.conversation_id, task.message_id, task.original_text)
        return super().submit(task)
