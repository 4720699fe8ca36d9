"""Value types shared by the rewrite engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import AbstractSet, Iterable

__all__ = [
    "Snapshot",
    "InboundEvent",
    "ContextMessage",
    "RewriteTask",
    "TaskState",
    "TaskOutcome",
    "RewriteResult",
    "resolve_sender_name",
]

SELF_SENDER_NAME = "Me"
UNKNOWN_SENDER_NAME = "Unknown"


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Hot-swappable rewrite settings.

    Connection-level values (Telegram credentials, session location, backend
    URL and network timeout) are bound at startup and intentionally have no
    field here.
    """

    system_prompt: str
    monitored_chats: frozenset[int]
    model_identifier: str
    backend_credential: str | None = None
    context_depth: int = 10

    def __post_init__(self) -> None:
        if not isinstance(self.monitored_chats, frozenset):
            object.__setattr__(self, "monitored_chats", frozenset(self.monitored_chats))

    @classmethod
    def build(
        cls,
        *,
        system_prompt: str,
        chats: Iterable[int],
        model: str,
        credential: str | None = None,
        context_depth: int = 10,
    ) -> "Snapshot":
        return cls(
            system_prompt=system_prompt,
            monitored_chats=frozenset(int(chat) for chat in chats),
            model_identifier=model,
            backend_credential=credential or None,
            context_depth=int(context_depth),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` when the snapshot cannot drive rewrites."""

        if not self.system_prompt or not self.system_prompt.strip():
            raise ValueError("system_prompt must not be empty")
        if not self.monitored_chats:
            raise ValueError("monitored_chats must not be empty")
        if not self.model_identifier or not self.model_identifier.strip():
            raise ValueError("model_identifier must not be empty")
        if self.context_depth < 0:
            raise ValueError("context_depth must be non-negative")

    def monitors(self, conversation_id: int) -> bool:
        return conversation_id in self.monitored_chats


@dataclass(frozen=True, slots=True)
class InboundEvent:
    """One chat update as delivered by the transport."""

    conversation_id: int
    message_id: int
    is_self_authored: bool
    text: str | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    topic_root_id: int | None = None
    sender_name: str | None = None


@dataclass(frozen=True, slots=True)
class ContextMessage:
    """A preceding chat message handed to the model as context."""

    sender_name: str
    text: str

    def as_llm_user_content(self) -> str:
        return f"{self.sender_name}: {self.text}"


def resolve_sender_name(outgoing: bool, peer_name: str | None) -> str:
    if outgoing:
        return SELF_SENDER_NAME
    if peer_name and peer_name.strip():
        return peer_name
    return UNKNOWN_SENDER_NAME


@dataclass(slots=True)
class RewriteTask:
    """Unit of work tracking one message from acceptance to a terminal state."""

    conversation_id: int
    message_id: int
    original_text: str
    context: tuple[ContextMessage, ...] = ()
    attempt_count: int = 0
    topic_root_id: int | None = None
    sequence: int = 0

    @property
    def key(self) -> tuple[int, int]:
        return (self.conversation_id, self.message_id)


class TaskState(Enum):
    """Lifecycle states of a rewrite task."""

    PENDING = auto()
    GENERATING = auto()
    DECIDING = auto()
    EDITING = auto()
    DONE = auto()
    SKIPPED = auto()
    FAILED = auto()
    SUPERSEDED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES: AbstractSet[TaskState] = frozenset(
    {TaskState.DONE, TaskState.SKIPPED, TaskState.FAILED, TaskState.SUPERSEDED}
)


class TaskOutcome(Enum):
    """Terminal outcome reported for every rewrite task."""

    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"
    SUPERSEDED = "superseded"

    @classmethod
    def from_state(cls, state: TaskState) -> "TaskOutcome":
        if not state.is_terminal:
            raise ValueError(f"{state.name} is not a terminal state")
        return cls[state.name]


@dataclass(frozen=True, slots=True)
class RewriteResult:
    """Terminal record of one rewrite task."""

    conversation_id: int
    message_id: int
    outcome: TaskOutcome
    reason: str = ""
    attempts: int = 0
    rewritten_text: str | None = None
