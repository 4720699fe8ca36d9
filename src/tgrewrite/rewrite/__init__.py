"""Rewrite orchestration engine: filtering, generation, ordered edits."""

from .context import CachedHistory, ContextCache, ContextScope
from .coordinator import CoordinatorClosedError, RetryPolicy, RewriteCoordinator
from .dedupe import DedupeCache
from .engine import RewriteEngine
from .errors import (
    AuthInvalidError,
    EditError,
    EditErrorKind,
    GenerationError,
    GenerationErrorKind,
)
from .filter import INTERNAL_MARKER, EventFilter
from .generation import BackendSettings, GenerationClient, StaticGenerator
from .settings_store import SettingsStore
from .types import (
    ContextMessage,
    InboundEvent,
    RewriteResult,
    RewriteTask,
    Snapshot,
    TaskOutcome,
    TaskState,
)

__all__ = [
    "AuthInvalidError",
    "BackendSettings",
    "CachedHistory",
    "ContextCache",
    "ContextMessage",
    "ContextScope",
    "CoordinatorClosedError",
    "DedupeCache",
    "EditError",
    "EditErrorKind",
    "EventFilter",
    "GenerationClient",
    "GenerationError",
    "GenerationErrorKind",
    "INTERNAL_MARKER",
    "InboundEvent",
    "RetryPolicy",
    "RewriteCoordinator",
    "RewriteEngine",
    "RewriteResult",
    "RewriteTask",
    "SettingsStore",
    "Snapshot",
    "StaticGenerator",
    "TaskOutcome",
    "TaskState",
]
