"""Rewrite coordinator: drives each task from generation to the final edit.

Every accepted message becomes an asyncio task that walks the state machine
``PENDING -> GENERATING -> DECIDING -> EDITING -> DONE`` or leaves through one
of the terminal exits ``SKIPPED``, ``FAILED`` or ``SUPERSEDED``.

Edits within one conversation commit in submission order. Each task owns a
completion signal that resolves once the task is terminal *and* the signal of
the task submitted before it (same conversation) has resolved; a task waits
on its predecessor's signal right before editing. Generation still runs
concurrently.

Past the gate the message is read back once: a deleted message, or one whose
text no longer matches what was sent, ends the task without an edit.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Protocol, Set

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import AuthInvalidError, EditError, EditErrorKind, GenerationError
from .filter import INTERNAL_MARKER, strip_internal_marker
from .generation import Generator
from .settings_store import SettingsStore
from .types import RewriteResult, RewriteTask, Snapshot, TaskOutcome, TaskState

__all__ = [
    "RetryPolicy",
    "EditTransport",
    "RewriteCoordinator",
    "CoordinatorClosedError",
    "TELEGRAM_MESSAGE_MAX_UTF16",
    "normalize_for_comparison",
    "truncate_utf16",
]

LOGGER = logging.getLogger(__name__)
TELEGRAM_MESSAGE_MAX_UTF16 = 4096

ResultListener = Callable[[RewriteResult], Any]


class EditTransport(Protocol):
    async def edit(self, conversation_id: int, message_id: int, text: str) -> None:
        ...

    async def current_text(self, conversation_id: int, message_id: int) -> str | None:
        ...


@dataclass(slots=True)
class RetryPolicy:
    """Attempt budget and backoff schedule for one task."""

    max_generation_attempts: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 8.0
    edit_retries: int = 1
    edit_retry_delay: float = 1.0
    max_rate_limit_wait: float = 300.0

    def __post_init__(self) -> None:
        self.max_generation_attempts = max(1, int(self.max_generation_attempts))
        self.edit_retries = max(0, int(self.edit_retries))


def normalize_for_comparison(text: str) -> str:
    return " ".join(text.split()).casefold()


class CoordinatorClosedError(RuntimeError):
    """Raised when a task is submitted after shutdown has started."""


def truncate_utf16(text: str, max_units: int) -> str:
    """Cut ``text`` so it fits within ``max_units`` UTF-16 code units."""

    count = 0
    for index, char in enumerate(text):
        count += 2 if ord(char) > 0xFFFF else 1
        if count > max_units:
            return text[:index]
    return text


@dataclass(slots=True)
class _Gate:
    tail: "asyncio.Future[None] | None" = None
    pending: int = 0


@dataclass(slots=True)
class _TaskRecord:
    task: RewriteTask
    state: TaskState = TaskState.PENDING
    waited: bool = False


class RewriteCoordinator:
    """Owns rewrite tasks, their retries, and the per-conversation edit order."""

    def __init__(
        self,
        settings: SettingsStore,
        generator: Generator,
        transport: EditTransport,
        *,
        policy: RetryPolicy | None = None,
        generation_timeout: float = 20.0,
        mark_edits: bool = False,
        max_message_length: int = TELEGRAM_MESSAGE_MAX_UTF16,
        on_result: ResultListener | None = None,
    ) -> None:
        self._settings = settings
        self._generator = generator
        self._transport = transport
        self._policy = policy or RetryPolicy()
        self._generation_timeout = max(0.1, float(generation_timeout))
        self._mark_edits = mark_edits
        self._max_length = int(max_message_length)
        self._on_result = on_result
        self._gates: Dict[int, _Gate] = {}
        self._records: Dict[asyncio.Task[RewriteResult], _TaskRecord] = {}
        self._sequence = 0
        self._closing = False
        self._fatal: AuthInvalidError | None = None
        self._fatal_event = asyncio.Event()
        self._listeners: Set[asyncio.Future[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._records if not task.done())

    @property
    def tracked_conversations(self) -> int:
        """Number of conversations with an in-flight ordering marker."""

        return len(self._gates)

    @property
    def fatal_error(self) -> AuthInvalidError | None:
        return self._fatal

    def raise_if_fatal(self) -> None:
        if self._fatal is not None:
            raise self._fatal

    async def wait_fatal(self) -> AuthInvalidError:
        await self._fatal_event.wait()
        if self._fatal is None:
            raise RuntimeError("fatal event set without an error")
        return self._fatal

    def submit(self, task: RewriteTask) -> "asyncio.Task[RewriteResult]":
        """Schedule ``task`` and return the asyncio task resolving to its result."""

        if self._closing:
            raise CoordinatorClosedError("coordinator is shutting down")
        loop = asyncio.get_running_loop()
        self._sequence += 1
        task.sequence = self._sequence

        gate = self._gates.setdefault(task.conversation_id, _Gate())
        previous = gate.tail
        signal: asyncio.Future[None] = loop.create_future()
        gate.tail = signal
        gate.pending += 1

        record = _TaskRecord(task=task)
        runner = asyncio.create_task(
            self._run(record, previous, signal),
            name=f"rewrite-{task.conversation_id}-{task.message_id}",
        )
        self._records[runner] = record
        runner.add_done_callback(self._forget)
        return runner

    async def drain(self) -> List[RewriteResult]:
        """Wait for every in-flight task; cancelled tasks are left out."""

        pending = [task for task in self._records if not task.done()]
        if not pending:
            return []
        outcomes = await asyncio.gather(*pending, return_exceptions=True)
        return [item for item in outcomes if isinstance(item, RewriteResult)]

    async def shutdown(self, *, grace: float = 10.0) -> None:
        """Let in-flight edits finish and abandon everything still generating."""

        self._closing = True
        editing = [t for t, r in self._records.items() if not t.done() and r.state is TaskState.EDITING]
        abandoned = [t for t, r in self._records.items() if not t.done() and r.state is not TaskState.EDITING]
        if abandoned:
            LOGGER.info("Abandoning %s rewrite task(s) that have not started editing", len(abandoned))
        for runner in abandoned:
            runner.cancel()
        if editing:
            LOGGER.info("Waiting up to %.1fs for %s in-flight edit(s)", grace, len(editing))
            _, stragglers = await asyncio.wait(editing, timeout=grace)
            for runner in stragglers:
                LOGGER.warning("Edit did not finish before shutdown: %s", runner.get_name())
                runner.cancel()
        everything = editing + abandoned
        if everything:
            await asyncio.gather(*everything, return_exceptions=True)
        await self._settle_listeners(grace)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------
    async def _run(
        self,
        record: _TaskRecord,
        previous: "asyncio.Future[None] | None",
        signal: "asyncio.Future[None]",
    ) -> RewriteResult:
        task = record.task
        try:
            result = await self._drive(record, previous)
        except asyncio.CancelledError:
            LOGGER.info(
                "Rewrite abandoned in state %s (chat_id=%s, message_id=%s)",
                record.state.name,
                task.conversation_id,
                task.message_id,
            )
            raise
        except Exception as exc:  # noqa: BLE001 - one task never takes down the rest
            LOGGER.error(
                "Unexpected rewrite failure (chat_id=%s, message_id=%s): %s",
                task.conversation_id,
                task.message_id,
                exc,
                exc_info=True,
            )
            result = self._finish(record, TaskState.FAILED, "unexpected_error")
        finally:
            self._release(task.conversation_id, previous, signal)
        self._report(result)
        return result

    async def _drive(self, record: _TaskRecord, previous: "asyncio.Future[None] | None") -> RewriteResult:
        task = record.task
        snapshot = self._settings.current()
        record.state = TaskState.GENERATING
        self._log_payload(task, snapshot)

        try:
            rewritten = await self._generate(task, snapshot)
        except GenerationError as exc:
            LOGGER.warning(
                "Generation failed after %s attempt(s); leaving original message unchanged (chat_id=%s, message_id=%s): %s",
                task.attempt_count,
                task.conversation_id,
                task.message_id,
                exc,
            )
            return self._finish(record, TaskState.FAILED, f"generation_{exc.kind.value}")

        record.state = TaskState.DECIDING
        candidate = truncate_utf16(strip_internal_marker(rewritten).strip(), self._edit_budget())
        candidate = candidate.strip()
        if not candidate:
            return self._finish(record, TaskState.SKIPPED, "empty_rewrite")
        if normalize_for_comparison(candidate) == normalize_for_comparison(task.original_text):
            return self._finish(record, TaskState.SKIPPED, "unchanged", rewritten=candidate)

        if previous is not None and not previous.done():
            record.waited = True
            LOGGER.debug(
                "Holding edit until earlier rewrites in chat %s finish (message_id=%s)",
                task.conversation_id,
                task.message_id,
            )
            await asyncio.shield(previous)

        record.state = TaskState.EDITING
        stale = await self._check_current_text(record)
        if stale is not None:
            return stale
        outgoing = candidate + INTERNAL_MARKER if self._mark_edits else candidate
        return await self._edit(record, outgoing, candidate)

    async def _generate(self, task: RewriteTask, snapshot: Snapshot) -> str:
        result = ""
        async for attempt in self._retrying(task):
            with attempt:
                task.attempt_count += 1
                result = await self._generator.generate(
                    snapshot.system_prompt,
                    task.original_text,
                    task.context,
                    self._generation_timeout,
                    model=snapshot.model_identifier,
                    credential=snapshot.backend_credential,
                )
        return result

    def _retrying(self, task: RewriteTask) -> AsyncRetrying:
        def _log_retry(state: RetryCallState) -> None:
            outcome = state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            LOGGER.warning(
                "Retrying generation in %.2fs (chat_id=%s, message_id=%s, attempt=%s/%s): %s",
                delay,
                task.conversation_id,
                task.message_id,
                state.attempt_number,
                self._policy.max_generation_attempts,
                error,
            )

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._policy.max_generation_attempts),
            wait=wait_exponential(multiplier=self._policy.backoff_initial, max=self._policy.backoff_max),
            retry=retry_if_exception(_is_retryable_generation_error),
            before_sleep=_log_retry,
        )

    async def _edit(self, record: _TaskRecord, outgoing: str, rewritten: str) -> RewriteResult:
        task = record.task
        attempts = 0
        while True:
            attempts += 1
            try:
                await self._transport.edit(task.conversation_id, task.message_id, outgoing)
            except EditError as exc:
                if exc.kind is EditErrorKind.AUTH_INVALID:
                    self._set_fatal(exc)
                    return self._finish(record, TaskState.FAILED, "auth_invalid")
                if exc.kind is EditErrorKind.NOT_FOUND:
                    return self._message_gone(record)
                if attempts > self._policy.edit_retries:
                    LOGGER.warning(
                        "Failed to edit message; continuing (chat_id=%s, message_id=%s, rewritten=%r): %s",
                        task.conversation_id,
                        task.message_id,
                        rewritten,
                        exc,
                    )
                    return self._finish(record, TaskState.FAILED, f"edit_{exc.kind.value}")
                delay = self._edit_retry_delay(exc)
                LOGGER.warning(
                    "Edit failed; retrying in %.1fs (chat_id=%s, message_id=%s): %s",
                    delay,
                    task.conversation_id,
                    task.message_id,
                    exc,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                continue
            return self._finish(record, TaskState.DONE, "edited", rewritten=rewritten)

    async def _check_current_text(self, record: _TaskRecord) -> RewriteResult | None:
        """End the task early when the message was deleted or changed since it was sent."""

        task = record.task
        try:
            current = await self._transport.current_text(task.conversation_id, task.message_id)
        except EditError as exc:
            if exc.kind is EditErrorKind.AUTH_INVALID:
                self._set_fatal(exc)
                return self._finish(record, TaskState.FAILED, "auth_invalid")
            if exc.kind is EditErrorKind.NOT_FOUND:
                return self._message_gone(record)
            LOGGER.warning(
                "Could not read current message text; editing anyway (chat_id=%s, message_id=%s): %s",
                task.conversation_id,
                task.message_id,
                exc,
            )
            return None
        if current is None:
            return self._message_gone(record)
        if normalize_for_comparison(strip_internal_marker(current)) != normalize_for_comparison(task.original_text):
            LOGGER.info(
                "Message changed since it was sent; leaving it as is (chat_id=%s, message_id=%s)",
                task.conversation_id,
                task.message_id,
            )
            return self._finish(record, TaskState.SKIPPED, "content_changed")
        return None

    def _message_gone(self, record: _TaskRecord) -> RewriteResult:
        state = TaskState.SUPERSEDED if record.waited else TaskState.SKIPPED
        return self._finish(record, state, "message_gone")

    def _edit_retry_delay(self, exc: EditError) -> float:
        if exc.kind is EditErrorKind.RATE_LIMITED and exc.retry_after is not None:
            return min(exc.retry_after, self._policy.max_rate_limit_wait)
        return self._policy.edit_retry_delay

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _edit_budget(self) -> int:
        if self._mark_edits:
            return self._max_length - len(INTERNAL_MARKER)
        return self._max_length

    def _finish(
        self,
        record: _TaskRecord,
        state: TaskState,
        reason: str,
        *,
        rewritten: str | None = None,
    ) -> RewriteResult:
        record.state = state
        task = record.task
        return RewriteResult(
            conversation_id=task.conversation_id,
            message_id=task.message_id,
            outcome=TaskOutcome.from_state(state),
            reason=reason,
            attempts=task.attempt_count,
            rewritten_text=rewritten,
        )

    def _release(
        self,
        conversation_id: int,
        previous: "asyncio.Future[None] | None",
        signal: "asyncio.Future[None]",
    ) -> None:
        def _resolve(_: object = None) -> None:
            if not signal.done():
                signal.set_result(None)
            gate = self._gates.get(conversation_id)
            if gate is None:
                return
            gate.pending -= 1
            if gate.pending <= 0 and gate.tail is signal:
                del self._gates[conversation_id]

        if previous is None or previous.done():
            _resolve()
        else:
            previous.add_done_callback(_resolve)

    def _forget(self, runner: "asyncio.Task[RewriteResult]") -> None:
        self._records.pop(runner, None)

    def _set_fatal(self, exc: EditError) -> None:
        fatal = exc if isinstance(exc, AuthInvalidError) else AuthInvalidError(exc.message)
        if self._fatal is None:
            LOGGER.error("Telegram session is no longer authorized: %s", fatal)
            self._fatal = fatal
            self._fatal_event.set()

    def _report(self, result: RewriteResult) -> None:
        level = logging.WARNING if result.outcome is TaskOutcome.FAILED else logging.INFO
        LOGGER.log(
            level,
            "Rewrite %s (chat_id=%s, message_id=%s, reason=%s, attempts=%s)",
            result.outcome.value,
            result.conversation_id,
            result.message_id,
            result.reason,
            result.attempts,
        )
        if self._on_result is None:
            return
        try:
            outcome = self._on_result(result)
        except Exception:  # noqa: BLE001 - listeners are observers only
            LOGGER.warning("Result listener raised", exc_info=True)
            return
        if inspect.isawaitable(outcome):
            pending = asyncio.ensure_future(outcome)
            self._listeners.add(pending)
            pending.add_done_callback(self._listener_done)

    async def _settle_listeners(self, grace: float) -> None:
        listeners = list(self._listeners)
        if not listeners:
            return
        _, stragglers = await asyncio.wait(listeners, timeout=grace)
        for pending in stragglers:
            pending.cancel()
        if stragglers:
            await asyncio.gather(*stragglers, return_exceptions=True)

    def _listener_done(self, pending: "asyncio.Future[Any]") -> None:
        self._listeners.discard(pending)
        if pending.cancelled():
            return
        error = pending.exception()
        if error is not None:
            LOGGER.warning("Result listener failed: %s", error, exc_info=error)

    def _log_payload(self, task: RewriteTask, snapshot: Snapshot) -> None:
        pretty_prompt = snapshot.system_prompt.replace("\n", "\n    ")
        pretty_input = task.original_text.replace("\n", "\n    ")
        if task.context:
            pretty_context = "\n".join(
                f"    {index:02d}. {entry.as_llm_user_content()}".replace("\n", "\n         ")
                for index, entry in enumerate(task.context, start=1)
            )
        else:
            pretty_context = "    (none)"
        LOGGER.info(
            "Prepared rewrite payload (chat_id=%s, topic_root_id=%s, message_id=%s, model=%s)\n"
            "  system_prompt:\n    %s\n  context:\n%s\n  input:\n    %s",
            task.conversation_id,
            task.topic_root_id,
            task.message_id,
            snapshot.model_identifier,
            pretty_prompt,
            pretty_context,
            pretty_input,
        )


def _is_retryable_generation_error(exc: BaseException) -> bool:
    return isinstance(exc, GenerationError) and exc.retryable
