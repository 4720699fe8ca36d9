"""Telethon-backed userbot transport: login, update feed, edits, and history."""

from __future__ import annotations

import asyncio
import getpass
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, List, Tuple

from telethon import TelegramClient, errors, events, types, utils

from ..rewrite.errors import AuthInvalidError, EditError
from ..rewrite.filter import strip_internal_marker
from ..rewrite.types import ContextMessage, InboundEvent, resolve_sender_name

__all__ = [
    "TelethonTransport",
    "classify_edit_error",
    "message_topic_root_id",
    "filter_chats",
]

LOGGER = logging.getLogger(__name__)

_NOT_FOUND_ERRORS: Tuple[type[BaseException], ...] = (
    errors.MessageIdInvalidError,
    errors.MessageNotModifiedError,
    errors.MessageAuthorRequiredError,
    errors.MessageEditTimeExpiredError,
)
_AUTH_ERRORS: Tuple[type[BaseException], ...] = (
    errors.AuthKeyUnregisteredError,
    errors.SessionRevokedError,
    errors.SessionExpiredError,
    errors.UserDeactivatedError,
    errors.AuthKeyError,
    errors.UnauthorizedError,
)

ClientFactory = Callable[..., Any]


def classify_edit_error(exc: BaseException) -> EditError:
    """Map a Telethon failure onto the edit error taxonomy."""

    if isinstance(exc, _NOT_FOUND_ERRORS):
        return EditError.not_found(str(exc))
    if isinstance(exc, errors.FloodWaitError):
        return EditError.rate_limited(float(exc.seconds), str(exc))
    if isinstance(exc, _AUTH_ERRORS):
        return AuthInvalidError(str(exc))
    return EditError.other(f"{type(exc).__name__}: {exc}")


def message_topic_root_id(message: Any) -> int | None:
    """Return the forum topic a message belongs to, or ``None`` outside topics."""

    reply_to = getattr(message, "reply_to", None)
    if reply_to is None or not getattr(reply_to, "forum_topic", False):
        return None
    return getattr(reply_to, "reply_to_top_id", None) or getattr(reply_to, "reply_to_msg_id", None)


def filter_chats(chats: List[Tuple[int, str]], query: str | None) -> List[Tuple[int, str]]:
    needle = (query or "").strip().casefold()
    if not needle:
        return list(chats)
    return [(chat_id, name) for chat_id, name in chats if needle in name.casefold()]


class TelethonTransport:
    """Owns one :class:`TelegramClient` for the lifetime of the process.

    ``events()`` yields :class:`InboundEvent` values in arrival order,
    ``edit()`` replaces a message's text and raises classified
    :class:`EditError` values, and ``fetch_history()`` backs the context cache.
    """

    def __init__(
        self,
        session_file: Path | str,
        api_id: int,
        api_hash: str,
        *,
        catch_up: bool = True,
        client_factory: ClientFactory = TelegramClient,
    ) -> None:
        self._session_file = Path(session_file)
        self._api_id = api_id
        self._api_hash = api_hash
        self._catch_up = catch_up
        self._client_factory = client_factory
        self._client: Any = None
        self._queue: asyncio.Queue[InboundEvent | None] = asyncio.Queue()

    @property
    def client(self) -> Any:
        return self._client

    async def connect(self, *, interactive: bool = True) -> None:
        """Connect and make sure the session is authorized.

        On first run the user is prompted for a phone number, the login code,
        and a 2FA password when the account has one.
        """

        if self._client is not None:
            return
        self._session_file.parent.mkdir(parents=True, exist_ok=True)
        client = self._client_factory(
            str(self._session_file),
            self._api_id,
            self._api_hash,
            catch_up=self._catch_up,
        )
        self._client = client
        LOGGER.info("Connecting to Telegram (session=%s, catch_up=%s)", self._session_file, self._catch_up)
        if interactive:
            await client.start(
                phone=lambda: input("Telegram phone number (with country code): ").strip(),
                code_callback=lambda: input("Telegram login code: ").strip(),
                password=lambda: getpass.getpass("Telegram 2FA password: ").strip(),
            )
        else:
            await client.connect()
        if not await client.is_user_authorized():
            raise AuthInvalidError("telegram session is not authorized; log in again")
        LOGGER.info("Telegram session authorized")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self._queue.put_nowait(None)
        if client is None:
            return
        await client.disconnect()
        LOGGER.info("Disconnected from Telegram")

    async def events(self) -> AsyncIterator[InboundEvent]:
        client = self._require_client()
        client.add_event_handler(self._on_new_message, events.NewMessage())
        disconnected = asyncio.ensure_future(client.disconnected)
        try:
            while True:
                getter = asyncio.ensure_future(self._queue.get())
                try:
                    done, _ = await asyncio.wait({getter, disconnected}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    if not getter.done():
                        getter.cancel()
                if getter in done:
                    item = getter.result()
                    if item is None:
                        return
                    yield item
                    continue
                error = disconnected.exception() if not disconnected.cancelled() else None
                if isinstance(error, _AUTH_ERRORS):
                    raise AuthInvalidError(str(error)) from error
                if error is not None:
                    raise error
                LOGGER.info("Telegram connection closed")
                return
        finally:
            client.remove_event_handler(self._on_new_message)

    async def edit(self, conversation_id: int, message_id: int, text: str) -> None:
        client = self._require_client()
        try:
            # Plain text: model output must not pass through the markdown parser.
            await client.edit_message(conversation_id, message_id, text, parse_mode=None)
        except (errors.RPCError, ConnectionError, OSError, asyncio.TimeoutError) as exc:
            raise classify_edit_error(exc) from exc

    async def current_text(self, conversation_id: int, message_id: int) -> str | None:
        """Return the message's text as Telegram has it now, or ``None`` once deleted."""

        client = self._require_client()
        try:
            message = await client.get_messages(conversation_id, ids=message_id)
        except (errors.RPCError, ConnectionError, OSError, asyncio.TimeoutError) as exc:
            raise classify_edit_error(exc) from exc
        if message is None or isinstance(message, types.MessageEmpty):
            return None
        return getattr(message, "message", None) or ""

    async def fetch_history(
        self,
        conversation_id: int,
        before: int,
        limit: int,
        topic_root_id: int | None = None,
    ) -> List[ContextMessage]:
        """Return up to ``limit`` text messages preceding ``before``, oldest first."""

        if limit <= 0:
            return []
        client = self._require_client()
        kwargs: dict[str, Any] = {"limit": limit, "offset_id": before}
        if topic_root_id is not None:
            kwargs["reply_to"] = topic_root_id
        messages = await client.get_messages(conversation_id, **kwargs)
        context: List[ContextMessage] = []
        for message in reversed(list(messages or [])):
            text = strip_internal_marker(getattr(message, "message", None) or "").strip()
            if not text:
                continue
            sender = getattr(message, "sender", None)
            peer_name = utils.get_display_name(sender) if sender is not None else None
            context.append(ContextMessage(resolve_sender_name(bool(getattr(message, "out", False)), peer_name), text))
        return context

    async def list_chats(self, query: str | None = None) -> List[Tuple[int, str]]:
        client = self._require_client()
        chats: List[Tuple[int, str]] = []
        async for dialog in client.iter_dialogs():
            chats.append((int(dialog.id), dialog.name or ""))
        return filter_chats(chats, query)

    async def _on_new_message(self, event: Any) -> None:
        message = event.message
        outgoing = bool(getattr(message, "out", False))
        peer_name: str | None = None
        if not outgoing:
            try:
                sender = await event.get_sender()
            except (errors.RPCError, ConnectionError, OSError) as exc:
                LOGGER.debug("Could not resolve message sender: %s", exc)
                sender = None
            peer_name = utils.get_display_name(sender) if sender is not None else None
        inbound = InboundEvent(
            conversation_id=int(event.chat_id),
            message_id=int(message.id),
            is_self_authored=outgoing,
            text=getattr(message, "message", None),
            timestamp=message.date or datetime.now(timezone.utc),
            topic_root_id=message_topic_root_id(message),
            sender_name=resolve_sender_name(outgoing, peer_name),
        )
        await self._queue.put(inbound)

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Telegram transport is not connected")
        return self._client
