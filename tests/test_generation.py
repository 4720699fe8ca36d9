"""Tests for the OpenAI-compatible generation adapter."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Callable, List, cast

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from tgrewrite.rewrite.errors import GenerationError, GenerationErrorKind
from tgrewrite.rewrite.generation import BackendSettings, GenerationClient, StaticGenerator, build_messages
from tgrewrite.rewrite.types import ContextMessage

_REQUEST = httpx.Request("POST", "http://local/v1/chat/completions")


def _response(content: Any) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class _FakeOpenAI:
    def __init__(self, behaviour: Callable[..., Any], *, api_key: str = "base") -> None:
        self.api_key = api_key
        self.requests: List[dict[str, Any]] = []
        self.derived: List["_FakeOpenAI"] = []
        self.closed = False
        self._behaviour = behaviour
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **payload: Any) -> Any:
        self.requests.append(payload)
        result = self._behaviour(**payload)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def with_options(self, *, api_key: str) -> "_FakeOpenAI":
        clone = _FakeOpenAI(self._behaviour, api_key=api_key)
        self.derived.append(clone)
        return clone

    async def close(self) -> None:
        self.closed = True


def _client(behaviour: Callable[..., Any], **settings: Any) -> tuple[GenerationClient, _FakeOpenAI]:
    fake = _FakeOpenAI(behaviour)
    options: dict[str, Any] = {"base_url": "http://local/v1", "api_key": "base"}
    options.update(settings)
    return GenerationClient(BackendSettings(**options), client=cast(AsyncOpenAI, fake)), fake


def _raise(exc: BaseException) -> Callable[..., Any]:
    def _behaviour(**_payload: Any) -> Any:
        raise exc

    return _behaviour


def test_build_messages_orders_system_context_then_body() -> None:
    messages = build_messages(
        "rewrite formally",
        "hello",
        [ContextMessage("Alice", "hi"), ContextMessage("Me", "hey")],
    )

    assert messages == [
        {"role": "system", "content": "rewrite formally"},
        {"role": "user", "content": "Alice: hi"},
        {"role": "user", "content": "Me: hey"},
        {"role": "user", "content": "hello"},
    ]


@pytest.mark.asyncio
async def test_generate_returns_trimmed_content() -> None:
    client, fake = _client(lambda **_: _response("  Greetings and salutations.  "))

    text = await client.generate("rewrite formally", "hello", [], 5.0, model="gpt-test")

    assert text == "Greetings and salutations."
    assert fake.requests[0]["model"] == "gpt-test"
    assert fake.requests[0]["messages"][-1] == {"role": "user", "content": "hello"}
    assert "temperature" not in fake.requests[0]


@pytest.mark.asyncio
async def test_temperature_is_forwarded_when_configured() -> None:
    client, fake = _client(lambda **_: _response("ok"), temperature=0.2)

    await client.generate("p", "b", [], 5.0, model="m")

    assert fake.requests[0]["temperature"] == 0.2


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "", "   "])
async def test_empty_content_is_classified(content: Any) -> None:
    client, _ = _client(lambda **_: _response(content))

    with pytest.raises(GenerationError) as excinfo:
        await client.generate("p", "b", [], 5.0, model="m")

    assert excinfo.value.kind is GenerationErrorKind.EMPTY_RESPONSE
    assert not excinfo.value.retryable


@pytest.mark.asyncio
async def test_missing_choices_is_empty_response() -> None:
    client, _ = _client(lambda **_: SimpleNamespace(choices=[]))

    with pytest.raises(GenerationError) as excinfo:
        await client.generate("p", "b", [], 5.0, model="m")

    assert excinfo.value.kind is GenerationErrorKind.EMPTY_RESPONSE


@pytest.mark.asyncio
async def test_slow_backend_times_out() -> None:
    async def _slow(**_payload: Any) -> Any:
        await asyncio.sleep(1.0)
        return _response("late")

    client, _ = _client(_slow)

    with pytest.raises(GenerationError) as excinfo:
        await client.generate("p", "b", [], 0.01, model="m")

    assert excinfo.value.kind is GenerationErrorKind.TIMEOUT
    assert excinfo.value.retryable


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (APITimeoutError(request=_REQUEST), GenerationErrorKind.TIMEOUT),
        (APIConnectionError(request=_REQUEST), GenerationErrorKind.BACKEND_UNAVAILABLE),
        (
            APIStatusError("server error", response=httpx.Response(503, request=_REQUEST), body=None),
            GenerationErrorKind.BACKEND_UNAVAILABLE,
        ),
        (
            APIStatusError("slow down", response=httpx.Response(429, request=_REQUEST), body=None),
            GenerationErrorKind.BACKEND_UNAVAILABLE,
        ),
        (
            APIStatusError("model is loading", response=httpx.Response(400, request=_REQUEST), body=None),
            GenerationErrorKind.BACKEND_UNAVAILABLE,
        ),
        (
            APIStatusError("invalid api key", response=httpx.Response(401, request=_REQUEST), body=None),
            GenerationErrorKind.BACKEND_REJECTED,
        ),
        (
            APIStatusError("unknown model", response=httpx.Response(404, request=_REQUEST), body=None),
            GenerationErrorKind.BACKEND_REJECTED,
        ),
        (httpx.ReadTimeout("read timed out", request=_REQUEST), GenerationErrorKind.TIMEOUT),
        (httpx.ConnectError("refused", request=_REQUEST), GenerationErrorKind.BACKEND_UNAVAILABLE),
    ],
)
async def test_backend_failures_are_classified(exc: BaseException, kind: GenerationErrorKind) -> None:
    client, _ = _client(_raise(exc))

    with pytest.raises(GenerationError) as excinfo:
        await client.generate("p", "b", [], 5.0, model="m")

    assert excinfo.value.kind is kind
    assert excinfo.value.__cause__ is exc


@pytest.mark.asyncio
async def test_rotated_credential_uses_derived_client() -> None:
    client, fake = _client(lambda **_: _response("ok"))

    await client.generate("p", "b", [], 5.0, model="m", credential="base")
    await client.generate("p", "b", [], 5.0, model="m", credential="sk-rotated")
    await client.generate("p", "b", [], 5.0, model="m", credential="sk-rotated")

    assert len(fake.requests) == 1
    assert len(fake.derived) == 1
    assert fake.derived[0].api_key == "sk-rotated"
    assert len(fake.derived[0].requests) == 2


@pytest.mark.asyncio
async def test_debug_logging_captures_prompt_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(lambda **_: _response("ok"), debug_logging=True)
    captured: dict[str, Any] = {}
    monkeypatch.setattr(client, "_log_prompt_payload", lambda payload: captured.setdefault("payload", payload))

    await client.generate("p", "hello", [], 5.0, model="m")

    assert captured["payload"]["messages"][-1]["content"] == "hello"


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    client, fake = _client(lambda **_: _response("ok"))

    await client.aclose()

    assert fake.closed


@pytest.mark.asyncio
async def test_static_generator_returns_override() -> None:
    generator = StaticGenerator("  fixed text ")

    text = await generator.generate("p", "anything", [], 1.0, model="m")

    assert text == "fixed text"
    assert generator.calls == 1


def test_static_generator_rejects_blank_override() -> None:
    with pytest.raises(ValueError):
        StaticGenerator("   ")
