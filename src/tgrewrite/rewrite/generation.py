"""Async text-generation adapter built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from .errors import GenerationError, GenerationErrorKind
from .types import ContextMessage

__all__ = [
    "BackendSettings",
    "Generator",
    "GenerationClient",
    "StaticGenerator",
    "build_messages",
]

LOGGER = logging.getLogger(__name__)
_LOCAL_PLACEHOLDER_KEY = "not-needed"
_UNAVAILABLE_STATUS = frozenset({408, 409, 425, 429})
_LOADING_HINTS = ("loading model", "model is loading", "try again")


class Generator(Protocol):
    """Anything able to turn a message body into rewritten text."""

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
        ...


@dataclass(slots=True)
class BackendSettings:
    """Connection settings bound when the adapter is constructed."""

    base_url: str
    api_key: str | None = None
    provider: str = "openai"
    request_timeout: float = 20.0
    temperature: float | None = None
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


def build_messages(prompt: str, body: str, context: Sequence[ContextMessage]) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [{"role": "system", "content": prompt}]
    for entry in context:
        messages.append({"role": "user", "content": entry.as_llm_user_content()})
    messages.append({"role": "user", "content": body})
    return messages


class GenerationClient:
    """Single-shot chat completion with classified failures.

    The adapter never retries; the SDK's own retry loop is disabled so the
    coordinator is the only place that counts attempts.
    """

    def __init__(self, settings: BackendSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._base_key = settings.api_key or None
        self._derived: Dict[str, AsyncOpenAI] = {}

    @property
    def settings(self) -> BackendSettings:
        return self._settings

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
        payload: Dict[str, Any] = {
            "model": model,
            "messages": build_messages(prompt, body, context),
        }
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        LOGGER.debug(
            "Sending rewrite request to %s (model=%s, context=%s, timeout=%.1fs)",
            self._settings.provider,
            model,
            len(context),
            timeout,
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        client = self._client_for(credential)
        try:
            response = await asyncio.wait_for(client.chat.completions.create(**payload), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationError(GenerationErrorKind.TIMEOUT, f"no response within {timeout:.1f}s") from exc
        except APITimeoutError as exc:
            raise GenerationError(GenerationErrorKind.TIMEOUT, str(exc)) from exc
        except APIConnectionError as exc:
            raise GenerationError(GenerationErrorKind.BACKEND_UNAVAILABLE, str(exc)) from exc
        except APIStatusError as exc:
            raise self._classify_status(exc) from exc
        except httpx.TimeoutException as exc:
            raise GenerationError(GenerationErrorKind.TIMEOUT, str(exc)) from exc
        except httpx.TransportError as exc:
            raise GenerationError(GenerationErrorKind.BACKEND_UNAVAILABLE, str(exc)) from exc

        text = _extract_content(response)
        if not text:
            raise GenerationError(GenerationErrorKind.EMPTY_RESPONSE, "backend returned no assistant content")
        return text

    def _client_for(self, credential: str | None) -> AsyncOpenAI:
        key = (credential or "").strip()
        if not key or key == self._base_key:
            return self._client
        derived = self._derived.get(key)
        if derived is None:
            LOGGER.debug("Deriving backend client for rotated credential")
            derived = self._client.with_options(api_key=key)
            self._derived.clear()
            self._derived[key] = derived
        return derived

    @staticmethod
    def _classify_status(exc: APIStatusError) -> GenerationError:
        status = getattr(exc, "status_code", None) or 0
        detail = f"HTTP {status}: {exc.message}" if getattr(exc, "message", None) else f"HTTP {status}"
        lowered = detail.lower()
        if status >= 500 or status in _UNAVAILABLE_STATUS or any(hint in lowered for hint in _LOADING_HINTS):
            return GenerationError(GenerationErrorKind.BACKEND_UNAVAILABLE, detail)
        return GenerationError(GenerationErrorKind.BACKEND_REJECTED, detail)

    def _build_client(self, settings: BackendSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or _LOCAL_PLACEHOLDER_KEY,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Rewrite payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Rewrite payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


class StaticGenerator:
    """Returns a fixed rewrite; used to exercise the pipeline without a model."""

    def __init__(self, text: str) -> None:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("override text must not be empty")
        self._text = cleaned
        self.calls = 0

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
        del prompt, body, context, timeout, model, credential
        self.calls += 1
        LOGGER.debug("Using static rewrite override text")
        return self._text


def _extract_content(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if not isinstance(content, str):
        return ""
    return content.strip()
