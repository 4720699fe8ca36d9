"""TOML configuration loading, validation, and snapshot extraction."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from ..rewrite.types import Snapshot
from .secrets import SecretVault, is_encrypted

__all__ = [
    "AppConfig",
    "BackendConfig",
    "ConfigError",
    "ConfigMode",
    "RewriteConfig",
    "RuntimeOptions",
    "TelegramConfig",
    "extract_snapshot",
    "load_config_for_mode",
    "load_snapshot",
    "parse_and_validate_config",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20
DEFAULT_CONTEXT_MESSAGES = 10
DEFAULT_SESSION_FILE = "tgrewrite.session"
PROVIDER_DEFAULT_URLS: Mapping[str, str] = {
    "openai": "https://api.openai.com/v1",
    "ollama": "http://localhost:11434/v1",
}
_ENV_OVERRIDES: Mapping[str, str] = {
    "TGREWRITE_API_KEY": "api_key",
    "TGREWRITE_MODEL": "model",
    "TGREWRITE_BASE_URL": "base_url",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


class ConfigError(ValueError):
    """Raised when the configuration file is missing, malformed, or invalid."""


class ConfigMode(Enum):
    REWRITE = "rewrite"
    LIST_CHATS = "list-chats"


@dataclass(frozen=True, slots=True)
class TelegramConfig:
    api_id: int
    api_hash: str
    session_file: Path


@dataclass(frozen=True, slots=True)
class BackendConfig:
    provider: str
    base_url: str
    model: str
    api_key: str | None = None
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True, slots=True)
class RewriteConfig:
    chats: Tuple[int, ...]
    system_prompt: str
    context_messages: int = DEFAULT_CONTEXT_MESSAGES
    mark_edits: bool = False


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Validated configuration; ``backend``/``rewrite`` are only set in rewrite mode."""

    telegram: TelegramConfig
    backend: BackendConfig | None = None
    rewrite: RewriteConfig | None = None
    source: Path | None = None


@dataclass(frozen=True, slots=True)
class RuntimeOptions:
    """Process-level switches read from the environment once at startup."""

    disable_historical_skip: bool = False
    disable_catch_up: bool = False
    rewrite_override: str | None = None
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RuntimeOptions":
        env = os.environ if environ is None else environ
        override = (env.get("TGREWRITE_REWRITE_OVERRIDE") or "").strip() or None
        return cls(
            disable_historical_skip=_env_flag(env, "TGREWRITE_DISABLE_HISTORICAL_SKIP"),
            disable_catch_up=_env_flag(env, "TGREWRITE_DISABLE_CATCH_UP"),
            rewrite_override=override,
            debug=_env_flag(env, "TGREWRITE_DEBUG"),
        )


def load_config_for_mode(
    path: Path | str,
    mode: ConfigMode,
    *,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Read ``path`` and validate it for ``mode``."""

    config_path = Path(path).expanduser()
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {config_path}") from exc
    except OSError as exc:
        raise ConfigError(f"failed to read config file {config_path}: {exc}") from exc
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"failed to parse TOML config {config_path}: {exc}") from exc
    return parse_and_validate_config(data, mode, source=config_path, environ=environ)


def parse_and_validate_config(
    data: Mapping[str, Any],
    mode: ConfigMode,
    *,
    source: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    env = os.environ if environ is None else environ
    vault = SecretVault.for_config(source) if source is not None else None
    base_dir = source.parent if source is not None else Path.cwd()

    telegram = _parse_telegram(_section(data, "telegram", required_for=None), base_dir, vault)
    if mode is ConfigMode.LIST_CHATS:
        return AppConfig(telegram=telegram, source=source)

    backend_raw = dict(_section(data, "backend", required_for=mode))
    for env_name, key in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None and value.strip():
            LOGGER.debug("Applying environment override %s", env_name)
            backend_raw[key] = value.strip()
    backend = _parse_backend(backend_raw, vault)
    rewrite = _parse_rewrite(_section(data, "rewrite", required_for=mode))
    return AppConfig(telegram=telegram, backend=backend, rewrite=rewrite, source=source)


def extract_snapshot(config: AppConfig) -> Snapshot:
    """Project the hot-swappable subset of ``config`` into a :class:`Snapshot`."""

    if config.backend is None or config.rewrite is None:
        raise ConfigError("rewrite settings are only available in rewrite mode")
    return Snapshot.build(
        system_prompt=config.rewrite.system_prompt,
        chats=config.rewrite.chats,
        model=config.backend.model,
        credential=config.backend.api_key,
        context_depth=config.rewrite.context_messages,
    )


def load_snapshot(path: Path | str, *, environ: Mapping[str, str] | None = None) -> Snapshot:
    return extract_snapshot(load_config_for_mode(path, ConfigMode.REWRITE, environ=environ))


def _section(data: Mapping[str, Any], name: str, *, required_for: ConfigMode | None) -> Mapping[str, Any]:
    section = data.get(name)
    if section is None:
        if required_for is None:
            raise ConfigError(f"missing required [{name}] section")
        raise ConfigError(f"missing required [{name}] section for {required_for.value} mode")
    if not isinstance(section, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_telegram(section: Mapping[str, Any], base_dir: Path, vault: SecretVault | None) -> TelegramConfig:
    api_id = _require_int(section, "telegram.api_id", "api_id")
    if api_id <= 0:
        raise ConfigError("telegram.api_id must be positive")
    api_hash = _decrypt(_require_str(section, "telegram.api_hash", "api_hash"), "telegram.api_hash", vault)
    session_raw = section.get("session_file", DEFAULT_SESSION_FILE)
    if not isinstance(session_raw, str) or not session_raw.strip():
        raise ConfigError("telegram.session_file must not be empty")
    session_file = Path(session_raw.strip()).expanduser()
    if not session_file.is_absolute():
        session_file = base_dir / session_file
    return TelegramConfig(api_id=api_id, api_hash=api_hash, session_file=session_file)


def _parse_backend(section: Dict[str, Any], vault: SecretVault | None) -> BackendConfig:
    provider = str(section.get("provider") or "openai").strip().lower()
    if provider not in PROVIDER_DEFAULT_URLS:
        choices = ", ".join(sorted(PROVIDER_DEFAULT_URLS))
        raise ConfigError(f"backend.provider must be one of: {choices}")

    base_url = section.get("base_url") or PROVIDER_DEFAULT_URLS[provider]
    if not isinstance(base_url, str) or not base_url.strip():
        raise ConfigError("backend.base_url must not be empty")
    model = _require_str(section, "backend.model", "model")

    api_key_raw = section.get("api_key")
    if api_key_raw is not None and not isinstance(api_key_raw, str):
        raise ConfigError("backend.api_key must be a string")
    api_key = _decrypt(api_key_raw.strip(), "backend.api_key", vault) if api_key_raw and api_key_raw.strip() else None
    if provider == "openai" and not api_key:
        raise ConfigError("backend.api_key is required for the openai provider")

    timeout = section.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, int):
        raise ConfigError("backend.timeout_seconds must be an integer")
    if timeout <= 0:
        raise ConfigError("backend.timeout_seconds must be positive")

    return BackendConfig(
        provider=provider,
        base_url=base_url.strip().rstrip("/"),
        model=model,
        api_key=api_key,
        timeout_seconds=timeout,
    )


def _parse_rewrite(section: Mapping[str, Any]) -> RewriteConfig:
    chats_raw = section.get("chats")
    if chats_raw is None:
        raise ConfigError("rewrite.chats must not be empty")
    if not isinstance(chats_raw, list):
        raise ConfigError("rewrite.chats must be a list of chat ids")
    chats: list[int] = []
    for value in chats_raw:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"rewrite.chats contains a non-integer chat id: {value!r}")
        if value not in chats:
            chats.append(value)
    if not chats:
        raise ConfigError("rewrite.chats must not be empty")

    system_prompt = _require_str(section, "rewrite.system_prompt", "system_prompt")

    depth = section.get("context_messages", DEFAULT_CONTEXT_MESSAGES)
    if isinstance(depth, bool) or not isinstance(depth, int):
        raise ConfigError("rewrite.context_messages must be an integer")
    if depth < 0:
        raise ConfigError("rewrite.context_messages must be non-negative")

    mark_edits = section.get("mark_edits", False)
    if not isinstance(mark_edits, bool):
        raise ConfigError("rewrite.mark_edits must be a boolean")

    return RewriteConfig(
        chats=tuple(chats),
        system_prompt=system_prompt,
        context_messages=depth,
        mark_edits=mark_edits,
    )


def _require_str(section: Mapping[str, Any], label: str, key: str) -> str:
    value = section.get(key)
    if value is None:
        raise ConfigError(f"{label} is required")
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{label} must not be empty")
    return stripped


def _require_int(section: Mapping[str, Any], label: str, key: str) -> int:
    value = section.get(key)
    if value is None:
        raise ConfigError(f"{label} is required")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer")
    return value


def _decrypt(value: str, label: str, vault: SecretVault | None) -> str:
    if not is_encrypted(value):
        return value
    if vault is None:
        raise ConfigError(f"{label} is encrypted but no key file location is known")
    try:
        return vault.decrypt(value)
    except ValueError as exc:
        raise ConfigError(f"{label}: {exc}") from exc


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    value = env.get(name)
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES
