"""Tests for TOML config loading and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import pytest

from tgrewrite.services.config import (
    ConfigError,
    ConfigMode,
    RuntimeOptions,
    extract_snapshot,
    load_config_for_mode,
    load_snapshot,
    parse_and_validate_config,
)
from tgrewrite.services.secrets import SecretVault

_VALID = """
[telegram]
api_id = 12345
api_hash = "abcdef"
session_file = "sessions/me.session"

[backend]
provider = "openai"
model = "gpt-4o-mini"
api_key = "sk-test"

[rewrite]
chats = [-1001, 42, 42]
system_prompt = "Rewrite the message formally."
"""


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(body, encoding="utf-8")
    return path


def _data(**sections: Dict[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "telegram": {"api_id": 1, "api_hash": "hash"},
        "backend": {"provider": "ollama", "model": "llama3"},
        "rewrite": {"chats": [1], "system_prompt": "p"},
    }
    for name, values in sections.items():
        if values is None:
            data.pop(name, None)
        else:
            data[name] = {**data.get(name, {}), **values}
    return data


def test_load_valid_rewrite_config(tmp_path: Path) -> None:
    config = load_config_for_mode(_write(tmp_path, _VALID), ConfigMode.REWRITE, environ={})

    assert config.telegram.api_id == 12345
    assert config.telegram.session_file == tmp_path / "sessions" / "me.session"
    assert config.backend is not None
    assert config.backend.base_url == "https://api.openai.com/v1"
    assert config.backend.timeout_seconds == 20
    assert config.rewrite is not None
    assert config.rewrite.chats == (-1001, 42)
    assert config.rewrite.context_messages == 10
    assert config.rewrite.mark_edits is False


def test_extract_snapshot_projects_hot_settings(tmp_path: Path) -> None:
    snapshot = load_snapshot(_write(tmp_path, _VALID), environ={})

    assert snapshot.monitored_chats == frozenset({-1001, 42})
    assert snapshot.model_identifier == "gpt-4o-mini"
    assert snapshot.backend_credential == "sk-test"
    assert snapshot.system_prompt == "Rewrite the message formally."
    assert snapshot.context_depth == 10


def test_list_chats_mode_only_needs_telegram(tmp_path: Path) -> None:
    path = _write(tmp_path, '[telegram]\napi_id = 5\napi_hash = "h"\n')

    config = load_config_for_mode(path, ConfigMode.LIST_CHATS, environ={})

    assert config.backend is None
    assert config.rewrite is None
    with pytest.raises(ConfigError):
        extract_snapshot(config)


def test_ollama_defaults_need_no_key() -> None:
    config = parse_and_validate_config(_data(), ConfigMode.REWRITE, environ={})

    assert config.backend is not None
    assert config.backend.base_url == "http://localhost:11434/v1"
    assert config.backend.api_key is None


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (_data(telegram=None), "missing required [telegram] section"),
        (_data(telegram={"api_id": 0}), "telegram.api_id must be positive"),
        (_data(telegram={"api_id": "12"}), "telegram.api_id must be an integer"),
        (_data(telegram={"api_hash": " "}), "telegram.api_hash must not be empty"),
        (_data(backend=None), "missing required [backend] section for rewrite mode"),
        (_data(backend={"provider": "claude"}), "backend.provider must be one of: ollama, openai"),
        (_data(backend={"provider": "openai"}), "backend.api_key is required for the openai provider"),
        (_data(backend={"model": ""}), "backend.model must not be empty"),
        (_data(backend={"timeout_seconds": 0}), "backend.timeout_seconds must be positive"),
        (_data(rewrite=None), "missing required [rewrite] section for rewrite mode"),
        (_data(rewrite={"chats": []}), "rewrite.chats must not be empty"),
        (_data(rewrite={"chats": ["x"]}), "rewrite.chats contains a non-integer chat id"),
        (_data(rewrite={"system_prompt": ""}), "rewrite.system_prompt must not be empty"),
        (_data(rewrite={"context_messages": -1}), "rewrite.context_messages must be non-negative"),
        (_data(rewrite={"mark_edits": "yes"}), "rewrite.mark_edits must be a boolean"),
    ],
)
def test_validation_errors_name_the_key(data: Dict[str, Any], message: str) -> None:
    with pytest.raises(ConfigError, match=message.replace("[", r"\[").replace("]", r"\]")):
        parse_and_validate_config(data, ConfigMode.REWRITE, environ={})


def test_config_error_is_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


def test_missing_file_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="config file not found"):
        load_config_for_mode(tmp_path / "absent.toml", ConfigMode.REWRITE, environ={})


def test_malformed_toml_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="failed to parse TOML"):
        load_config_for_mode(_write(tmp_path, "[telegram\napi_id = "), ConfigMode.REWRITE, environ={})


def test_environment_overrides_backend_values(tmp_path: Path) -> None:
    environ = {
        "TGREWRITE_API_KEY": "sk-env",
        "TGREWRITE_MODEL": "gpt-env",
        "TGREWRITE_BASE_URL": "http://proxy/v1/",
    }

    config = load_config_for_mode(_write(tmp_path, _VALID), ConfigMode.REWRITE, environ=environ)

    assert config.backend is not None
    assert config.backend.api_key == "sk-env"
    assert config.backend.model == "gpt-env"
    assert config.backend.base_url == "http://proxy/v1"


def test_encrypted_api_key_is_decrypted(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    token = SecretVault.for_config(path).encrypt("sk-secret")
    _write(tmp_path, _VALID.replace('api_key = "sk-test"', f'api_key = "{token}"'))

    config = load_config_for_mode(path, ConfigMode.REWRITE, environ={})

    assert config.backend is not None
    assert config.backend.api_key == "sk-secret"


def test_encrypted_value_without_key_file_fails(tmp_path: Path) -> None:
    path = _write(tmp_path, _VALID.replace('api_key = "sk-test"', 'api_key = "fernet:bogus"'))

    with pytest.raises(ConfigError, match="backend.api_key"):
        load_config_for_mode(path, ConfigMode.REWRITE, environ={})


def test_runtime_options_from_env() -> None:
    options = RuntimeOptions.from_env(
        {
            "TGREWRITE_DISABLE_HISTORICAL_SKIP": "1",
            "TGREWRITE_DISABLE_CATCH_UP": "no",
            "TGREWRITE_REWRITE_OVERRIDE": "  fixed  ",
            "TGREWRITE_DEBUG": "true",
        }
    )

    assert options.disable_historical_skip is True
    assert options.disable_catch_up is False
    assert options.rewrite_override == "fixed"
    assert options.debug is True
    assert RuntimeOptions.from_env({}) == RuntimeOptions()
