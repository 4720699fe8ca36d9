"""Fernet-backed secret vault for credentials kept in the config file."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

__all__ = ["SecretVault", "SECRET_PREFIX", "is_encrypted", "redact_secret"]

LOGGER = logging.getLogger(__name__)
SECRET_PREFIX = "fernet:"


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.strip().startswith(SECRET_PREFIX)  # type: ignore[union-attr]


def redact_secret(value: str | None) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


class SecretVault:
    """Encrypts and decrypts ``fernet:``-prefixed config values.

    The symmetric key lives next to the config file and is created on first
    encryption with owner-only permissions.
    """

    def __init__(self, key_path: Path) -> None:
        self._key_path = key_path
        self._fernet: Fernet | None = None

    @classmethod
    def for_config(cls, config_path: Path) -> "SecretVault":
        return cls(config_path.with_suffix(config_path.suffix + ".key"))

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet(create=True).encrypt(secret.encode("utf-8"))
        return f"{SECRET_PREFIX}{token.decode('ascii')}"

    def decrypt(self, value: str) -> str:
        """Return the plaintext for ``value``; unprefixed values pass through."""

        stripped = (value or "").strip()
        if not stripped.startswith(SECRET_PREFIX):
            return value
        payload = stripped[len(SECRET_PREFIX):]
        try:
            raw = self._get_fernet(create=False).decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("encrypted value cannot be decrypted with the configured key") from exc
        return raw.decode("utf-8")

    def _get_fernet(self, *, create: bool) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_key(create=create))
        return self._fernet

    def _load_key(self, *, create: bool) -> bytes:
        path = self._key_path
        if path.exists():
            return path.read_bytes().strip()
        if not create:
            raise ValueError(f"secret key file not found: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        LOGGER.info("Created secret key file at %s", path)
        return key
