"""Shared pytest configuration."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TGREWRITE_API_KEY",
        "TGREWRITE_MODEL",
        "TGREWRITE_BASE_URL",
        "TGREWRITE_REWRITE_OVERRIDE",
        "TGREWRITE_DISABLE_HISTORICAL_SKIP",
        "TGREWRITE_DISABLE_CATCH_UP",
        "TGREWRITE_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
