"""Atomically replaceable holder for the active rewrite settings."""

from __future__ import annotations

import logging
from typing import Any

from .types import Snapshot

__all__ = ["SettingsStore"]

LOGGER = logging.getLogger(__name__)


class SettingsStore:
    """Hands out the current :class:`Snapshot` and swaps it on reload.

    The store keeps a single reference to an immutable snapshot. Installing a
    new one rebinds that reference, so any reader sees either the old or the
    new snapshot in full. Nothing here awaits, so no lock is ever held across
    a suspension point.
    """

    def __init__(self, initial: Snapshot) -> None:
        initial.validate()
        self._snapshot = initial
        self._generation = 0

    def current(self) -> Snapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        """Number of successful installs since construction."""

        return self._generation

    def install(self, new: Any) -> bool:
        """Replace the visible snapshot; invalid payloads leave it untouched."""

        if not isinstance(new, Snapshot):
            LOGGER.warning("Ignoring settings install of unexpected type %s", type(new).__name__)
            return False
        try:
            new.validate()
        except ValueError as exc:
            LOGGER.warning("Ignoring invalid settings snapshot: %s", exc)
            return False
        if new == self._snapshot:
            LOGGER.debug("Settings snapshot unchanged; skipping install")
            return True
        self._snapshot = new
        self._generation += 1
        LOGGER.info(
            "Settings snapshot installed (generation=%s, model=%s, chats=%s, context_depth=%s)",
            self._generation,
            new.model_identifier,
            sorted(new.monitored_chats),
            new.context_depth,
        )
        return True
