"""Filesystem watcher that turns config file edits into snapshot notifications."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..rewrite.types import Snapshot
from .config import load_snapshot

__all__ = ["ConfigFileHandler", "ConfigWatcher", "event_targets_config"]

LOGGER = logging.getLogger(__name__)
DEFAULT_DEBOUNCE = 0.05

SnapshotLoader = Callable[[Path], Snapshot]


def event_targets_config(path: str | bytes | None, watched: Path) -> bool:
    """Return True when a watchdog event path refers to the watched config file."""

    if not path:
        return False
    if isinstance(path, bytes):
        path = os.fsdecode(path)
    candidate = Path(path)
    if candidate == watched:
        return True
    try:
        return candidate.resolve() == watched.resolve()
    except OSError:
        return candidate.name == watched.name and candidate.parent == watched.parent


class ConfigFileHandler(FileSystemEventHandler):
    """Forwards create/modify/move events for one file to ``notify``.

    Editors commonly save through a temp file and a rename, so the destination
    of a move counts as a change too.
    """

    def __init__(self, watched: Path, notify: Callable[[], None]) -> None:
        super().__init__()
        self._watched = watched
        self._notify = notify

    def _handle_path(self, path: Any) -> None:
        if event_targets_config(path, self._watched):
            self._notify()

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle_path(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle_path(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle_path(getattr(event, "dest_path", ""))


class ConfigWatcher:
    """Watches the config file's directory and yields changed, valid snapshots.

    Invalid reloads are logged and dropped so the previous snapshot stays
    active. Reloads equal to the last delivered snapshot are suppressed.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        initial: Snapshot | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        loader: SnapshotLoader | None = None,
        environ: Mapping[str, str] | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self._path = Path(path).expanduser().absolute()
        self._last = initial
        self._debounce = max(0.0, debounce)
        self._loader = loader or (lambda target: load_snapshot(target, environ=environ))
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._changed: asyncio.Event | None = None
        self._stopped = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Begin watching; must be called from the event loop thread."""

        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._changed = asyncio.Event()
        self._stopped = False
        observer = self._observer_factory()
        observer.schedule(ConfigFileHandler(self._path, self.notify), str(self._path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        LOGGER.info("Watching config file for changes: %s", self._path)

    def stop(self) -> None:
        self._stopped = True
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=2.0)
        if self._changed is not None:
            self._changed.set()

    def notify(self) -> None:
        """Signal a change; safe to call from the watchdog thread."""

        loop, changed = self._loop, self._changed
        if loop is None or changed is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(changed.set)
        except RuntimeError:
            LOGGER.debug("Config change notification dropped; event loop is closing")

    async def updates(self) -> AsyncIterator[Snapshot]:
        if self._changed is None:
            self.start()
        changed = self._changed
        if changed is None:
            raise RuntimeError("config watcher failed to start")
        while not self._stopped:
            await changed.wait()
            if self._stopped:
                return
            await asyncio.sleep(self._debounce)
            changed.clear()
            snapshot = self._reload()
            if snapshot is not None:
                yield snapshot

    def _reload(self) -> Snapshot | None:
        try:
            snapshot = self._loader(self._path)
        except ValueError as exc:
            LOGGER.warning("Ignoring invalid config update from %s: %s", self._path, exc)
            return None
        if snapshot == self._last:
            LOGGER.debug("Config file changed but rewrite settings are identical; skipping reload")
            return None
        self._last = snapshot
        return snapshot
