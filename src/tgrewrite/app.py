"""Command-line entry point for the tgrewrite userbot."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Sequence, TextIO, Tuple

from .rewrite.context import CachedHistory, ContextCache
from .rewrite.coordinator import RewriteCoordinator
from .rewrite.engine import RewriteEngine
from .rewrite.errors import AuthInvalidError
from .rewrite.filter import EventFilter
from .rewrite.generation import BackendSettings, GenerationClient, Generator, StaticGenerator
from .rewrite.settings_store import SettingsStore
from .services.config import (
    AppConfig,
    ConfigError,
    ConfigMode,
    RuntimeOptions,
    extract_snapshot,
    load_config_for_mode,
)
from .services.config_watcher import ConfigWatcher
from .services.secrets import SecretVault, redact_secret
from .transport.telegram import TelethonTransport
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_INVALID = 3


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the process."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), log_path)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `tgrewrite` console script."""

    args = _parse_cli_args(argv)
    options = RuntimeOptions.from_env()
    debug = bool(args.debug or options.debug)
    configure_logging(debug)
    config_path = Path(args.config).expanduser()

    try:
        if args.encrypt_secret:
            encrypt_secret(config_path, sys.stdin, sys.stdout)
            return
        if args.list_chats is not None:
            config = load_config_for_mode(config_path, ConfigMode.LIST_CHATS)
            asyncio.run(run_list_chats(config, args.list_chats))
            return
        config = load_config_for_mode(config_path, ConfigMode.REWRITE)
        asyncio.run(run_rewrite(config, options, debug=debug))
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc
    except AuthInvalidError as exc:
        _LOGGER.error("Telegram authorization lost: %s", exc)
        print(
            "Telegram session is no longer authorized. "
            "Remove the session file and run tgrewrite again to log in.",
            file=sys.stderr,
        )
        raise SystemExit(EXIT_AUTH_INVALID) from exc
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def run_rewrite(
    config: AppConfig,
    options: RuntimeOptions,
    *,
    debug: bool = False,
    transport: Any = None,
    generator: Generator | None = None,
    watcher: ConfigWatcher | None = None,
) -> None:
    """Run rewrite mode until a signal arrives, the feed ends, or auth is lost."""

    if config.backend is None or config.rewrite is None:
        raise ConfigError("rewrite mode needs both [backend] and [rewrite] sections")
    snapshot = extract_snapshot(config)
    store = SettingsStore(snapshot)
    _LOGGER.info(
        "Starting rewrite mode (provider=%s, base_url=%s, model=%s, api_key=%s, chats=%s)",
        config.backend.provider,
        config.backend.base_url,
        snapshot.model_identifier,
        redact_secret(snapshot.backend_credential) or "<none>",
        sorted(snapshot.monitored_chats),
    )

    active_transport = transport or TelethonTransport(
        config.telegram.session_file,
        config.telegram.api_id,
        config.telegram.api_hash,
        catch_up=not options.disable_catch_up,
    )
    active_generator = generator or build_generator(config, options, debug=debug)
    cache = ContextCache(snapshot.context_depth)
    coordinator = RewriteCoordinator(
        store,
        active_generator,
        active_transport,
        generation_timeout=float(config.backend.timeout_seconds),
        mark_edits=config.rewrite.mark_edits,
    )
    skip_before = None if options.disable_historical_skip else datetime.now(timezone.utc)
    engine = RewriteEngine(
        store,
        EventFilter(CachedHistory(cache, active_transport.fetch_history)),
        coordinator,
        context_cache=cache,
        skip_before=skip_before,
    )

    active_watcher = watcher
    if active_watcher is None and config.source is not None:
        active_watcher = ConfigWatcher(config.source, initial=snapshot)

    stop = asyncio.Event()
    installed = _install_signal_handlers(stop)
    try:
        await active_transport.connect()
        updates = None
        if active_watcher is not None:
            active_watcher.start()
            updates = active_watcher.updates()
        await engine.run(active_transport.events(), updates, stop.wait())
    finally:
        _remove_signal_handlers(installed)
        if active_watcher is not None:
            active_watcher.stop()
        await active_transport.disconnect()
        close = getattr(active_generator, "aclose", None)
        if close is not None:
            await close()
    _LOGGER.info("Rewrite mode stopped")


def build_generator(config: AppConfig, options: RuntimeOptions, *, debug: bool = False) -> Generator:
    if options.rewrite_override:
        _LOGGER.warning("Rewrite override is active; the model backend will not be called")
        return StaticGenerator(options.rewrite_override)
    backend = config.backend
    if backend is None:
        raise ConfigError("missing required [backend] section for rewrite mode")
    return GenerationClient(
        BackendSettings(
            base_url=backend.base_url,
            api_key=backend.api_key,
            provider=backend.provider,
            request_timeout=float(backend.timeout_seconds),
            debug_logging=debug,
        )
    )


async def run_list_chats(
    config: AppConfig,
    query: str | None,
    *,
    transport: Any = None,
    out: TextIO | None = None,
) -> None:
    active_transport = transport or TelethonTransport(
        config.telegram.session_file,
        config.telegram.api_id,
        config.telegram.api_hash,
        catch_up=False,
    )
    await active_transport.connect()
    try:
        chats = await active_transport.list_chats(query)
    finally:
        await active_transport.disconnect()
    destination = out or sys.stdout
    for line in format_chat_listing(chats, query):
        destination.write(line + "\n")


def format_chat_listing(chats: Sequence[Tuple[int, str]], query: str | None) -> List[str]:
    if not chats:
        needle = (query or "").strip()
        if needle:
            return [f"No chats matched filter: {needle}"]
        return ["No chats found."]
    return [f"{chat_id}\t{name}" for chat_id, name in chats]


def encrypt_secret(config_path: Path, source: TextIO, destination: TextIO) -> None:
    """Read one secret and print its ``fernet:`` form for pasting into the config."""

    if source.isatty():
        secret = getpass.getpass("Secret to encrypt: ")
    else:
        secret = source.readline()
    secret = secret.strip()
    if not secret:
        raise ConfigError("no secret provided on stdin")
    vault = SecretVault.for_config(config_path)
    destination.write(vault.encrypt(secret) + "\n")
    _LOGGER.info("Encrypted secret with key file %s", vault.key_path)


def _install_signal_handlers(stop: asyncio.Event) -> List[int]:
    loop = asyncio.get_running_loop()
    installed: List[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
    return installed


def _remove_signal_handlers(installed: Sequence[int]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tgrewrite",
        description="Rewrite your own Telegram messages in place through a language model.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default="config.toml",
        help="Path to the TOML config file (default: config.toml).",
    )
    parser.add_argument(
        "--list-chats",
        metavar="QUERY",
        nargs="?",
        const="",
        default=None,
        help="List chats visible to the account, optionally filtered by name, and exit.",
    )
    parser.add_argument(
        "--encrypt-secret",
        action="store_true",
        help="Read a secret from stdin and print its encrypted config value.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)
