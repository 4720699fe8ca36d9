"""Process-wide logging for tgrewrite.

One rotating log file under ``~/.tgrewrite/logs`` (or ``TGREWRITE_LOG_DIR``)
plus an optional stderr handler. Console output never goes to stdout, which
carries the chat listing and encrypted tokens printed by the CLI.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
from pathlib import Path

__all__ = ["SecretMaskingFilter", "setup_logging", "get_log_path"]

LOG_DIR_ENV = "TGREWRITE_LOG_DIR"
LOG_FILE_NAME = "tgrewrite.log"
_DEFAULT_LOG_DIR = Path.home() / ".tgrewrite" / "logs"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_THIRD_PARTY: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "telethon", "watchdog")
_SECRET_PATTERN = re.compile(r"(fernet:|sk-)[A-Za-z0-9_\-=]{4,}")

_log_path: Path | None = None


class SecretMaskingFilter(logging.Filter):
    """Replace API keys and ``fernet:`` tokens in rendered records."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET_PATTERN.sub(lambda match: f"{match.group(1)}***", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the file (and console) handlers on the root logger.

    Repeated calls are no-ops unless ``force`` is set, in which case the
    previous handlers are replaced.
    """

    global _log_path
    if _log_path is not None and not force:
        return _log_path

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    masking = SecretMaskingFilter()
    handlers = [_file_handler(path, max_bytes, backup_count)]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(masking)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Library debug output (MTProto frames, HTTP bodies) stays at WARNING
    # unless the root level is already stricter.
    library_level = max(level, logging.WARNING)
    for name in _THIRD_PARTY:
        logging.getLogger(name).setLevel(library_level)

    _log_path = path
    return path


def get_log_path() -> Path | None:
    return _log_path


def _file_handler(path: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
