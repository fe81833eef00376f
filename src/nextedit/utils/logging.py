"""Logging setup driven by the ``debug_logging`` setting.

The ``nextedit`` logger tree logs at DEBUG when debug logging is on and at
INFO otherwise. Everything reaches ``nextedit.log``; the console handler
only shows warnings unless debugging, so CLI output on stdout stays clean.
HTTP and SDK loggers are held at WARNING either way.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["PACKAGE_LOGGER", "get_log_path", "setup_logging"]

PACKAGE_LOGGER = "nextedit"
LOG_FILENAME = "nextedit.log"
_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_BACKEND_LOGGERS = ("httpx", "httpcore", "openai", "asyncio")
_ROTATE_BYTES = 512 * 1024
_ROTATE_KEEP = 2

_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    debug: bool = False,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    force: bool = False,
) -> Path:
    """Attach the file (and console) handlers once per process; ``force`` rebuilds them."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    directory = Path(log_dir or os.environ.get("NEXTEDIT_LOG_DIR") or Path.home() / ".nextedit" / "logs")
    directory = directory.expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILENAME

    formatter = logging.Formatter(_FORMAT)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=_ROTATE_BYTES, backupCount=_ROTATE_KEEP, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [file_handler]
    if console:
        stderr_handler = logging.StreamHandler()
        stderr_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
        stderr_handler.setFormatter(formatter)
        handlers.append(stderr_handler)

    logging.basicConfig(level=logging.WARNING, handlers=handlers, force=True)
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG if debug else logging.INFO)
    for name in _BACKEND_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH
