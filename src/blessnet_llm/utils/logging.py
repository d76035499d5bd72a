"""Logging setup driven by :class:`~blessnet_llm.settings.DriverSettings`."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from ..settings import DriverSettings

__all__ = ["setup_logging", "get_log_path", "LOG_FILE_NAME"]

LOGGER = logging.getLogger(__name__)

LOG_FILE_NAME = "llm_driver.log"
_THIRD_PARTY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "mcp")
_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# (log path, level) of the active configuration and the handlers it installed.
_ACTIVE: tuple[Path, int] | None = None
_INSTALLED: list[logging.Handler] = []


def setup_logging(
    settings: "DriverSettings",
    *,
    debug: bool = False,
    console: bool = True,
    force: bool = False,
) -> Path:
    """Send driver logs to ``settings.log_dir`` and, optionally, stderr.

    The level is DEBUG when ``debug`` or ``settings.debug_logging`` is set and
    INFO otherwise. Calling again with the same log file and level is a no-op;
    a different file or level swaps the handlers this function installed and
    leaves every other root handler alone.
    """

    global _ACTIVE
    level = logging.DEBUG if debug or settings.debug_logging else logging.INFO
    log_path = Path(settings.log_dir).expanduser() / LOG_FILE_NAME
    if _ACTIVE == (log_path, level) and not force:
        return log_path

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
    ]
    if console:
        # stderr keeps chat output on stdout clean
        handlers.append(logging.StreamHandler())

    root = logging.getLogger()
    _remove_installed(root)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(_FORMATTER)
        root.addHandler(handler)
    root.setLevel(level)
    _INSTALLED.extend(handlers)
    logging.captureWarnings(True)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _ACTIVE = (log_path, level)
    LOGGER.debug("Logging to %s at %s", log_path, logging.getLevelName(level))
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _ACTIVE[0] if _ACTIVE is not None else None


def _remove_installed(root: logging.Logger) -> None:
    while _INSTALLED:
        handler = _INSTALLED.pop()
        root.removeHandler(handler)
        handler.close()
