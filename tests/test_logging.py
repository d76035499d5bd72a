"""Tests for the logging helpers."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from blessnet_llm.settings import DriverSettings
from blessnet_llm.utils import logging as logging_utils


def _file_handlers() -> list[logging.handlers.RotatingFileHandler]:
    return [
        handler
        for handler in logging.getLogger().handlers
        if isinstance(handler, logging.handlers.RotatingFileHandler)
    ]


def test_setup_logging_writes_to_settings_log_dir(tmp_path: Path) -> None:
    settings = DriverSettings(log_dir=tmp_path, log_max_bytes=2048, log_backup_count=5)

    log_path = logging_utils.setup_logging(settings, console=False)
    logging.getLogger("blessnet_llm.test").info("driver ready")
    for handler in _file_handlers():
        handler.flush()

    assert log_path == tmp_path / "llm_driver.log"
    assert logging_utils.get_log_path() == log_path
    assert "driver ready" in log_path.read_text(encoding="utf-8")
    (handler,) = _file_handlers()
    assert handler.maxBytes == 2048
    assert handler.backupCount == 5


def test_default_log_dir_lives_under_home(isolated_environment: Path) -> None:
    log_path = logging_utils.setup_logging(DriverSettings(), console=False)

    assert log_path == isolated_environment / ".blessnet" / "logs" / "llm_driver.log"


def test_debug_logging_setting_selects_level(tmp_path: Path) -> None:
    logging_utils.setup_logging(DriverSettings(log_dir=tmp_path), console=False)
    assert logging.getLogger().level == logging.INFO

    logging_utils.setup_logging(DriverSettings(log_dir=tmp_path, debug_logging=True), console=False)

    assert logging.getLogger().level == logging.DEBUG
    assert all(handler.level == logging.DEBUG for handler in _file_handlers())
    assert len(_file_handlers()) == 1


def test_debug_argument_wins_over_settings(tmp_path: Path) -> None:
    logging_utils.setup_logging(DriverSettings(log_dir=tmp_path), debug=True, console=False)

    assert logging.getLogger("blessnet_llm").getEffectiveLevel() == logging.DEBUG


def test_repeat_call_keeps_handlers_unless_forced(tmp_path: Path) -> None:
    settings = DriverSettings(log_dir=tmp_path)
    logging_utils.setup_logging(settings, console=False)
    (first,) = _file_handlers()

    logging_utils.setup_logging(settings, console=False)
    assert _file_handlers() == [first]

    logging_utils.setup_logging(settings, console=False, force=True)
    (replacement,) = _file_handlers()
    assert replacement is not first


def test_changing_log_dir_moves_the_file(tmp_path: Path) -> None:
    logging_utils.setup_logging(DriverSettings(log_dir=tmp_path / "a"), console=False)
    moved = logging_utils.setup_logging(DriverSettings(log_dir=tmp_path / "b"), console=False)

    assert moved == tmp_path / "b" / "llm_driver.log"
    assert [Path(handler.baseFilename) for handler in _file_handlers()] == [moved]


def test_foreign_root_handlers_survive_reconfiguration(tmp_path: Path) -> None:
    foreign = logging.NullHandler()
    root = logging.getLogger()
    root.addHandler(foreign)
    try:
        logging_utils.setup_logging(DriverSettings(log_dir=tmp_path / "a"), console=False)
        logging_utils.setup_logging(DriverSettings(log_dir=tmp_path / "b"), console=False)

        assert foreign in root.handlers
    finally:
        root.removeHandler(foreign)


def test_third_party_loggers_stay_at_warning(tmp_path: Path) -> None:
    logging_utils.setup_logging(DriverSettings(log_dir=tmp_path, debug_logging=True), console=False)

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING
    assert logging.getLogger("mcp").level == logging.WARNING
