"""Shared pytest fixtures."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from blessnet_llm.driver import LlmDriver
from blessnet_llm.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep tests away from the real home directory and stray overrides."""

    for name in list(os.environ):
        if name.startswith("BLESSNET_"):
            monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    yield home
    LlmDriver.set_global_instance(None)


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch: pytest.MonkeyPatch):
    """Undo whatever ``setup_logging`` did to the root logger."""

    monkeypatch.setattr(logging_utils, "_ACTIVE", None)
    monkeypatch.setattr(logging_utils, "_INSTALLED", [])
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    noisy_levels = {name: logging.getLogger(name).level for name in logging_utils._THIRD_PARTY_LOGGERS}
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    for name, noisy_level in noisy_levels.items():
        logging.getLogger(name).setLevel(noisy_level)
    logging.captureWarnings(False)


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    target = tmp_path / "models"
    target.mkdir()
    return target
