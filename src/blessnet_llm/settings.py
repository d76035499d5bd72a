"""Driver settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from .providers.base import ProviderConfig

__all__ = [
    "DriverSettings",
    "SettingsStore",
    "default_base_dir",
    "default_models_dir",
    "default_log_dir",
]

LOGGER = logging.getLogger(__name__)

_BASE_DIR_NAME = ".blessnet"
_SETTINGS_FILE_NAME = "llm_driver.json"
_ENV_OVERRIDES: Mapping[str, str] = {
    "BLESSNET_LLM_HOST": "host",
    "BLESSNET_LLM_MODELS_DIR": "models_dir",
    "BLESSNET_LLM_LOG_DIR": "log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "BLESSNET_LLM_DEBUG": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "BLESSNET_LLM_TIMEOUT": "request_timeout",
    "BLESSNET_LLM_STARTUP_DELAY": "startup_delay",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "BLESSNET_LLM_PORT": "port",
    "BLESSNET_LLM_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_TUPLE_FIELDS = ("allowed_model_hosts", "allowed_model_extensions")
_PATH_FIELDS = ("models_dir", "log_dir")


def default_base_dir() -> Path:
    return Path.home() / _BASE_DIR_NAME


def default_models_dir() -> Path:
    return default_base_dir() / "models"


def default_log_dir() -> Path:
    return default_base_dir() / "logs"


@dataclass(slots=True)
class DriverSettings:
    """Tunables for the model provider, downloads and tool transport."""

    host: str = "127.0.0.1"
    port: int = 8080
    request_timeout: float = 30.0
    models_dir: Path = field(default_factory=default_models_dir)
    startup_delay: float = 1.0
    shutdown_timeout: float = 10.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 4.0
    download_chunk_size: int = 1024 * 1024
    download_timeout: float = 60.0
    allowed_model_hosts: tuple[str, ...] = ("huggingface.co", "hf.co")
    allowed_model_extensions: tuple[str, ...] = (".llamafile",)
    tool_timeout: float = 30.0
    mcp_client_name: str = "blessnet-mcp-client"
    mcp_client_version: str = "1.0.0"
    debug_logging: bool = False
    log_dir: Path = field(default_factory=default_log_dir)
    log_max_bytes: int = 1_000_000
    log_backup_count: int = 3

    def provider_config(self) -> ProviderConfig:
        return ProviderConfig(host=self.host, port=self.port, timeout=self.request_timeout)


class SettingsStore:
    """Persistence adapter for :class:`DriverSettings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or default_base_dir() / _SETTINGS_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> DriverSettings:
        """Load settings from disk, then apply CLI and environment overrides."""

        settings = DriverSettings()
        payload = self._read_payload()
        if payload:
            settings = self._apply_overrides(settings, payload, source="file")
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: DriverSettings) -> Path:
        """Persist settings to disk with an atomic replace."""

        data = asdict(settings)
        for name in _PATH_FIELDS:
            data[name] = str(data[name])
        for name in _TUPLE_FIELDS:
            data[name] = list(data[name])
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s must contain a JSON object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: DriverSettings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> DriverSettings:
        allowed = {item.name for item in fields(DriverSettings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed:
                LOGGER.warning("Ignoring unknown %s setting %r", source, key)
                continue
            if value is None:
                continue
            filtered[key] = value
        for name in _PATH_FIELDS:
            if name in filtered:
                filtered[name] = Path(filtered[name]).expanduser()
        for name in _TUPLE_FIELDS:
            if name in filtered:
                value = filtered[name]
                filtered[name] = (value,) if isinstance(value, str) else tuple(value)
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: DriverSettings) -> DriverSettings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings
