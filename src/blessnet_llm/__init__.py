"""Host-side LLM driver: local llamafile sessions with MCP tool calling."""

from .driver import (
    LlmDriver,
    close,
    get_model,
    get_options,
    prompt,
    read_response,
    set_model,
    set_options,
)
from .errors import LlmError, LlmErrorKind
from .session import SessionOptions
from .settings import DriverSettings, SettingsStore

__all__ = [
    "LlmDriver",
    "LlmError",
    "LlmErrorKind",
    "SessionOptions",
    "DriverSettings",
    "SettingsStore",
    "set_model",
    "get_model",
    "set_options",
    "get_options",
    "prompt",
    "read_response",
    "close",
]

__version__ = "0.1.0"
