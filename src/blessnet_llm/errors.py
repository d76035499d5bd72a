"""Error taxonomy surfaced by the LLM driver.

Every failure that crosses the driver boundary is one of the
:class:`LlmError` subclasses below. Provider, download and transport errors
are mapped into this smaller set before they reach the caller, so the ABI
layer only has to translate :attr:`LlmError.kind` into its own codes.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

__all__ = [
    "LlmErrorKind",
    "LlmError",
    "ModelNotSetError",
    "ModelNotSupportedError",
    "ModelInitializationFailedError",
    "ModelCompletionFailedError",
    "ModelOptionsNotSetError",
    "ModelShutdownFailedError",
    "PermissionDeniedError",
    "McpFunctionCallError",
    "Utf8Error",
    "RuntimeDriverError",
]


class LlmErrorKind(Enum):
    """One member per condition reported to the guest."""

    MODEL_NOT_SET = "model_not_set"
    MODEL_NOT_SUPPORTED = "model_not_supported"
    MODEL_INITIALIZATION_FAILED = "model_initialization_failed"
    MODEL_COMPLETION_FAILED = "model_completion_failed"
    MODEL_OPTIONS_NOT_SET = "model_options_not_set"
    MODEL_SHUTDOWN_FAILED = "model_shutdown_failed"
    PERMISSION_DENIED = "permission_denied"
    MCP_FUNCTION_CALL_ERROR = "mcp_function_call_error"
    UTF8_ERROR = "utf8_error"
    RUNTIME_ERROR = "runtime_error"

    @property
    def code(self) -> int:
        """Stable integer code; 0 is reserved for success."""

        return _KIND_CODES[self]


_KIND_CODES: dict[LlmErrorKind, int] = {
    LlmErrorKind.MODEL_NOT_SET: 1,
    LlmErrorKind.MODEL_NOT_SUPPORTED: 2,
    LlmErrorKind.MODEL_INITIALIZATION_FAILED: 3,
    LlmErrorKind.MODEL_COMPLETION_FAILED: 4,
    LlmErrorKind.MODEL_OPTIONS_NOT_SET: 5,
    LlmErrorKind.MODEL_SHUTDOWN_FAILED: 6,
    LlmErrorKind.UTF8_ERROR: 7,
    LlmErrorKind.RUNTIME_ERROR: 8,
    LlmErrorKind.MCP_FUNCTION_CALL_ERROR: 9,
    LlmErrorKind.PERMISSION_DENIED: 10,
}


class LlmError(Exception):
    """Base exception for all driver errors."""

    kind: ClassVar[LlmErrorKind] = LlmErrorKind.RUNTIME_ERROR
    default_message: ClassVar[str] = "LLM driver error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> int:
        return self.kind.code

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"

    @staticmethod
    def from_kind(kind: LlmErrorKind, message: str | None = None) -> "LlmError":
        """Build the exception subclass registered for ``kind``."""

        return _KIND_TO_CLASS[kind](message)


class ModelNotSetError(LlmError):
    """The handle is unknown or has been closed."""

    kind = LlmErrorKind.MODEL_NOT_SET
    default_message = "No model is set for this handle"


class ModelNotSupportedError(LlmError):
    """The model identifier is neither a catalog entry nor an accepted URL."""

    kind = LlmErrorKind.MODEL_NOT_SUPPORTED
    default_message = "Model is not supported"


class ModelInitializationFailedError(LlmError):
    kind = LlmErrorKind.MODEL_INITIALIZATION_FAILED
    default_message = "Model initialization failed"


class ModelCompletionFailedError(LlmError):
    kind = LlmErrorKind.MODEL_COMPLETION_FAILED
    default_message = "Model completion failed"


class ModelOptionsNotSetError(LlmError):
    """The options payload could not be decoded."""

    kind = LlmErrorKind.MODEL_OPTIONS_NOT_SET
    default_message = "Model options could not be parsed"


class ModelShutdownFailedError(LlmError):
    kind = LlmErrorKind.MODEL_SHUTDOWN_FAILED
    default_message = "Model shutdown failed"


class PermissionDeniedError(LlmError):
    """The caller's capability check rejected a custom model URL."""

    kind = LlmErrorKind.PERMISSION_DENIED
    default_message = "Permission denied for model URL"


class McpFunctionCallError(LlmError):
    """A function call emitted by the model could not be dispatched."""

    kind = LlmErrorKind.MCP_FUNCTION_CALL_ERROR
    default_message = "MCP function call failed"


class Utf8Error(LlmError):
    kind = LlmErrorKind.UTF8_ERROR
    default_message = "Input is not valid UTF-8"


class RuntimeDriverError(LlmError):
    kind = LlmErrorKind.RUNTIME_ERROR
    default_message = "Internal driver error"


_KIND_TO_CLASS: dict[LlmErrorKind, type[LlmError]] = {
    cls.kind: cls
    for cls in (
        ModelNotSetError,
        ModelNotSupportedError,
        ModelInitializationFailedError,
        ModelCompletionFailedError,
        ModelOptionsNotSetError,
        ModelShutdownFailedError,
        PermissionDeniedError,
        McpFunctionCallError,
        Utf8Error,
        RuntimeDriverError,
    )
}
