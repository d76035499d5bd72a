"""Model providers: the interface the driver talks to and its llamafile variant."""

from .base import (
    LLMProvider,
    LlamafileNotFoundError,
    LlamafilePermissionError,
    LlamafileServerError,
    Message,
    ModelDownloadError,
    ProviderCommunicationError,
    ProviderConfig,
    ProviderError,
    ProviderInitializationError,
    ProviderInvalidResponseError,
    ProviderShutdownError,
    ProviderState,
    Role,
    SharedProvider,
)
from .download import ModelDownloader
from .llamafile import LLAMAFILE_MODEL_ID, LlamafileProvider

__all__ = [
    "LLMProvider",
    "SharedProvider",
    "Message",
    "Role",
    "ProviderConfig",
    "ProviderState",
    "ProviderError",
    "ProviderInitializationError",
    "ModelDownloadError",
    "LlamafileServerError",
    "LlamafileNotFoundError",
    "LlamafilePermissionError",
    "ProviderCommunicationError",
    "ProviderInvalidResponseError",
    "ProviderShutdownError",
    "ModelDownloader",
    "LlamafileProvider",
    "LLAMAFILE_MODEL_ID",
]
