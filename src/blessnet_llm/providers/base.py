"""Provider interface, shared message types and provider-level errors."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Iterator, Mapping, Protocol, Sequence, runtime_checkable

__all__ = [
    "Role",
    "Message",
    "ProviderConfig",
    "ProviderState",
    "LLMProvider",
    "SharedProvider",
    "ProviderError",
    "ProviderInitializationError",
    "ModelDownloadError",
    "LlamafileServerError",
    "LlamafileNotFoundError",
    "LlamafilePermissionError",
    "ProviderCommunicationError",
    "ProviderInvalidResponseError",
    "ProviderShutdownError",
]

LOGGER = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(slots=True, frozen=True)
class Message:
    """One entry of the conversation log."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Message":
        """Build a message from a ``{"role", "content"}`` mapping.

        Raises ``ValueError`` for unknown roles or non-string content.
        """

        role = Role(str(payload.get("role", "")).lower())
        content = payload.get("content")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(role=role, content=content)


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    """Where the inference server listens and how long a request may take."""

    host: str = "127.0.0.1"
    port: int = 8080
    timeout: float = 30.0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ProviderState(Enum):
    UNINITIALIZED = auto()
    DOWNLOADING = auto()
    SERVING = auto()
    SHUTTING_DOWN = auto()
    TERMINATED = auto()
    FAILED = auto()


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class ProviderError(Exception):
    """Base exception raised by model providers."""


class ProviderInitializationError(ProviderError):
    """Raised when the provider cannot reach the serving state."""


class ModelDownloadError(ProviderInitializationError):
    """Raised when fetching the model binary fails (directory, network or file system)."""


class LlamafileServerError(ProviderInitializationError):
    """Raised when the inference server process cannot be spawned."""


class LlamafileNotFoundError(LlamafileServerError):
    """The model executable does not exist."""


class LlamafilePermissionError(LlamafileServerError):
    """The model executable is not runnable; re-downloading usually fixes it."""


class ProviderCommunicationError(ProviderError):
    """Raised when the inference server cannot be reached."""


class ProviderInvalidResponseError(ProviderError):
    """Raised when the inference server answers with an unusable payload."""


class ProviderShutdownError(ProviderError):
    """Raised when the server process cannot be stopped."""


# -----------------------------------------------------------------------------
# Provider protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class LLMProvider(Protocol):
    """Capability set every provider variant implements."""

    async def initialize(self, config: ProviderConfig) -> None:
        """Bring the provider to the serving state."""
        ...

    async def chat(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> Message:
        """Return the assistant reply for the ordered conversation."""
        ...

    def shutdown(self) -> None:
        """Release the provider. Must be idempotent."""
        ...


class SharedProvider:
    """Reference-counted ownership of a provider.

    The session holds the provider; in-flight calls take a lease while they
    talk to it. :meth:`close` shuts the provider down immediately when no
    lease is outstanding, otherwise the release of the last lease does it.
    """

    def __init__(self, provider: LLMProvider) -> None:
        self._provider = provider
        self._lock = threading.Lock()
        self._leases = 0
        self._closed = False

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    @property
    def leases(self) -> int:
        with self._lock:
            return self._leases

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def acquire(self) -> LLMProvider:
        with self._lock:
            self._leases += 1
        return self._provider

    def release(self) -> None:
        with self._lock:
            self._leases = max(0, self._leases - 1)
            deferred = self._closed and self._leases == 0
        if deferred:
            LOGGER.debug("Last lease released; shutting down deferred provider")
            try:
                self._provider.shutdown()
            except ProviderError as exc:
                LOGGER.warning("Deferred provider shutdown failed: %s", exc)

    @contextmanager
    def lease(self) -> Iterator[LLMProvider]:
        provider = self.acquire()
        try:
            yield provider
        finally:
            self.release()

    def close(self) -> bool:
        """Shut the provider down; returns ``False`` when shutdown had to be deferred.

        Raises :class:`ProviderShutdownError` from an immediate shutdown.
        """

        with self._lock:
            if self._closed:
                return True
            self._closed = True
            outstanding = self._leases
        if outstanding:
            LOGGER.warning(
                "Provider still has %s in-flight reference(s) at close; shutdown deferred",
                outstanding,
            )
            return False
        self._provider.shutdown()
        return True
