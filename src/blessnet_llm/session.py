"""Per-handle conversation state."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import ModelOptionsNotSetError
from .providers.base import (
    LLMProvider,
    Message,
    ProviderConfig,
    ProviderError,
    Role,
    SharedProvider,
)
from .tools.types import ToolsMap

__all__ = ["Role", "Message", "SessionOptions", "SessionSnapshot", "SessionContext"]

LOGGER = logging.getLogger(__name__)

_ENDPOINT_KEYS = ("tools_sse_urls", "tool_endpoints")


@dataclass(slots=True)
class SessionOptions:
    """Caller-tunable options; replacing them resets the conversation."""

    system_message: str | None = None
    tool_endpoints: List[str] | None = None
    temperature: float | None = None
    top_p: float | None = None

    @classmethod
    def from_json(cls, payload: str | bytes) -> "SessionOptions":
        """Decode the options wire format.

        Unknown keys are ignored. Malformed JSON, a non-object payload or a
        wrongly typed field raises :class:`ModelOptionsNotSetError`.
        """

        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ModelOptionsNotSetError(f"Options are not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ModelOptionsNotSetError("Options must be a JSON object")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "SessionOptions":
        system_message = data.get("system_message")
        if system_message is not None and not isinstance(system_message, str):
            raise ModelOptionsNotSetError("system_message must be a string")

        endpoints = None
        for key in _ENDPOINT_KEYS:
            if data.get(key) is not None:
                endpoints = data[key]
                break
        if endpoints is not None:
            if not isinstance(endpoints, list) or not all(isinstance(item, str) for item in endpoints):
                raise ModelOptionsNotSetError("tools_sse_urls must be a list of strings")
            endpoints = list(endpoints)

        return cls(
            system_message=system_message,
            tool_endpoints=endpoints,
            temperature=_optional_number(data, "temperature"),
            top_p=_optional_number(data, "top_p"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "system_message": self.system_message,
            "tools_sse_urls": list(self.tool_endpoints) if self.tool_endpoints is not None else None,
            "temperature": self.temperature,
            "top_p": self.top_p,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @property
    def has_tool_endpoints(self) -> bool:
        return bool(self.tool_endpoints)


def _optional_number(data: Dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ModelOptionsNotSetError(f"{key} must be a number")
    return float(value)


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    """Consistent copy of what a completion round needs."""

    messages: List[Message]
    tools: ToolsMap | None
    options: SessionOptions = field(default_factory=SessionOptions)


class SessionContext:
    """Conversation bound to one handle.

    Messages and tools sit behind their own locks so a snapshot taken for a
    completion never observes half of an options reset. Nothing here awaits
    while holding either lock.
    """

    def __init__(self, model_name: str, provider: SharedProvider, options: SessionOptions | None = None) -> None:
        self.model_name = model_name
        self.provider = provider
        self.options = options or SessionOptions()
        self._messages: List[Message] = []
        self._messages_lock = threading.Lock()
        self._tools: ToolsMap | None = None
        self._tools_lock = threading.Lock()

    @classmethod
    async def create(cls, model_name: str, provider: LLMProvider, config: ProviderConfig) -> "SessionContext":
        """Initialize ``provider`` and wrap it in a new context.

        The context only exists once initialization succeeded; on failure the
        provider is shut down and the :class:`ProviderError` propagates.
        """

        try:
            await provider.initialize(config)
        except ProviderError:
            try:
                provider.shutdown()
            except ProviderError as exc:
                LOGGER.debug("Cleanup after failed initialization also failed: %s", exc)
            raise
        return cls(model_name, SharedProvider(provider))

    def add_message(self, message: Message) -> None:
        with self._messages_lock:
            self._messages.append(message)

    @property
    def messages(self) -> List[Message]:
        with self._messages_lock:
            return list(self._messages)

    @property
    def tools(self) -> ToolsMap | None:
        with self._tools_lock:
            return dict(self._tools) if self._tools is not None else None

    def snapshot(self) -> SessionSnapshot:
        with self._tools_lock, self._messages_lock:
            tools = dict(self._tools) if self._tools is not None else None
            messages = list(self._messages)
        return SessionSnapshot(messages=messages, tools=tools, options=self.options)

    def reset(self, options: SessionOptions, system_prompt: str, tools: ToolsMap | None) -> None:
        """Replace options and tools and restart the log with one System message."""

        with self._tools_lock, self._messages_lock:
            self.options = options
            self._tools = tools
            self._messages = [Message(Role.SYSTEM, system_prompt)]
        LOGGER.debug(
            "Session for %s reset (%s tool(s))",
            self.model_name,
            len(tools) if tools is not None else 0,
        )
