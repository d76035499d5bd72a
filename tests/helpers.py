"""Shared test doubles for providers and tool transports."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Sequence

from blessnet_llm.providers.base import Message, ProviderConfig, ProviderError, Role


class FakeProvider:
    """Provider double that returns scripted replies."""

    def __init__(
        self,
        replies: Iterable[str] = (),
        *,
        init_error: ProviderError | None = None,
        chat_error: ProviderError | None = None,
        shutdown_error: ProviderError | None = None,
        shutdown_seconds: float = 0.0,
    ) -> None:
        self.replies = list(replies)
        self.shutdown_seconds = shutdown_seconds
        self.init_error = init_error
        self.chat_error = chat_error
        self.shutdown_error = shutdown_error
        self.config: ProviderConfig | None = None
        self.chat_calls: List[List[Message]] = []
        self.chat_kwargs: List[Dict[str, Any]] = []
        self.shutdown_calls = 0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def initialize(self, config: ProviderConfig) -> None:
        self.config = config
        if self.init_error is not None:
            raise self.init_error

    async def chat(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> Message:
        self.chat_calls.append(list(messages))
        self.chat_kwargs.append({"temperature": temperature, "top_p": top_p})
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.chat_error is not None:
            raise self.chat_error
        content = self.replies.pop(0) if self.replies else "ok"
        return Message(Role.ASSISTANT, content)

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        if self.shutdown_seconds:
            # blocks like Popen.wait does
            time.sleep(self.shutdown_seconds)
        if self.shutdown_error is not None:
            raise self.shutdown_error


class FakeToolSession:
    def __init__(self, transport: "FakeTransport", url: str) -> None:
        self._transport = transport
        self._url = url

    async def list_tools(self) -> Sequence[Any]:
        entry = self._transport.endpoints[self._url]
        if isinstance(entry, Exception):
            raise entry
        return list(entry)

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None) -> Any:
        self._transport.calls.append((self._url, name, arguments))
        handler = self._transport.handlers.get(name)
        if handler is None:
            raise RuntimeError(f"no handler for {name}")
        return handler(arguments)


class FakeTransport:
    """Tool transport double recording connections and calls."""

    def __init__(
        self,
        endpoints: Mapping[str, Any] | None = None,
        handlers: Mapping[str, Callable[[Any], Any]] | None = None,
    ) -> None:
        self.endpoints: Dict[str, Any] = dict(endpoints or {})
        self.handlers: Dict[str, Callable[[Any], Any]] = dict(handlers or {})
        self.connections: List[str] = []
        self.closed: List[str] = []
        self.calls: List[tuple[str, str, Any]] = []

    @asynccontextmanager
    async def connect(self, url: str) -> AsyncIterator[FakeToolSession]:
        self.connections.append(url)
        if url not in self.endpoints:
            raise ConnectionError(f"cannot reach {url}")
        try:
            yield FakeToolSession(self, url)
        finally:
            self.closed.append(url)


def make_tool(name: str, *, description: str | None = None, schema: Mapping[str, Any] | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        name=name,
        description=description,
        inputSchema=dict(schema) if schema is not None else {"type": "object"},
    )


def text_result(*texts: str, is_error: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        isError=is_error,
        content=[SimpleNamespace(type="text", text=text) for text in texts],
    )


ADD_SCHEMA = {
    "type": "object",
    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    "required": ["a", "b"],
}


def add_handler(arguments: Mapping[str, Any] | None) -> SimpleNamespace:
    args = arguments or {}
    total = args["a"] + args["b"]
    return text_result(str(int(total)) if float(total).is_integer() else str(total))
