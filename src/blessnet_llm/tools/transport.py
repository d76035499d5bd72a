"""Transports used to reach remote tool endpoints.

A transport opens one short-lived session per endpoint URL. The driver never
pools sessions: discovery opens one per endpoint, and every function call
opens a fresh one that is closed once the call returns or fails.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncContextManager, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.types import Implementation

__all__ = ["ToolSession", "ToolTransport", "McpSseTransport"]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class ToolSession(Protocol):
    """What the driver needs from an open connection to a tool endpoint."""

    async def list_tools(self) -> Sequence[Any]:
        """Return tool definitions exposing ``name``, ``description`` and ``inputSchema``."""
        ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None) -> Any:
        """Invoke ``name``; the result exposes ``isError`` and a ``content`` list."""
        ...


@runtime_checkable
class ToolTransport(Protocol):
    def connect(self, url: str) -> AsyncContextManager[ToolSession]:
        ...


class _McpToolSession:
    def __init__(self, session: ClientSession) -> None:
        self._session = session

    async def list_tools(self) -> Sequence[Any]:
        result = await self._session.list_tools()
        return list(result.tools)

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None) -> Any:
        return await self._session.call_tool(name, dict(arguments) if arguments is not None else None)


class McpSseTransport:
    """Model Context Protocol over server-sent events, via the ``mcp`` SDK."""

    def __init__(
        self,
        *,
        client_name: str = "blessnet-mcp-client",
        client_version: str = "1.0.0",
        timeout: float = 30.0,
        sse_read_timeout: float = 300.0,
    ) -> None:
        self._client_info = Implementation(name=client_name, version=client_version)
        self._timeout = timeout
        self._sse_read_timeout = sse_read_timeout

    @asynccontextmanager
    async def connect(self, url: str) -> AsyncIterator[ToolSession]:
        LOGGER.debug("Opening MCP SSE session to %s", url)
        async with sse_client(url, timeout=self._timeout, sse_read_timeout=self._sse_read_timeout) as (
            read_stream,
            write_stream,
        ):
            async with ClientSession(
                read_stream,
                write_stream,
                read_timeout_seconds=timedelta(seconds=self._timeout),
                client_info=self._client_info,
            ) as session:
                info = await session.initialize()
                LOGGER.debug("Connected to MCP server %s at %s", getattr(info, "serverInfo", None), url)
                yield _McpToolSession(session)
        LOGGER.debug("Closed MCP SSE session to %s", url)
