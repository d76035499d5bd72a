"""Discover the tools exposed by a list of endpoints."""

from __future__ import annotations

import logging
from typing import Iterable
from urllib.parse import urlsplit

from .transport import ToolTransport
from .types import ToolDescriptor, ToolsMap

__all__ = ["discover_tools", "normalize_endpoint"]

LOGGER = logging.getLogger(__name__)

_ENDPOINT_SCHEMES = {"http", "https"}


def normalize_endpoint(endpoint: str) -> str | None:
    """Return ``endpoint`` stripped when it is an absolute http(s) URL, else ``None``."""

    candidate = (endpoint or "").strip()
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme.lower() not in _ENDPOINT_SCHEMES or not parts.netloc:
        return None
    return candidate


async def discover_tools(endpoints: Iterable[str], transport: ToolTransport) -> ToolsMap:
    """List the tools of every endpoint and merge them by name.

    Never raises: invalid URLs and failing endpoints are logged and skipped.
    On a name collision the endpoint listed later wins.
    """

    endpoint_list = list(endpoints)
    tools: ToolsMap = {}
    for endpoint in endpoint_list:
        url = normalize_endpoint(endpoint)
        if url is None:
            LOGGER.warning("Ignoring invalid tool endpoint %r", endpoint)
            continue
        try:
            async with transport.connect(url) as session:
                listed = await session.list_tools()
        except Exception as exc:  # one bad endpoint must not abort discovery
            LOGGER.warning("Skipping tool endpoint %s: %s", url, exc)
            continue

        for tool in listed:
            try:
                descriptor = ToolDescriptor.from_tool(tool, url)
            except (AttributeError, TypeError) as exc:
                LOGGER.warning("Skipping malformed tool from %s: %s", url, exc)
                continue
            previous = tools.get(descriptor.name)
            if previous is not None:
                LOGGER.debug(
                    "Tool %s from %s replaces the one from %s",
                    descriptor.name,
                    url,
                    previous.source_endpoint,
                )
            tools[descriptor.name] = descriptor
        LOGGER.debug("Endpoint %s exposes %s tool(s)", url, len(listed))

    LOGGER.info("Discovered %s tool(s) from %s endpoint(s)", len(tools), len(endpoint_list))
    return tools
