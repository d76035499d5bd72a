"""LLM driver: the handle-based API the host exposes to guest programs.

Each handle owns one :class:`~blessnet_llm.session.SessionContext`. Calls
against different handles never contend for the same lock, and no lock is
held across an ``await``: state is snapshotted under the session's lock,
the lock is released, and slow work (process start, completion, tool
calls) runs outside it.

Callers must serialize calls on one handle themselves; concurrent calls on
the same handle are not ordered by the driver.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Callable, Tuple
from urllib.parse import SplitResult, urlsplit

from .errors import (
    LlmError,
    McpFunctionCallError,
    ModelCompletionFailedError,
    ModelInitializationFailedError,
    ModelNotSetError,
    ModelNotSupportedError,
    ModelShutdownFailedError,
    PermissionDeniedError,
    Utf8Error,
)
from .handles import HandleRegistry
from .models import ModelVariant, UrlModel, parse_model
from .providers.base import LLMProvider, Message, ProviderError, Role
from .providers.llamafile import LlamafileProvider
from .session import SessionContext, SessionOptions, SessionSnapshot
from .settings import DriverSettings, SettingsStore
from .tools.discovery import discover_tools
from .tools.function_call import process_function_call
from .tools.prompt import build_system_prompt
from .tools.transport import McpSseTransport, ToolTransport
from .tools.types import FunctionCallStatus, ToolsMap

__all__ = [
    "LlmDriver",
    "ProviderFactory",
    "UrlPermissionCheck",
    "set_model",
    "get_model",
    "set_options",
    "get_options",
    "prompt",
    "read_response",
    "close",
]

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[[ModelVariant, DriverSettings], LLMProvider]
UrlPermissionCheck = Callable[[SplitResult], bool]
TextInput = str | bytes


def _default_provider_factory(model: ModelVariant, settings: DriverSettings) -> LLMProvider:
    return LlamafileProvider.from_settings(model, settings)


def _decode_text(value: TextInput, *, what: str = "input") -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise Utf8Error(f"{what} is not valid UTF-8") from exc
    return value


def _has_reachable_tools(tools: ToolsMap | None) -> bool:
    return bool(tools) and any(tool.reachable for tool in tools.values())


class LlmDriver:
    """Registry of LLM sessions plus the operations that drive them."""

    _shared: LlmDriver | None = None
    _shared_lock = threading.Lock()

    def __init__(
        self,
        *,
        settings: DriverSettings | None = None,
        provider_factory: ProviderFactory | None = None,
        transport: ToolTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or DriverSettings()
        self._provider_factory = provider_factory or _default_provider_factory
        self._transport = transport or McpSseTransport(
            client_name=self._settings.mcp_client_name,
            client_version=self._settings.mcp_client_version,
            timeout=self._settings.tool_timeout,
        )
        self._clock = clock or datetime.now
        self._contexts: HandleRegistry[SessionContext] = HandleRegistry()

    @classmethod
    def global_instance(cls) -> "LlmDriver":
        """Return the process-wide driver, creating it on first use."""

        if cls._shared is None:
            with cls._shared_lock:
                if cls._shared is None:
                    cls._shared = LlmDriver(settings=SettingsStore().load())
        return cls._shared

    @classmethod
    def set_global_instance(cls, driver: "LlmDriver | None") -> None:
        with cls._shared_lock:
            cls._shared = driver

    @property
    def settings(self) -> DriverSettings:
        return self._settings

    @property
    def contexts(self) -> HandleRegistry[SessionContext]:
        return self._contexts

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def set_model(self, model: TextInput, url_permission_check: UrlPermissionCheck | None = None) -> int:
        """Start a session for ``model`` and return its handle.

        Custom model URLs are only accepted when ``url_permission_check``
        approves them; it receives the parsed URL as a
        :class:`~urllib.parse.SplitResult`. Without a check they are denied.
        """

        name = _decode_text(model, what="model name")
        try:
            variant = parse_model(
                name,
                allowed_hosts=self._settings.allowed_model_hosts,
                allowed_extensions=self._settings.allowed_model_extensions,
            )
        except ModelNotSupportedError:
            LOGGER.error("Model not supported: %s", name)
            raise

        if isinstance(variant, UrlModel):
            allowed = url_permission_check is not None and url_permission_check(urlsplit(variant.url))
            if not allowed:
                LOGGER.error("Permission denied for model URL: %s", variant.url)
                raise PermissionDeniedError(f"Permission denied for model URL {variant.url}")

        provider = self._provider_factory(variant, self._settings)
        try:
            context = await SessionContext.create(name, provider, self._settings.provider_config())
        except ProviderError as exc:
            LOGGER.error("Model initialization failed for %s: %s", name, exc)
            raise ModelInitializationFailedError(str(exc)) from exc

        handle = self._contexts.insert(context)
        LOGGER.info("Model set: %s (handle %s)", name, handle)
        return handle

    async def get_model(self, handle: int) -> str:
        return self._require(handle, lambda context: context.model_name)

    async def set_options(self, handle: int, options: TextInput | SessionOptions) -> None:
        """Replace the session options and restart the conversation.

        Tool discovery runs outside every lock; the reset itself (options,
        tools and a single System message) is applied atomically afterwards.
        """

        if isinstance(options, SessionOptions):
            parsed = options
        else:
            try:
                parsed = SessionOptions.from_json(_decode_text(options, what="options"))
            except LlmError as exc:
                LOGGER.error("Failed to parse options: %s", exc)
                raise

        if not self._contexts.contains(handle):
            raise ModelNotSetError(f"Unknown handle {handle}")

        tools: ToolsMap | None = None
        if parsed.has_tool_endpoints:
            tools = await discover_tools(parsed.tool_endpoints or [], self._transport)
            LOGGER.info("Loaded %s tool(s) from %s endpoint(s)", len(tools), len(parsed.tool_endpoints or []))
        system_prompt = build_system_prompt(parsed.system_message, tools, now=self._clock())

        self._require(handle, lambda context: context.reset(parsed, system_prompt, tools))

    async def get_options(self, handle: int) -> str:
        """Return the session options in their JSON wire format."""

        return self._require(handle, lambda context: context.options.to_json())

    async def prompt(self, handle: int, text: TextInput) -> None:
        message = Message(Role.USER, _decode_text(text, what="prompt"))
        self._require(handle, lambda context: context.add_message(message))

    async def read_response(self, handle: int) -> str:
        """Run one completion round, dispatching at most one function call."""

        context, provider, snapshot = self._require(handle, self._begin_round)
        try:
            return await self._complete(handle, provider, snapshot)
        finally:
            # The last release may run a deferred shutdown, which blocks on process exit.
            await asyncio.to_thread(context.provider.release)

    async def close(self, handle: int) -> None:
        """Remove the session and stop its provider.

        Closing an unknown handle is a no-op. When a completion on the same
        handle is still in flight, the provider is stopped as soon as that
        completion finishes and only a warning records it.
        """

        context = self._contexts.remove(handle)
        if context is None:
            LOGGER.debug("Close on unknown handle %s ignored", handle)
            return
        try:
            stopped = await asyncio.to_thread(context.provider.close)
        except ProviderError as exc:
            LOGGER.error("Model shutdown failed for handle %s: %s", handle, exc)
            raise ModelShutdownFailedError(str(exc)) from exc
        LOGGER.info(
            "Closed handle %s (%s)",
            handle,
            "provider stopped" if stopped else "provider shutdown deferred",
        )

    async def close_all(self) -> None:
        """Close every open handle, logging failures instead of raising."""

        for handle in self._contexts.handles():
            try:
                await self.close(handle)
            except ModelShutdownFailedError as exc:
                LOGGER.warning("Handle %s did not shut down cleanly: %s", handle, exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require(self, handle: int, func: Callable[[SessionContext], object]):
        cell = self._contexts.get(handle)
        if cell is None:
            raise ModelNotSetError(f"Unknown handle {handle}")
        with cell.lock:
            return func(cell.value)

    @staticmethod
    def _begin_round(context: SessionContext) -> Tuple[SessionContext, LLMProvider, SessionSnapshot]:
        return context, context.provider.acquire(), context.snapshot()

    async def _complete(self, handle: int, provider: LLMProvider, snapshot: SessionSnapshot) -> str:
        reply = await self._chat(provider, snapshot.messages, snapshot.options)
        self._require(handle, lambda context: context.add_message(reply))

        if not _has_reachable_tools(snapshot.tools):
            return reply.content

        result = await process_function_call(reply.content, snapshot.tools or {}, self._transport)
        if result.status is FunctionCallStatus.NO_FUNCTION_CALL:
            LOGGER.debug("No function call detected in the response")
            return reply.content
        if result.status is FunctionCallStatus.ERROR:
            LOGGER.error("MCP function call error: %s", result.output)
            raise McpFunctionCallError(result.output)

        self._require(handle, lambda context: context.add_message(Message(Role.TOOL, result.output)))
        messages = self._require(handle, lambda context: context.messages)
        final = await self._chat(provider, messages, snapshot.options)
        self._require(handle, lambda context: context.add_message(final))
        return final.content

    @staticmethod
    async def _chat(provider: LLMProvider, messages: list[Message], options: SessionOptions) -> Message:
        try:
            reply = await provider.chat(messages, temperature=options.temperature, top_p=options.top_p)
        except ProviderError as exc:
            LOGGER.error("Model completion failed: %s", exc)
            raise ModelCompletionFailedError(str(exc)) from exc
        if reply.role is not Role.ASSISTANT:
            reply = Message(Role.ASSISTANT, reply.content)
        return reply


# ----------------------------------------------------------------------
# Module-level API bound to the process-wide driver
# ----------------------------------------------------------------------
async def set_model(model: TextInput, url_permission_check: UrlPermissionCheck | None = None) -> int:
    return await LlmDriver.global_instance().set_model(model, url_permission_check)


async def get_model(handle: int) -> str:
    return await LlmDriver.global_instance().get_model(handle)


async def set_options(handle: int, options: TextInput | SessionOptions) -> None:
    await LlmDriver.global_instance().set_options(handle, options)


async def get_options(handle: int) -> str:
    return await LlmDriver.global_instance().get_options(handle)


async def prompt(handle: int, text: TextInput) -> None:
    await LlmDriver.global_instance().prompt(handle, text)


async def read_response(handle: int) -> str:
    return await LlmDriver.global_instance().read_response(handle)


async def close(handle: int) -> None:
    await LlmDriver.global_instance().close(handle)
