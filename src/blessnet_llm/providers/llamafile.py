"""Provider that serves a model through a local llamafile server process."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIResponseValidationError,
    APIStatusError,
    AsyncOpenAI,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..models import ModelVariant, model_file_path
from .base import (
    LlamafileNotFoundError,
    LlamafilePermissionError,
    LlamafileServerError,
    Message,
    ProviderCommunicationError,
    ProviderConfig,
    ProviderError,
    ProviderInitializationError,
    ProviderInvalidResponseError,
    ProviderShutdownError,
    ProviderState,
    Role,
)
from .download import ModelDownloader

if TYPE_CHECKING:  # pragma: no cover
    from ..settings import DriverSettings

__all__ = ["LlamafileProvider", "LLAMAFILE_MODEL_ID"]

LOGGER = logging.getLogger(__name__)

LLAMAFILE_MODEL_ID = "LLaMA_CPP"
_PLACEHOLDER_API_KEY = "sk-no-key-required"


class LlamafileProvider:
    """Owns one llamafile server process and talks to its chat endpoint."""

    def __init__(
        self,
        model: ModelVariant,
        *,
        models_dir: Path | None = None,
        startup_delay: float = 1.0,
        shutdown_timeout: float = 10.0,
        max_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 4.0,
        downloader: ModelDownloader | None = None,
        client: AsyncOpenAI | None = None,
        debug_logging: bool = False,
    ) -> None:
        self._model = model
        self._model_path = model_file_path(model, models_dir)
        self._startup_delay = startup_delay
        self._shutdown_timeout = shutdown_timeout
        self._max_retries = max_retries
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._downloader = downloader or ModelDownloader()
        self._client = client
        self._debug_logging = debug_logging
        self._config: ProviderConfig | None = None
        self._process: subprocess.Popen[bytes] | None = None
        self._process_lock = threading.Lock()
        self._state = ProviderState.UNINITIALIZED

    @classmethod
    def from_settings(cls, model: ModelVariant, settings: "DriverSettings", **kwargs: Any) -> "LlamafileProvider":
        downloader = kwargs.pop("downloader", None) or ModelDownloader(
            chunk_size=settings.download_chunk_size,
            timeout=settings.download_timeout,
        )
        return cls(
            model,
            models_dir=settings.models_dir,
            startup_delay=settings.startup_delay,
            shutdown_timeout=settings.shutdown_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            downloader=downloader,
            debug_logging=settings.debug_logging,
            **kwargs,
        )

    @property
    def model(self) -> ModelVariant:
        return self._model

    @property
    def model_path(self) -> Path:
        return self._model_path

    @property
    def config(self) -> ProviderConfig | None:
        return self._config

    @property
    def state(self) -> ProviderState:
        return self._state

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self, config: ProviderConfig) -> None:
        """Download the model when missing, then start the server."""

        self._config = config
        try:
            if not self._model_path.exists():
                self._state = ProviderState.DOWNLOADING
                LOGGER.info("Model %s is not cached; downloading", self._model)
                await self._downloader.download(self._model.download_url, self._model_path)
            self._spawn(config)
        except ProviderInitializationError:
            self._state = ProviderState.FAILED
            raise

        if self._startup_delay > 0:
            # No health check; give the server a moment to bind its port.
            await asyncio.sleep(self._startup_delay)
        self._state = ProviderState.SERVING
        LOGGER.info("Llamafile server for %s listening on %s (pid %s)", self._model, config.base_url, self.pid)

    def _spawn(self, config: ProviderConfig) -> None:
        command = [
            str(self._model_path),
            "--server",
            "--nobrowser",
            "--host",
            config.host,
            "--port",
            str(config.port),
        ]
        LOGGER.debug("Spawning llamafile server: %s", " ".join(command))
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            raise LlamafileNotFoundError(f"LlamaFile not found: {self._model_path}") from exc
        except PermissionError as exc:
            raise LlamafilePermissionError("Permission denied; please re-download the model") from exc
        except OSError as exc:
            raise LlamafileServerError(f"Failed to start llamafile server: {exc}") from exc
        with self._process_lock:
            self._process = process

    def shutdown(self) -> None:
        """Terminate the server process; a no-op when none is running."""

        with self._process_lock:
            process = self._process
            self._process = None
        if process is None:
            if self._state is ProviderState.SERVING:
                self._state = ProviderState.TERMINATED
            return

        self._state = ProviderState.SHUTTING_DOWN
        LOGGER.info("Stopping llamafile server (pid %s)", process.pid)
        try:
            process.terminate()
            try:
                process.wait(timeout=self._shutdown_timeout)
            except subprocess.TimeoutExpired:
                LOGGER.warning(
                    "Llamafile server (pid %s) ignored terminate for %.1fs; killing",
                    process.pid,
                    self._shutdown_timeout,
                )
                process.kill()
                process.wait()
        except OSError as exc:
            self._state = ProviderState.FAILED
            raise ProviderShutdownError(f"Failed to stop llamafile server: {exc}") from exc
        self._state = ProviderState.TERMINATED

    def __del__(self) -> None:
        if getattr(self, "_process", None) is None:
            return
        try:
            self.shutdown()
        except ProviderError as exc:
            LOGGER.debug("Shutdown on release failed: %s", exc)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def chat(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> Message:
        config = self._config
        if config is None or self._state is not ProviderState.SERVING:
            raise ProviderCommunicationError(f"Provider is not serving (state {self._state.name})")

        payload: Dict[str, Any] = {
            "model": LLAMAFILE_MODEL_ID,
            "messages": [message.to_dict() for message in messages],
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if top_p is not None:
            payload["top_p"] = top_p
        LOGGER.debug("Chat completion request with %s message(s) to %s", len(messages), config.base_url)
        if self._debug_logging:
            LOGGER.debug("Chat payload:\n%s", json.dumps(payload, ensure_ascii=False, indent=2))

        try:
            async for attempt in self._retrying():
                with attempt:
                    completion = await self._create_completion(config, payload)
        except APIResponseValidationError as exc:
            raise ProviderInvalidResponseError(f"Inference server returned an invalid body: {exc}") from exc
        except ValueError as exc:
            # openai lets json.JSONDecodeError through for undecodable JSON bodies
            raise ProviderInvalidResponseError(f"Inference server returned a body that is not JSON: {exc}") from exc
        except APIStatusError as exc:
            raise ProviderCommunicationError(f"Inference server returned HTTP {exc.status_code}") from exc
        except (APIError, httpx.HTTPError) as exc:
            raise ProviderCommunicationError(f"Inference server unreachable: {exc}") from exc
        return self._extract_message(completion)

    async def _create_completion(self, config: ProviderConfig, payload: Dict[str, Any]) -> Any:
        if self._client is not None:
            return await self._client.chat.completions.create(**payload)
        async with self._build_client(config) as client:
            return await client.chat.completions.create(**payload)

    @staticmethod
    def _build_client(config: ProviderConfig) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=_PLACEHOLDER_API_KEY,
            base_url=f"{config.base_url}/v1",
            timeout=config.timeout,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._max_retries)),
            wait=wait_exponential(
                multiplier=self._retry_min_seconds,
                max=self._retry_max_seconds,
            ),
            retry=retry_if_exception_type((APIConnectionError, httpx.TransportError)),
        )

    @staticmethod
    def _extract_message(completion: Any) -> Message:
        choices = getattr(completion, "choices", None)
        if not choices:
            raise ProviderInvalidResponseError("Inference server response has no choices")
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        if not isinstance(content, str):
            raise ProviderInvalidResponseError("Inference server response is missing message content")
        role = getattr(message, "role", None) or Role.ASSISTANT.value
        try:
            return Message(role=Role(role), content=content)
        except ValueError as exc:
            raise ProviderInvalidResponseError(f"Inference server returned unknown role {role!r}") from exc
