"""Tests for the llamafile provider process lifecycle and chat calls."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from types import SimpleNamespace
from typing import Any, cast

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from blessnet_llm.models import parse_model
from blessnet_llm.providers import llamafile as llamafile_module
from blessnet_llm.providers.base import (
    LlamafileNotFoundError,
    LlamafilePermissionError,
    Message,
    ModelDownloadError,
    ProviderCommunicationError,
    ProviderConfig,
    ProviderInvalidResponseError,
    ProviderShutdownError,
    ProviderState,
    Role,
)
from blessnet_llm.providers.llamafile import LLAMAFILE_MODEL_ID, LlamafileProvider

CONFIG = ProviderConfig(host="127.0.0.1", port=8080, timeout=5.0)


class _FakePopen:
    instances: list["_FakePopen"] = []
    error: BaseException | None = None

    def __init__(self, args: list[str], **kwargs: Any) -> None:
        if _FakePopen.error is not None:
            raise _FakePopen.error
        self.args = args
        self.kwargs = kwargs
        self.pid = 4242
        self.terminated = 0
        self.killed = 0
        self.wait_timeouts: list[float | None] = []
        self.hang = False
        self.terminate_error: OSError | None = None
        _FakePopen.instances.append(self)

    def terminate(self) -> None:
        if self.terminate_error is not None:
            raise self.terminate_error
        self.terminated += 1

    def kill(self) -> None:
        self.killed += 1

    def wait(self, timeout: float | None = None) -> int:
        self.wait_timeouts.append(timeout)
        if self.hang and timeout is not None:
            raise subprocess.TimeoutExpired(self.args, timeout)
        return 0


class _FakeCompletions:
    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _RecordingDownloader:
    def __init__(self, provider_ref: list[LlamafileProvider], *, error: Exception | None = None) -> None:
        self._provider_ref = provider_ref
        self._error = error
        self.calls: list[tuple[str, Path]] = []
        self.state_during_download: ProviderState | None = None

    async def download(self, url: str, destination: Path) -> Path:
        self.calls.append((url, destination))
        self.state_during_download = self._provider_ref[0].state
        if self._error is not None:
            raise self._error
        destination.write_bytes(b"#!/bin/sh\n")
        return destination


def _completion(content: Any, role: str = "assistant") -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(role=role, content=content))])


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "http://127.0.0.1:8080/v1/chat/completions"))


@pytest.fixture(autouse=True)
def fake_popen(monkeypatch: pytest.MonkeyPatch):
    _FakePopen.instances = []
    _FakePopen.error = None
    monkeypatch.setattr(llamafile_module.subprocess, "Popen", _FakePopen)
    yield _FakePopen


def _provider(models_dir: Path, *, outcomes: list[Any] | None = None, **kwargs: Any) -> LlamafileProvider:
    client = SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions(outcomes or [])))
    kwargs.setdefault("startup_delay", 0)
    kwargs.setdefault("retry_min_seconds", 0)
    kwargs.setdefault("retry_max_seconds", 0)
    return LlamafileProvider(
        parse_model("Llama-3.2-1B-Instruct"),
        models_dir=models_dir,
        client=cast(AsyncOpenAI, client),
        **kwargs,
    )


def _completions(provider: LlamafileProvider) -> _FakeCompletions:
    return cast(Any, provider)._client.chat.completions


async def _serving(models_dir: Path, **kwargs: Any) -> LlamafileProvider:
    provider = _provider(models_dir, **kwargs)
    provider.model_path.write_bytes(b"#!/bin/sh\n")
    await provider.initialize(CONFIG)
    return provider


@pytest.mark.asyncio
async def test_initialize_spawns_server_with_fixed_command(models_dir: Path, fake_popen) -> None:
    provider = await _serving(models_dir)

    (process,) = fake_popen.instances
    assert process.args == [
        str(models_dir / "Llama-3.2-1B-Instruct.Q6_K.llamafile"),
        "--server",
        "--nobrowser",
        "--host",
        "127.0.0.1",
        "--port",
        "8080",
    ]
    assert provider.state is ProviderState.SERVING
    assert provider.pid == 4242
    assert provider.config == CONFIG


@pytest.mark.asyncio
async def test_missing_model_is_downloaded_first(models_dir: Path, fake_popen) -> None:
    ref: list[LlamafileProvider] = []
    downloader = _RecordingDownloader(ref)
    provider = _provider(models_dir, downloader=downloader)
    ref.append(provider)

    await provider.initialize(CONFIG)

    assert downloader.calls == [(provider.model.download_url, provider.model_path)]
    assert downloader.state_during_download is ProviderState.DOWNLOADING
    assert provider.state is ProviderState.SERVING
    assert len(fake_popen.instances) == 1


@pytest.mark.asyncio
async def test_download_failure_leaves_provider_failed(models_dir: Path, fake_popen) -> None:
    ref: list[LlamafileProvider] = []
    provider = _provider(models_dir, downloader=_RecordingDownloader(ref, error=ModelDownloadError("offline")))
    ref.append(provider)

    with pytest.raises(ModelDownloadError):
        await provider.initialize(CONFIG)

    assert provider.state is ProviderState.FAILED
    assert fake_popen.instances == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("os_error", "expected", "text"),
    [
        (FileNotFoundError(2, "No such file"), LlamafileNotFoundError, "LlamaFile not found"),
        (PermissionError(13, "Permission denied"), LlamafilePermissionError, "re-download"),
    ],
)
async def test_spawn_errors_are_actionable(
    models_dir: Path, fake_popen, os_error: OSError, expected: type[Exception], text: str
) -> None:
    fake_popen.error = os_error
    provider = _provider(models_dir)
    provider.model_path.write_bytes(b"")

    with pytest.raises(expected, match=text):
        await provider.initialize(CONFIG)

    assert provider.state is ProviderState.FAILED
    assert provider.pid is None


@pytest.mark.asyncio
async def test_chat_posts_ordered_messages(models_dir: Path) -> None:
    provider = await _serving(models_dir, outcomes=[_completion("Hello there")])
    messages = [Message(Role.SYSTEM, "sys"), Message(Role.USER, "hi")]

    reply = await provider.chat(messages, temperature=0.3)

    assert reply == Message(Role.ASSISTANT, "Hello there")
    (call,) = _completions(provider).calls
    assert call["model"] == LLAMAFILE_MODEL_ID
    assert call["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]
    assert call["temperature"] == 0.3
    assert "top_p" not in call


@pytest.mark.asyncio
async def test_chat_retries_connection_errors(models_dir: Path) -> None:
    provider = await _serving(models_dir, outcomes=[_connection_error(), _completion("warm now")])

    reply = await provider.chat([Message(Role.USER, "hi")])

    assert reply.content == "warm now"
    assert len(_completions(provider).calls) == 2


@pytest.mark.asyncio
async def test_chat_gives_up_after_max_retries(models_dir: Path) -> None:
    provider = await _serving(models_dir, outcomes=[_connection_error() for _ in range(3)], max_retries=3)

    with pytest.raises(ProviderCommunicationError):
        await provider.chat([Message(Role.USER, "hi")])

    assert len(_completions(provider).calls) == 3


@pytest.mark.asyncio
async def test_http_status_error_is_not_retried(models_dir: Path) -> None:
    request = httpx.Request("POST", "http://127.0.0.1:8080/v1/chat/completions")
    error = APIStatusError("boom", response=httpx.Response(500, request=request), body=None)
    provider = await _serving(models_dir, outcomes=[error])

    with pytest.raises(ProviderCommunicationError, match="HTTP 500"):
        await provider.chat([Message(Role.USER, "hi")])

    assert len(_completions(provider).calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "completion",
    [
        SimpleNamespace(choices=[]),
        _completion(None),
        SimpleNamespace(),
        _completion("text", role="narrator"),
    ],
)
async def test_unusable_completion_is_invalid_response(models_dir: Path, completion: Any) -> None:
    provider = await _serving(models_dir, outcomes=[completion])

    with pytest.raises(ProviderInvalidResponseError):
        await provider.chat([Message(Role.USER, "hi")])


@pytest.mark.asyncio
async def test_chat_requires_serving_state(models_dir: Path) -> None:
    provider = _provider(models_dir)

    with pytest.raises(ProviderCommunicationError):
        await provider.chat([Message(Role.USER, "hi")])


def _completion_body(content: str) -> dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": LLAMAFILE_MODEL_ID,
        "choices": [
            {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}},
        ],
    }


@pytest.fixture
def wire(monkeypatch: pytest.MonkeyPatch):
    """Route the provider's own OpenAI clients through an ``httpx.MockTransport``."""

    state = SimpleNamespace(requests=[], client_kwargs=[], respond=None)

    def _handler(request: httpx.Request) -> httpx.Response:
        state.requests.append(request)
        return state.respond(request)

    def _client_factory(**kwargs: Any) -> AsyncOpenAI:
        state.client_kwargs.append(kwargs)
        return AsyncOpenAI(http_client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)), **kwargs)

    monkeypatch.setattr(llamafile_module, "AsyncOpenAI", _client_factory)
    return state


async def _serving_without_client(models_dir: Path) -> LlamafileProvider:
    provider = LlamafileProvider(
        parse_model("Llama-3.2-1B-Instruct"),
        models_dir=models_dir,
        startup_delay=0,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    provider.model_path.write_bytes(b"#!/bin/sh\n")
    await provider.initialize(CONFIG)
    return provider


@pytest.mark.asyncio
async def test_chat_wire_request_and_reply(models_dir: Path, wire) -> None:
    wire.respond = lambda request: httpx.Response(200, json=_completion_body("Hi from llamafile"))
    provider = await _serving_without_client(models_dir)

    reply = await provider.chat(
        [Message(Role.SYSTEM, "sys"), Message(Role.USER, "hi")],
        temperature=0.7,
        top_p=0.9,
    )

    assert reply == Message(Role.ASSISTANT, "Hi from llamafile")
    (request,) = wire.requests
    assert request.method == "POST"
    assert str(request.url) == "http://127.0.0.1:8080/v1/chat/completions"
    assert json.loads(request.content) == {
        "model": LLAMAFILE_MODEL_ID,
        "messages": [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ],
        "temperature": 0.7,
        "top_p": 0.9,
    }
    (kwargs,) = wire.client_kwargs
    assert kwargs["base_url"] == "http://127.0.0.1:8080/v1"
    assert kwargs["max_retries"] == 0
    assert kwargs["timeout"] == 5.0


@pytest.mark.asyncio
async def test_chat_wire_omits_unset_sampling_parameters(models_dir: Path, wire) -> None:
    wire.respond = lambda request: httpx.Response(200, json=_completion_body("ok"))
    provider = await _serving_without_client(models_dir)

    await provider.chat([Message(Role.USER, "hi")])

    body = json.loads(wire.requests[0].content)
    assert "temperature" not in body
    assert "top_p" not in body


@pytest.mark.asyncio
async def test_undecodable_body_is_invalid_response(models_dir: Path, wire) -> None:
    wire.respond = lambda request: httpx.Response(
        200, headers={"content-type": "application/json"}, content=b"not json{"
    )
    provider = await _serving_without_client(models_dir)

    with pytest.raises(ProviderInvalidResponseError, match="not JSON"):
        await provider.chat([Message(Role.USER, "hi")])

    assert len(wire.requests) == 1


@pytest.mark.asyncio
async def test_body_without_choices_is_invalid_response(models_dir: Path, wire) -> None:
    wire.respond = lambda request: httpx.Response(200, json={"id": "chatcmpl-2", "object": "chat.completion"})
    provider = await _serving_without_client(models_dir)

    with pytest.raises(ProviderInvalidResponseError):
        await provider.chat([Message(Role.USER, "hi")])


@pytest.mark.asyncio
async def test_server_error_status_over_the_wire(models_dir: Path, wire) -> None:
    wire.respond = lambda request: httpx.Response(503, json={"error": {"message": "loading model"}})
    provider = await _serving_without_client(models_dir)

    with pytest.raises(ProviderCommunicationError, match="HTTP 503"):
        await provider.chat([Message(Role.USER, "hi")])

    assert len(wire.requests) == 1


def test_build_client_targets_local_server() -> None:
    client = LlamafileProvider._build_client(ProviderConfig(host="127.0.0.2", port=9123, timeout=7.5))

    assert str(client.base_url) == "http://127.0.0.2:9123/v1/"
    assert client.max_retries == 0
    assert client.timeout == 7.5
    assert client.api_key == "sk-no-key-required"


@pytest.mark.asyncio
async def test_shutdown_terminates_and_is_idempotent(models_dir: Path, fake_popen) -> None:
    provider = await _serving(models_dir)
    (process,) = fake_popen.instances

    provider.shutdown()
    provider.shutdown()

    assert process.terminated == 1
    assert process.killed == 0
    assert provider.state is ProviderState.TERMINATED
    assert provider.pid is None


@pytest.mark.asyncio
async def test_shutdown_kills_unresponsive_server(models_dir: Path, fake_popen) -> None:
    provider = await _serving(models_dir, shutdown_timeout=0.5)
    (process,) = fake_popen.instances
    process.hang = True

    provider.shutdown()

    assert process.terminated == 1
    assert process.killed == 1
    assert process.wait_timeouts == [0.5, None]


@pytest.mark.asyncio
async def test_shutdown_os_error_is_reported(models_dir: Path, fake_popen) -> None:
    provider = await _serving(models_dir)
    fake_popen.instances[0].terminate_error = OSError("gone")

    with pytest.raises(ProviderShutdownError):
        provider.shutdown()

    assert provider.state is ProviderState.FAILED


@pytest.mark.asyncio
async def test_dropping_provider_stops_server(models_dir: Path, fake_popen) -> None:
    provider = await _serving(models_dir)
    (process,) = fake_popen.instances

    del provider

    assert process.terminated == 1


def test_shutdown_without_process_is_noop(models_dir: Path) -> None:
    provider = _provider(models_dir)

    provider.shutdown()

    assert provider.state is ProviderState.UNINITIALIZED
