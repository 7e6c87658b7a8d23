"""
Shared fixtures for bridge, adapter, monitor and supervisor tests.

Backends are faked two ways:
  - the OAuth CLI is a small Python script run with the current interpreter
  - the Ollama daemon is an httpx.MockTransport handler
"""

from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from pathlib import Path

import httpx
import psutil
import pytest

from bridge_gateway.adapter_cli import CliAdapter
from bridge_gateway.adapter_ollama import OllamaAdapter
from bridge_gateway.backend_client import BackendClient
from bridge_gateway.config import BackendDescriptor

FAKE_CLI = textwrap.dedent(
    """
    import os
    import sys
    import time

    args = sys.argv[1:]
    model = args[args.index("--model") + 1]
    streaming = "--stream" in args
    prompt = args[-1]

    if prompt == "fail":
        sys.stderr.write("quota exceeded\\n")
        sys.exit(3)
    if prompt == "hang":
        print(f"pid:{os.getpid()}", flush=True)
        time.sleep(30)
        sys.exit(0)
    if prompt == "fork-hang":
        import subprocess
        helper = subprocess.Popen(["sleep", "300"])
        print(f"pid:{helper.pid}", flush=True)
        time.sleep(30)
        sys.exit(0)
    if streaming:
        for part in ("one ", "two ", "three"):
            sys.stdout.write(part)
            sys.stdout.flush()
            time.sleep(0.05)
        if prompt == "stream-fail":
            sys.stderr.write("crashed mid-stream\\n")
            sys.exit(2)
        sys.exit(0)
    if prompt == "echo-model":
        print(model)
        sys.exit(0)
    print("hello")
    """
)


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a process-wide exit event bound to the first event loop."""
    from sse_starlette import sse

    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


@pytest.fixture
def fake_cli(tmp_path: Path) -> Path:
    script = tmp_path / "fake_gemini.py"
    script.write_text(FAKE_CLI, encoding="utf-8")
    return script


@pytest.fixture
def credential_file(tmp_path: Path) -> Path:
    return tmp_path / "gemini" / "oauth_creds.json"


@pytest.fixture
def authenticate(credential_file: Path):
    def _authenticate() -> None:
        credential_file.parent.mkdir(parents=True, exist_ok=True)
        credential_file.write_text('{"access_token": "test"}', encoding="utf-8")

    return _authenticate


@pytest.fixture
def cli_descriptor(fake_cli: Path, credential_file: Path) -> BackendDescriptor:
    return BackendDescriptor(
        name="gemini",
        service="mcp-gemini-bridge",
        display_name="Gemini CLI",
        transport="cli",
        port=3101,
        default_model="gemini-2.5-flash",
        command=(sys.executable, str(fake_cli)),
        credential_path=str(credential_file),
    )


@pytest.fixture
def cli_adapter(cli_descriptor: BackendDescriptor) -> CliAdapter:
    return CliAdapter(cli_descriptor)


@pytest.fixture
def ollama_descriptor() -> BackendDescriptor:
    return BackendDescriptor(
        name="qwen",
        service="mcp-qwen-bridge",
        display_name="Ollama",
        transport="http",
        port=3102,
        default_model="qwen3-coder:7b",
        daemon_url="http://ollama.test",
    )


async def wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def process_gone(pid: int) -> bool:
    """True once `pid` has exited; an unreaped zombie counts as gone."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def ndjson(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


class DroppedStream(httpx.AsyncByteStream):
    """Response body that sends some bytes and then loses the connection."""

    def __init__(self, body: bytes, error: httpx.TransportError):
        self._body = body
        self._error = error

    async def __aiter__(self):
        yield self._body
        raise self._error


class FakeOllama:
    """Scriptable Ollama daemon behind httpx.MockTransport."""

    def __init__(self):
        self.reachable = True
        self.models = ["qwen3-coder:7b"]
        self.generate_status = 200
        self.generate_body: dict = {"response": "hello from qwen", "done": True}
        self.stream_body: bytes = ndjson(
            '{"response": "one ", "done": false}',
            '{"response": "two ", "done": false}',
            '{"response": "three", "done": false}',
            '{"response": "", "done": true}',
        )
        self.requests: list[httpx.Request] = []
        self.transport_error: httpx.TransportError | None = None
        self.drop_stream_with: httpx.TransportError | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.reachable:
            raise httpx.ConnectError("Connection refused", request=request)
        if self.transport_error is not None:
            raise self.transport_error
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": name} for name in self.models]})
        if request.url.path == "/api/generate":
            payload = json.loads(request.content)
            if payload.get("stream") and self.drop_stream_with is not None:
                return httpx.Response(200, stream=DroppedStream(self.stream_body, self.drop_stream_with))
            if payload.get("stream"):
                return httpx.Response(self.generate_status, content=self.stream_body)
            return httpx.Response(self.generate_status, json=self.generate_body)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def ollama_adapter(ollama_descriptor: BackendDescriptor, fake_ollama: FakeOllama) -> OllamaAdapter:
    client = BackendClient(transport=httpx.MockTransport(fake_ollama.handler))
    return OllamaAdapter(ollama_descriptor, client=client)
