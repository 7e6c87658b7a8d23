"""Local Ollama daemon backend. No authentication; execution stays on this host."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from .adapter_base import BackendAdapter
from .backend_client import BackendClient
from .config import BackendDescriptor
from .errors import BackendProcessError, BridgeError, StreamParseError
from .models import Readiness

logger = logging.getLogger(__name__)


def parse_stream_line(line: str) -> dict[str, Any]:
    """Parse one NDJSON partial-result object."""
    try:
        item = json.loads(line)
    except json.JSONDecodeError as e:
        raise StreamParseError("Malformed stream line", detail=e.msg) from e
    if not isinstance(item, dict):
        raise StreamParseError("Stream line is not an object", detail=type(item).__name__)
    return item


class OllamaAdapter(BackendAdapter):
    def __init__(self, descriptor: BackendDescriptor, client: BackendClient | None = None):
        super().__init__(descriptor)
        self._client = client or BackendClient()
        self._base_url = descriptor.daemon_url.rstrip("/")

    async def start(self) -> None:
        await self._client.start()

    async def stop(self) -> None:
        await self._client.stop()

    async def check_readiness(self) -> Readiness:
        try:
            resp = await self._client.request(
                self.descriptor.name,
                "GET",
                f"{self._base_url}/api/tags",
                timeout=self.descriptor.readiness_timeout_seconds,
            )
            if not resp.is_success:
                raise BackendProcessError(f"HTTP {resp.status_code}", exit_code=resp.status_code)
            data = resp.json()
        except (BridgeError, ValueError) as e:
            logger.info("%s readiness degraded: %s", self.descriptor.name, e)
            return Readiness(
                status="degraded",
                message=f"{self.descriptor.label} not reachable",
                fields={"ollama_available": False, "error": f"{self.descriptor.label} not reachable"},
            )
        models = data.get("models", []) if isinstance(data, dict) else []
        names = [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]
        return Readiness(status="ok", message="Ready", fields={"ollama_available": True, "models": names})

    async def ensure_ready(self) -> None:
        """No login step; queries are attempted even while readiness is degraded."""

    def _generate_error(self, message: str, *, status: int | None = None, body: str = "") -> BackendProcessError:
        return BackendProcessError(f"{self.descriptor.label} error: {message}", exit_code=status, stderr=body)

    async def invoke(self, prompt: str, model: str) -> str:
        await self.ensure_ready()
        resp = await self._client.request(
            self.descriptor.name,
            "POST",
            f"{self._base_url}/api/generate",
            json={"model": model, "prompt": prompt, "stream": False},
            timeout=self.descriptor.request_timeout_seconds,
        )
        if not resp.is_success:
            raise self._generate_error(f"HTTP {resp.status_code}", status=resp.status_code, body=resp.text[:1000])
        try:
            data = resp.json()
        except ValueError as e:
            raise self._generate_error("invalid JSON response", body=resp.text[:1000]) from e
        if not isinstance(data, dict):
            raise self._generate_error("response is not an object")
        if data.get("error"):
            raise self._generate_error(str(data["error"]))
        return str(data.get("response") or "")

    async def invoke_stream(self, prompt: str, model: str) -> AsyncIterator[str]:
        await self.ensure_ready()
        lines = self._client.stream_lines(
            self.descriptor.name,
            "POST",
            f"{self._base_url}/api/generate",
            json={"model": model, "prompt": prompt, "stream": True},
            timeout=self.descriptor.request_timeout_seconds,
        )
        try:
            async for line in lines:
                if not line.strip():
                    continue
                try:
                    item = parse_stream_line(line)
                except StreamParseError as e:
                    logger.debug("%s skipping stream line: %s (%s)", self.descriptor.name, e, e.detail)
                    continue
                if item.get("error"):
                    raise self._generate_error(str(item["error"]))
                text = item.get("response")
                if isinstance(text, str) and text:
                    yield text
                if item.get("done"):
                    return
        finally:
            await lines.aclose()
        raise self._generate_error("stream ended before completion")
