import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone

import httpx

from .errors import BackendProcessError, BackendUnreachable
from .models import HealthRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class BackendClient:
    """Async HTTP client shared by the local-daemon adapter and the health monitor.

    Nothing is retried: a failed request surfaces immediately and is re-checked
    naturally on the next health round.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client: httpx.AsyncClient | None = None
        self._transport = transport

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            transport=self._transport,
        )

    async def stop(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        """Return initialized client or raise a clear runtime error."""
        if self._client is None:
            raise RuntimeError("Backend client is not started")
        return self._client

    async def request(
        self,
        backend_name: str,
        method: str,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        **kwargs,
    ) -> httpx.Response:
        """Send one request; transport failures become BackendUnreachable."""
        try:
            return await self._require_client().request(method, url, timeout=timeout, **kwargs)
        except httpx.TransportError as e:
            logger.warning("%s %s %s failed: %s", backend_name, method, url, e)
            raise BackendUnreachable(f"{backend_name} unreachable", detail=str(e) or type(e).__name__) from e

    async def stream_lines(
        self,
        backend_name: str,
        method: str,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        **kwargs,
    ) -> AsyncIterator[str]:
        """Open a streaming request and yield decoded lines.

        httpx.AsyncClient.stream() returns an async context manager, not a
        response. The stream stays open while the caller iterates and is closed
        when the generator finishes or is closed early by the consumer.
        """
        try:
            async with self._require_client().stream(method, url, timeout=timeout, **kwargs) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise BackendProcessError(
                        f"{backend_name} returned HTTP {resp.status_code}",
                        exit_code=resp.status_code,
                        stderr=body[:1000],
                    )
                async for line in resp.aiter_lines():
                    yield line
        except httpx.TransportError as e:
            logger.warning("%s stream %s failed: %s", backend_name, url, e)
            raise BackendUnreachable(f"{backend_name} unreachable", detail=str(e) or type(e).__name__) from e

    async def health_check(self, service_name: str, url: str, *, timeout: float = 5.0) -> HealthRecord:
        """Probe a /health endpoint. Never raises; failures become status=error."""
        try:
            resp = await asyncio.wait_for(
                self._require_client().get(url, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return _record(service_name, "error", f"timed out after {timeout:g}s")
        except Exception as e:
            return _record(service_name, "error", str(e) or type(e).__name__)

        if not resp.is_success:
            return _record(service_name, "error", f"HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        reported = str(payload.get("status", "ok"))
        message = str(payload.get("message") or payload.get("error") or "")
        if reported == "ok":
            return _record(service_name, "ok", message)
        return _record(service_name, "degraded", f"{reported}: {message}" if message else reported)


def _record(service_name: str, status: str, detail: str) -> HealthRecord:
    return HealthRecord(
        service_name=service_name,
        status=status,
        timestamp=datetime.now(timezone.utc),
        detail=detail,
    )
