"""Uniform capability set implemented by every backend transport."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from .config import BackendDescriptor
from .errors import AuthRequired
from .models import Readiness


class BackendAdapter(ABC):
    def __init__(self, descriptor: BackendDescriptor):
        self.descriptor = descriptor

    async def start(self) -> None:
        """Acquire transport resources (connection pools). Default: nothing."""

    async def stop(self) -> None:
        """Release transport resources. Default: nothing."""

    @abstractmethod
    async def check_readiness(self) -> Readiness:
        """Cheap readiness probe; must not run a real query."""

    async def ensure_ready(self) -> None:
        """Raise AuthRequired when the backend cannot accept queries without login."""
        readiness = await self.check_readiness()
        if readiness.status == "auth_required":
            raise AuthRequired(
                f"{self.descriptor.label} not authenticated",
                solution=readiness.message,
            )

    @abstractmethod
    async def invoke(self, prompt: str, model: str) -> str:
        """Run one buffered query and return the full response text."""

    @abstractmethod
    def invoke_stream(self, prompt: str, model: str) -> AsyncIterator[str]:
        """Yield response fragments in backend order.

        The iterator is finite and cannot be restarted. Closing it early must
        cancel the underlying subprocess or HTTP request.
        """


def build_adapter(descriptor: BackendDescriptor) -> BackendAdapter:
    if descriptor.transport == "cli":
        from .adapter_cli import CliAdapter

        return CliAdapter(descriptor)
    if descriptor.transport == "http":
        from .adapter_ollama import OllamaAdapter

        return OllamaAdapter(descriptor)
    raise ValueError(f"Unsupported transport: {descriptor.transport}")
