"""Append-only, timestamp-prefixed line logs.

Each sink owns one file and one writer task; producers only enqueue lines, so
lines from different streams never interleave mid-line.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import aiofiles

_STOP = object()


def timestamp() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %z")


class LineSink:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: asyncio.Task | None = None

    def start(self) -> None:
        if self._writer is not None and not self._writer.done():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = asyncio.create_task(self._drain(), name=f"log-sink:{self.path.name}")

    def write(self, line: str, *, tag: str | None = None) -> None:
        text = line.rstrip("\r\n").replace("\n", " \\n ")
        prefix = f"[{timestamp()}]" if tag is None else f"[{timestamp()}] [{tag}]"
        self._queue.put_nowait(f"{prefix} {text}\n")

    async def close(self) -> None:
        if self._writer is None:
            return
        self._queue.put_nowait(_STOP)
        await self._writer
        self._writer = None

    async def _drain(self) -> None:
        async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
            while True:
                item = await self._queue.get()
                if item is _STOP:
                    break
                await f.write(item)
                if self._queue.empty():
                    await f.flush()


async def pump_stream(reader: asyncio.StreamReader, sink: LineSink, tag: str) -> None:
    """Copy a child process stream into the sink line by line until EOF."""
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            # over the reader's line limit; asyncio drops the buffered part
            sink.write("<line too long, dropped>", tag=tag)
            continue
        if not raw:
            return
        sink.write(raw.decode("utf-8", errors="replace"), tag=tag)
