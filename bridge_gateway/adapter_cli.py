"""CLI-driven backend authenticated through a locally stored OAuth credential.

Every query spawns its own CLI process. There is no pooling and no cap on
concurrent processes; concurrent requests run concurrent CLIs.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import signal
from collections.abc import AsyncIterator

from .adapter_base import BackendAdapter
from .errors import BackendProcessError, BackendUnreachable
from .models import Readiness
from .supervisor import signal_process_group

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    signal_process_group(proc.pid, signal.SIGKILL)
    await proc.wait()


class CliAdapter(BackendAdapter):
    def _authenticated(self) -> bool:
        return self.descriptor.credential_file.exists()

    async def check_readiness(self) -> Readiness:
        if self._authenticated():
            return Readiness(status="ok", message="Ready", fields={"authenticated": True})
        return Readiness(
            status="auth_required",
            message=self.descriptor.login_hint,
            fields={"authenticated": False},
        )

    def _argv(self, prompt: str, model: str, mode_flag: str) -> list[str]:
        return [*self.descriptor.command, "--model", model, mode_flag, prompt]

    async def _spawn(self, argv: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise BackendUnreachable(
                f"{self.descriptor.label} executable not available",
                detail=f"{argv[0]}: {e}",
            ) from e

    def _process_error(self, returncode: int, stderr: str) -> BackendProcessError:
        return BackendProcessError(
            f"{self.descriptor.label} error: {stderr.strip() or f'exit code {returncode}'}",
            exit_code=returncode,
            stderr=stderr,
        )

    async def invoke(self, prompt: str, model: str) -> str:
        await self.ensure_ready()
        proc = await self._spawn(self._argv(prompt, model, self.descriptor.sync_flag))
        logger.info("%s query started (pid=%s, model=%s)", self.descriptor.name, proc.pid, model)
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        if proc.returncode != 0:
            logger.warning("%s exited with code %s", self.descriptor.name, proc.returncode)
            raise self._process_error(proc.returncode, stderr.decode("utf-8", errors="replace"))
        return stdout.decode("utf-8", errors="replace").strip()

    async def invoke_stream(self, prompt: str, model: str) -> AsyncIterator[str]:
        await self.ensure_ready()
        proc = await self._spawn(self._argv(prompt, model, self.descriptor.stream_flag))
        logger.info("%s stream started (pid=%s, model=%s)", self.descriptor.name, proc.pid, model)
        stderr_task = asyncio.create_task(proc.stderr.read())
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await proc.stdout.read(READ_CHUNK_BYTES)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    yield text
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            if returncode != 0:
                logger.warning("%s stream exited with code %s", self.descriptor.name, returncode)
                raise self._process_error(returncode, stderr)
        finally:
            if proc.returncode is None:
                logger.info("%s stream cancelled; killing pid %s", self.descriptor.name, proc.pid)
                await _kill(proc)
            if not stderr_task.done():
                stderr_task.cancel()
