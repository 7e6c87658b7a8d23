"""Process supervisor for bridge servers, the health monitor and auxiliary processes.

Every managed process gets one runner task that owns its lifecycle:

    stopped -> starting -> running -> crashed -> (backoff) -> starting ...
                              |
                              +-> restarting -> starting   (cron/manual, not a crash)

Each process leads its own session. Signals go to the whole session so forked
helpers never outlive their leader.

All state lives on the supervisor's event loop; nothing else mutates it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil

from .config import ProcessSpec, SupervisorConfig
from .cron import cron_next_run, validate_cron
from .log_sink import LineSink, pump_stream
from .models import ProcessStatus
from .state_store import SupervisionStateStore

logger = logging.getLogger(__name__)

PIPE_DRAIN_SECONDS = 2.0
EXIT_POLL_SECONDS = 0.1
READER_LIMIT_BYTES = 1024 * 1024


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    ERRORED = "errored"


def process_tree_rss(pid: int) -> int | None:
    """Resident memory of a process and its descendants, or None if it is gone."""
    try:
        proc = psutil.Process(pid)
        total = proc.memory_info().rss
        children = proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    for child in children:
        try:
            total += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total


def signal_process_group(pid: int, sig: int) -> None:
    """Signal every process in the session started for `pid`."""
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        return


async def _leader_exit(proc: asyncio.subprocess.Process) -> int:
    """Exit code of the session leader.

    Process.wait() also waits for the pipes to close, which a surviving
    grandchild can hold open indefinitely.
    """
    while proc.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return proc.returncode


@dataclass
class _Managed:
    spec: ProcessSpec
    sink: LineSink
    status: ProcessState = ProcessState.STOPPED
    process: asyncio.subprocess.Process | None = None
    runner: asyncio.Task | None = None
    pending: str | None = None
    restart_count: int = 0
    scheduled_restart_count: int = 0
    last_restart_at: datetime | None = None
    last_exit_code: int | None = None
    next_cron_at: datetime | None = None
    crash_times: deque = field(default_factory=deque)
    wake: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def pid(self) -> int | None:
        if self.process is None or self.process.returncode is not None:
            return None
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.runner is not None and not self.runner.done()


class ProcessSupervisor:
    def __init__(
        self,
        specs: Sequence[ProcessSpec],
        config: SupervisorConfig,
        *,
        base_env: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now().astimezone(),
        memory_probe: Callable[[int], int | None] = process_tree_rss,
        state_store: SupervisionStateStore | None = None,
    ):
        self._config = config
        self._base_env = dict(base_env or {})
        self._clock = clock
        self._now = now
        self._memory_probe = memory_probe
        self._log_dir = Path(config.log_dir).expanduser()
        self._store = state_store
        self._background: set[asyncio.Task] = set()
        self._order: list[str] = []
        self._procs: dict[str, _Managed] = {}
        for spec in specs:
            if spec.cron_restart:
                validate_cron(spec.cron_restart)
            self._order.append(spec.name)
            self._procs[spec.name] = _Managed(spec=spec, sink=LineSink(self._log_dir / f"{spec.name}.log"))

    # --- Public control surface ---

    async def start_all(self) -> None:
        """Launch every process in declaration order."""
        for name in self._order:
            await self.start(name)

    async def start(self, name: str) -> None:
        managed = self._get(name)
        if managed.alive:
            return
        managed.pending = None
        managed.crash_times.clear()
        managed.wake = asyncio.Event()
        managed.sink.start()
        managed.runner = asyncio.create_task(self._run(managed), name=f"supervise:{name}")
        await asyncio.sleep(0)

    async def stop(self, name: str) -> None:
        """Stop a process and suppress auto-restart for this exit."""
        managed = self._get(name)
        if not managed.alive:
            self._set_status(managed, ProcessState.STOPPED)
            return
        managed.pending = "stop"
        managed.wake.set()
        await self._terminate(managed)
        await managed.runner

    async def restart(self, name: str) -> None:
        """Restart without counting a crash; revives stopped or errored processes."""
        managed = self._get(name)
        if not managed.alive:
            await self.start(name)
            return
        await self._request_restart(managed, "restart")

    async def stop_all(self) -> None:
        for name in reversed(self._order):
            await self.stop(name)
        for managed in self._procs.values():
            await managed.sink.close()

    def status(self) -> dict[str, ProcessStatus]:
        return {name: self._snapshot(self._procs[name]) for name in self._order}

    async def check_once(self) -> None:
        """One control-loop tick: enforce memory caps and fire due cron restarts."""
        now = self._now()
        for name in self._order:
            managed = self._procs[name]
            if managed.status != ProcessState.RUNNING or managed.pid is None or managed.pending:
                continue
            cap = managed.spec.max_memory
            if cap:
                rss = self._memory_probe(managed.pid)
                if rss is not None and rss > cap:
                    logger.warning("%s exceeded memory cap (%d > %d bytes); killing", name, rss, cap)
                    managed.sink.write(f"memory cap exceeded ({rss} > {cap} bytes)", tag="supervisor")
                    managed.pending = "memory"
                    self._kill(managed)
                    continue
            if managed.next_cron_at is not None and now >= managed.next_cron_at:
                managed.next_cron_at = cron_next_run(managed.spec.cron_restart, now)
                logger.info("%s scheduled restart (%s)", name, managed.spec.cron_restart)
                self._spawn_background(self._request_restart(managed, "scheduled"))

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start everything, tick until stop_event is set, then stop everything."""
        await self.start_all()
        logger.info("Supervisor managing %d processes", len(self._order))
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._config.check_interval_seconds)
                except asyncio.TimeoutError:
                    await self.check_once()
        finally:
            logger.info("Supervisor shutting down")
            await self.stop_all()
            for task in list(self._background):
                task.cancel()

    # --- Runner ---

    async def _run(self, managed: _Managed) -> None:
        spec = managed.spec
        while True:
            self._set_status(managed, ProcessState.STARTING)
            exit_code = await self._run_once(managed)

            reason, managed.pending = managed.pending, None
            managed.wake.clear()
            if reason == "stop":
                self._set_status(managed, ProcessState.STOPPED)
                managed.sink.write(f"stopped (exit code {exit_code})", tag="supervisor")
                logger.info("%s stopped", spec.name)
                return
            if reason in ("restart", "scheduled"):
                if reason == "scheduled":
                    managed.scheduled_restart_count += 1
                managed.last_restart_at = self._now()
                self._set_status(managed, ProcessState.RESTARTING)
                label = "scheduled restart" if reason == "scheduled" else "manual restart"
                managed.sink.write(label, tag="supervisor")
                continue

            self._set_status(managed, ProcessState.CRASHED)
            detail = "memory cap exceeded" if reason == "memory" else f"exit code {exit_code}"
            managed.sink.write(f"crashed ({detail})", tag="supervisor")
            logger.warning("%s crashed (%s)", spec.name, detail)
            if not spec.autorestart:
                return

            recent = self._record_crash(managed)
            backoff = self._config.backoff
            if recent > backoff.max_restarts_in_window:
                self._set_status(managed, ProcessState.ERRORED)
                managed.sink.write(
                    f"crash loop: {recent} crashes in {backoff.window_seconds:g}s; auto-restart suspended",
                    tag="supervisor",
                )
                logger.error("%s is crash looping; auto-restart suspended", spec.name)
                return
            delay = backoff.delay_for(recent)
            if delay > 0:
                logger.info("%s restarting in %.1fs", spec.name, delay)
                await self._wait_or_wake(managed, delay)
                reason, managed.pending = managed.pending, None
                if reason == "stop":
                    self._set_status(managed, ProcessState.STOPPED)
                    return
                if reason == "restart":
                    # operator restart cut the backoff short; not a crash restart
                    managed.last_restart_at = self._now()
                    self._set_status(managed, ProcessState.RESTARTING)
                    managed.sink.write("manual restart during backoff", tag="supervisor")
                    continue
            managed.restart_count += 1
            managed.last_restart_at = self._now()

    async def _run_once(self, managed: _Managed) -> int | None:
        spec = managed.spec
        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=str(Path(spec.cwd).expanduser()) if spec.cwd else None,
                env={**self._base_env, **spec.env},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=READER_LIMIT_BYTES,
            )
        except OSError as e:
            managed.sink.write(f"failed to start: {e}", tag="supervisor")
            logger.error("%s failed to start: %s", spec.name, e)
            managed.last_exit_code = None
            return None

        managed.process = proc
        if spec.cron_restart and (managed.next_cron_at is None or managed.next_cron_at <= self._now()):
            # slots missed while the process was down are skipped
            managed.next_cron_at = cron_next_run(spec.cron_restart, self._now())
        self._set_status(managed, ProcessState.RUNNING)
        managed.sink.write(f"started pid {proc.pid}: {' '.join(spec.command)}", tag="supervisor")
        logger.info("%s running (pid %s)", spec.name, proc.pid)
        if managed.pending == "stop":
            self._kill(managed)

        pumps = [
            asyncio.create_task(pump_stream(proc.stdout, managed.sink, "out")),
            asyncio.create_task(pump_stream(proc.stderr, managed.sink, "err")),
        ]
        try:
            exit_code = await _leader_exit(proc)
            # descendants left in the session would keep the pipes open
            signal_process_group(proc.pid, signal.SIGKILL)
        finally:
            _, still_open = await asyncio.wait(pumps, timeout=PIPE_DRAIN_SECONDS)
            for task in still_open:
                task.cancel()
        managed.process = None
        managed.last_exit_code = exit_code
        return exit_code

    # --- Helpers ---

    def _get(self, name: str) -> _Managed:
        managed = self._procs.get(name)
        if managed is None:
            raise KeyError(f"Unknown process: {name}")
        return managed

    async def _request_restart(self, managed: _Managed, reason: str) -> None:
        if managed.pending:
            return
        managed.pending = reason
        managed.wake.set()
        await self._terminate(managed)

    async def _terminate(self, managed: _Managed) -> None:
        proc = managed.process
        if proc is None or proc.returncode is not None:
            return
        signal_process_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(_leader_exit(proc), timeout=self._config.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("%s ignored SIGTERM; killing", managed.spec.name)
            self._kill(managed)

    def _kill(self, managed: _Managed) -> None:
        proc = managed.process
        if proc is None or proc.returncode is not None:
            return
        signal_process_group(proc.pid, signal.SIGKILL)

    async def _wait_or_wake(self, managed: _Managed, delay: float) -> None:
        try:
            await asyncio.wait_for(managed.wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _record_crash(self, managed: _Managed) -> int:
        now = self._clock()
        window = self._config.backoff.window_seconds
        managed.crash_times.append(now)
        while managed.crash_times and now - managed.crash_times[0] > window:
            managed.crash_times.popleft()
        return len(managed.crash_times)

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _set_status(self, managed: _Managed, status: ProcessState) -> None:
        managed.status = status
        if self._store is not None:
            try:
                self._store.write(
                    {name: self._snapshot(self._procs[name]).model_dump(mode="json") for name in self._order}
                )
            except OSError as e:
                logger.warning("Failed to persist supervision state: %s", e)

    def _snapshot(self, managed: _Managed) -> ProcessStatus:
        return ProcessStatus(
            name=managed.spec.name,
            status=managed.status.value,
            pid=managed.pid,
            restart_count=managed.restart_count,
            scheduled_restart_count=managed.scheduled_restart_count,
            last_restart_at=managed.last_restart_at,
            last_exit_code=managed.last_exit_code,
        )
