"""Periodic health polling across every registered bridge.

Each round probes all services concurrently, each probe bounded by its own
timeout, then logs one line per service and one summary line. Rounds start on
a fixed cadence and may overlap when a previous round is still settling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from .backend_client import BackendClient
from .config import MonitorConfig, ServiceEndpoint
from .log_sink import LineSink
from .models import HealthRecord, RoundReport

logger = logging.getLogger(__name__)


def format_record(record: HealthRecord) -> str:
    if record.status == "ok":
        return f"{record.service_name}: OK"
    if record.status == "degraded":
        return f"{record.service_name}: DEGRADED - {record.detail}"
    return f"{record.service_name}: FAILED - {record.detail}"


def format_summary(report: RoundReport) -> str:
    total = len(report.records)
    if report.healthy:
        return f"Round {report.round}: all {total} services healthy"
    return f"Round {report.round}: {report.unhealthy_count}/{total} services unhealthy - check logs"


class HealthMonitor:
    def __init__(
        self,
        services: Sequence[ServiceEndpoint],
        config: MonitorConfig,
        *,
        client: BackendClient | None = None,
        sink: LineSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._services = list(services)
        self._config = config
        self._client = client or BackendClient()
        self._sink = sink
        self._clock = clock
        self._sleep = sleep
        self._rounds: set[asyncio.Task] = set()
        self._round_no = 0

    @property
    def services(self) -> list[ServiceEndpoint]:
        return list(self._services)

    def _emit(self, line: str, level: int = logging.INFO) -> None:
        logger.log(level, line)
        if self._sink is not None:
            self._sink.write(line)

    async def probe(self, service: ServiceEndpoint) -> HealthRecord:
        return await self._client.health_check(
            service.name, service.url, timeout=self._config.probe_timeout_seconds
        )

    async def run_round(self) -> RoundReport:
        self._round_no += 1
        round_no = self._round_no
        records = await asyncio.gather(*(self.probe(service) for service in self._services))
        report = RoundReport(round=round_no, records=list(records))
        for record in report.records:
            self._emit(format_record(record), logging.INFO if record.status == "ok" else logging.WARNING)
        self._emit(format_summary(report), logging.INFO if report.healthy else logging.WARNING)
        return report

    def _start_round(self) -> None:
        task = asyncio.create_task(self.run_round())
        self._rounds.add(task)
        task.add_done_callback(self._round_done)

    def _round_done(self, task: asyncio.Task) -> None:
        self._rounds.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Health round failed: %s", task.exception())

    async def _wait(self, delay: float, stop_event: asyncio.Event) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start a round every interval until stop_event is set."""
        interval = self._config.interval_seconds
        await self._client.start()
        if self._sink is not None:
            self._sink.start()
        self._emit(f"Health monitor started - checking {len(self._services)} services every {interval:g}s")
        next_tick = self._clock()
        try:
            while not stop_event.is_set():
                self._start_round()
                next_tick += interval
                await self._wait(max(0.0, next_tick - self._clock()), stop_event)
        finally:
            for task in list(self._rounds):
                task.cancel()
            await asyncio.gather(*self._rounds, return_exceptions=True)
            await self._client.stop()
            if self._sink is not None:
                await self._sink.close()
            logger.info("Health monitor stopped")
