"""
Reachability probe loop.

`ProbeMonitor` pings every enabled probe target concurrently on its own
interval, writes a `ping_metric` sample per result and hands the result to
the status engine (up/down, timeout, high latency, flapping).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from smon.collector import wait_or_stop
from smon.devices import DeviceSource
from smon.prober import Prober
from smon.schemas import ProbeResult, ProbeTarget
from smon.sink import MetricSink, safe_write
from smon.status import StatusEngine, utcnow

logger = logging.getLogger(__name__)


class ProbeMonitor:
    def __init__(
        self,
        source: DeviceSource,
        prober: Prober,
        sink: MetricSink,
        status: StatusEngine,
        interval_seconds: float = 30,
        timeout_seconds: float = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.prober = prober
        self.sink = sink
        self.status = status
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    async def probe_target(self, target: ProbeTarget) -> ProbeResult:
        try:
            return await self.prober.probe(target.host, self.timeout_seconds)
        except Exception as exc:
            logger.error("[%s] Probe of %s failed: %s", target.id, target.host, exc)
            return ProbeResult(alive=False, latency_ms=0.0, packet_loss_percent=100.0)

    async def probe_once(self) -> Dict[str, ProbeResult]:
        """Probe all enabled targets once. Returns results keyed by target id."""
        targets = [t for t in self.source.probe_targets() if t.enabled]
        if not targets:
            return {}

        results = await asyncio.gather(*(self.probe_target(t) for t in targets))
        now = self.clock()
        for target, result in zip(targets, results):
            self.record(target, result, now)
        return {t.id: r for t, r in zip(targets, results)}

    def record(self, target: ProbeTarget, result: ProbeResult, now: Optional[datetime] = None) -> None:
        now = now or self.clock()
        safe_write(
            self.sink,
            "ping_metric",
            {"target_id": target.id, "target_name": target.name, "metric": "ping"},
            {
                "latency": result.latency_ms,
                "packet_loss": result.packet_loss_percent,
                "alive": result.alive,
            },
            now,
        )
        try:
            self.status.probe_observed(target, result, now)
        except Exception:
            logger.exception("[%s] Status update failed", target.id)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Probing started, interval %ss", self.interval_seconds)
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            started = loop.time()
            try:
                await self.probe_once()
            except Exception:
                logger.exception("Probe cycle failed")
            if await wait_or_stop(stop, self.interval_seconds - (loop.time() - started)):
                break
