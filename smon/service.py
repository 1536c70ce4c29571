"""
Wiring of the monitoring core.

`Monitor.from_settings()` builds every component from `Settings`:

    FileDeviceSource -> PollScheduler -> CounterNormalizer -> SqlMetricSink
                     -> ProbeMonitor  -> PingProber
    StatusEngine -> CompositeNotifier(logging, event history, [webhook])

`Monitor.run()` drives the poll loop, the probe loop, the device timeout
sweep and the counter cleanup concurrently until `stop()` is called.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import sessionmaker

from smon.collector import PollScheduler
from smon.config import Settings
from smon.counters import CounterNormalizer
from smon.devices import FileDeviceSource
from smon.notifiers import (
    CompositeNotifier,
    EventHistoryNotifier,
    LoggingNotifier,
    WebhookNotifier,
)
from smon.prober import PingProber
from smon.probes import ProbeMonitor
from smon.sink import SqlMetricSink
from smon.snmp_client import SessionPool, session_factory
from smon.status import AlertPolicy, FlappingPolicy, StatusEngine

logger = logging.getLogger(__name__)


class Monitor:
    def __init__(
        self,
        scheduler: PollScheduler,
        probes: ProbeMonitor,
        status: StatusEngine,
        sessions: SessionPool,
        sweep_seconds: float = 60,
        cleanup_seconds: float = 6 * 60 * 60,
        webhook: Optional[WebhookNotifier] = None,
    ) -> None:
        self.scheduler = scheduler
        self.probes = probes
        self.status = status
        self.sessions = sessions
        self.sweep_seconds = sweep_seconds
        self.cleanup_seconds = cleanup_seconds
        self.webhook = webhook
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory_: Optional[sessionmaker] = None,
    ) -> "Monitor":
        source = FileDeviceSource(settings.devices_file)
        sink = SqlMetricSink(session_factory_)

        notifier = CompositeNotifier([
            LoggingNotifier(),
            EventHistoryNotifier(session_factory_),
        ])
        webhook = None
        if settings.webhook_url:
            webhook = WebhookNotifier(settings.webhook_url)
            notifier.add(webhook)
            logger.info("Webhook notifications enabled: %s", settings.webhook_url)

        status = StatusEngine(
            notifier,
            flapping=FlappingPolicy.from_settings(settings),
            alerts=AlertPolicy.from_settings(settings),
            device_timeout=timedelta(seconds=settings.device_timeout_seconds),
        )
        sessions = SessionPool(session_factory(
            settings.use_snmp_stub,
            port=settings.snmp_port,
            timeout=settings.snmp_timeout_seconds,
            retries=settings.snmp_retries,
        ))
        scheduler = PollScheduler(
            source,
            sessions,
            CounterNormalizer(
                interval_seconds=settings.poll_interval_seconds,
                state_limit=settings.counter_state_limit,
            ),
            sink,
            status,
            interval_seconds=settings.poll_interval_seconds,
        )
        probes = ProbeMonitor(
            source,
            PingProber(count=settings.probe_count),
            sink,
            status,
            interval_seconds=settings.probe_interval_seconds,
            timeout_seconds=settings.probe_timeout_seconds,
        )
        return cls(
            scheduler,
            probes,
            status,
            sessions,
            sweep_seconds=settings.timeout_sweep_seconds,
            cleanup_seconds=settings.counter_cleanup_interval_seconds,
            webhook=webhook,
        )

    def stop(self) -> None:
        logger.info("Stopping monitor")
        self._stop.set()

    async def run(self) -> None:
        """Run all loops until `stop()` is called, then release resources."""
        self._stop.clear()
        try:
            await asyncio.gather(
                self.scheduler.run(self._stop),
                self.probes.run(self._stop),
                self.scheduler.sweep_timeouts(self._stop, self.sweep_seconds),
                self.scheduler.cleanup_counters(self._stop, self.cleanup_seconds),
            )
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        self.sessions.close()
        if self.webhook is not None:
            await self.webhook.aclose()
