"""
Background collector process.

This module:
- polls every enabled device on a fixed interval (`PollScheduler`)
- turns raw octet counters into deltas through the counter normalizer
- reads CPU load with vendor-specific OIDs
- detects the vendor of new devices, discovering interfaces where none are selected
- writes every normalized sample to the metric sink
- reports device liveness to the status engine

Within a cycle all devices, and all queries of one device, run
concurrently. One cycle timestamp is captured up front and stamped on every
sample of that cycle.

Run it as:

    $env:USE_SNMP_STUB="1"
    python -m smon.collector

or, against real devices listed in DEVICES_FILE:

    python -m smon.collector
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from smon.counters import CounterKey, CounterNormalizer, Direction
from smon.devices import DeviceSource, discover_device, read_vendor, store_vendor
from smon.schemas import Device, Interface
from smon.sink import MetricSink, safe_write
from smon.snmp_client import SessionPool, SnmpError, as_float, as_number
from smon.status import StatusEngine, utcnow
from smon.vendors import (
    GENERIC_CPU_OID,
    Metric,
    normalize_cpu,
    resolve,
    resolve_cpu_identifier,
)

logger = logging.getLogger(__name__)

# (64-bit metric, 32-bit fallback metric) per direction
COUNTER_METRICS = {
    Direction.RX: (Metric.IF_HC_IN_OCTETS, Metric.IF_IN_OCTETS),
    Direction.TX: (Metric.IF_HC_OUT_OCTETS, Metric.IF_OUT_OCTETS),
}


async def wait_or_stop(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`; return True if `stop` was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(seconds, 0))
    except asyncio.TimeoutError:
        return False
    return True


@dataclass
class DevicePoll:
    """Per-device context for one cycle."""

    device: Device
    session: Any
    timestamp: datetime
    answered: bool = False


class PollScheduler:
    def __init__(
        self,
        source: DeviceSource,
        sessions: SessionPool,
        normalizer: CounterNormalizer,
        sink: MetricSink,
        status: StatusEngine,
        interval_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.sessions = sessions
        self.normalizer = normalizer
        self.sink = sink
        self.status = status
        self.interval_seconds = interval_seconds
        self.clock = clock
        # Counter width last used per stream; a change forces a re-baseline
        self._widths: Dict[CounterKey, int] = {}
        # Interfaces found on devices polled without a selection
        self.discovered: Dict[str, List[Interface]] = {}

    # -- cycle ---------------------------------------------------------------

    async def poll_once(self) -> datetime:
        """Poll all enabled devices once. Returns the cycle timestamp."""
        timestamp = self.clock()
        devices = [d for d in self.source.devices() if d.enabled]
        logger.debug("Starting poll of %d devices at %s", len(devices), timestamp.isoformat())

        results = await asyncio.gather(
            *(self.poll_device(device, timestamp) for device in devices),
            return_exceptions=True,
        )
        for device, result in zip(devices, results):
            if isinstance(result, BaseException):
                logger.error("[%s] Poll failed: %r", device.id, result, exc_info=result)
        return timestamp

    async def poll_device(self, device: Device, timestamp: datetime) -> bool:
        """Run every query for one device. Returns True if the device answered."""
        self.status.device_attempted(device, timestamp)
        try:
            ctx = await self._run_queries(device, timestamp)
        finally:
            self.status.device_finished(device)

        if ctx.answered:
            self.status.device_responded(ctx.device, timestamp)
            safe_write(
                self.sink,
                "device_status",
                {"device": device.id, "device_name": device.name},
                {"alive": True},
                timestamp,
            )
        else:
            logger.warning("[%s] No response from %s this cycle", device.id, device.host)
        return ctx.answered

    async def _run_queries(self, device: Device, timestamp: datetime) -> DevicePoll:
        ctx = DevicePoll(device=device, session=self.sessions.get(device), timestamp=timestamp)

        if device.vendor is None:
            await self._detect_vendor(ctx)

        tasks = [self.poll_interface(ctx, iface) for iface in ctx.device.interfaces]
        if not tasks:
            logger.info("[%s] No interfaces selected, skipping traffic polling", device.id)
        tasks.append(self.poll_cpu(ctx))

        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, BaseException):
                logger.error("[%s] Query failed: %r", device.id, outcome, exc_info=outcome)
        return ctx

    async def _detect_vendor(self, ctx: DevicePoll) -> None:
        """
        Classify a device whose vendor was never detected. Devices without
        selected interfaces get a full discovery so the interfaces they
        offer are known.
        """
        device = ctx.device
        if device.interfaces:
            try:
                vendor = await read_vendor(ctx.session)
            except SnmpError as exc:
                logger.info("[%s] Vendor detection failed: %s", device.id, exc)
                return
            ctx.answered = True
            if vendor is None:
                return
            store_vendor(self.source, device.id, vendor)
        else:
            result = await discover_device(ctx.session, host=device.host, source=self.source, device_id=device.id)
            ctx.answered = ctx.answered or result.answered
            if result.interfaces:
                self.discovered[device.id] = result.interfaces
                logger.info(
                    "[%s] Interfaces available for selection: %s",
                    device.id,
                    ", ".join(f"{i.index}:{i.name}" for i in result.interfaces),
                )
            vendor = result.vendor
            if vendor is None:
                return
        ctx.device = device.model_copy(update={"vendor": vendor})
        logger.info("[%s] Detected vendor %s", device.id, vendor.value)

    async def _query(self, ctx: DevicePoll, oid: str) -> Optional[Any]:
        try:
            (value,) = await ctx.session.get([oid])
        except SnmpError as exc:
            logger.warning("[%s] SNMP error for %s: %s", ctx.device.id, oid, exc)
            return None
        ctx.answered = True
        return value

    # -- traffic -------------------------------------------------------------

    async def poll_interface(self, ctx: DevicePoll, iface: Interface) -> None:
        await asyncio.gather(
            self.poll_counter(ctx, iface, Direction.RX),
            self.poll_counter(ctx, iface, Direction.TX),
        )

    async def poll_counter(self, ctx: DevicePoll, iface: Interface, direction: Direction) -> Optional[int]:
        """
        Read one octet counter, preferring the 64-bit column and falling
        back to the vendor (or standard) 32-bit column. Returns the delta
        written to the sink, or None if no usable value came back.
        """
        device = ctx.device
        hc_metric, metric = COUNTER_METRICS[direction]

        value: Optional[int] = None
        bits = 64
        hc_oid = resolve(device.vendor, hc_metric)
        if hc_oid:
            value = as_number(await self._query(ctx, f"{hc_oid}.{iface.index}"))

        if value is None:
            oid = resolve(device.vendor, metric)
            if oid is None:
                logger.warning("[%s] %s not supported, skipping %s", device.id, metric.value, iface.name)
                return None
            logger.debug("[%s] 64-bit %s unavailable for %s, using 32-bit", device.id, direction.value, iface.name)
            value = as_number(await self._query(ctx, f"{oid}.{iface.index}"))
            bits = 32
            if value is None:
                logger.warning("[%s] No %s counter for %s this cycle", device.id, direction.value, iface.name)
                return None

        key = CounterKey(device.id, iface.index, direction)
        if self._widths.get(key, bits) != bits:
            logger.info("[%s] Counter width for %s %s changed to %d bits, re-baselining",
                        device.id, iface.name, direction.value, bits)
            self.normalizer.store.discard(key)
        self._widths[key] = bits

        delta = self.normalizer.delta(key, value, bits=bits)
        safe_write(
            self.sink,
            "snmp_metric",
            {
                "device": device.id,
                "device_name": device.name,
                "interface": iface.name,
                "direction": direction.value,
                "vendor": (device.vendor.value if device.vendor else "standard"),
                "counter_bits": str(bits),
            },
            {"value": delta, "bits_per_second": delta * 8 / self.interval_seconds},
            ctx.timestamp,
        )
        logger.debug("[%s] %s %s: %d octets", device.id, direction.value.upper(), iface.name, delta)
        return delta

    # -- CPU -----------------------------------------------------------------

    async def poll_cpu(self, ctx: DevicePoll) -> Optional[float]:
        device = ctx.device
        oid = resolve_cpu_identifier(device.vendor)
        value = as_float(await self._query(ctx, oid))

        if value is None and oid != GENERIC_CPU_OID:
            logger.info("[%s] Vendor CPU OID failed, trying generic", device.id)
            value = as_float(await self._query(ctx, GENERIC_CPU_OID))
        if value is None:
            logger.info("[%s] CPU data unavailable this cycle", device.id)
            return None

        value = normalize_cpu(device.vendor, value)
        if not 0 <= value <= 100:
            logger.warning("[%s] Invalid CPU value: %s", device.id, value)
            return None

        safe_write(
            self.sink,
            "snmp_metric",
            {
                "device": device.id,
                "device_name": device.name,
                "metric": "cpu",
                "vendor": (device.vendor.value if device.vendor else "standard"),
            },
            {"value": value},
            ctx.timestamp,
        )
        self.status.cpu_observed(device, value, ctx.timestamp)
        return value

    # -- loops ---------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Poll on a fixed interval until `stop` is set."""
        logger.info("Polling started, interval %ss", self.interval_seconds)
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            started = loop.time()
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll cycle failed")
            if await wait_or_stop(stop, self.interval_seconds - (loop.time() - started)):
                break

    async def sweep_timeouts(self, stop: asyncio.Event, every: float) -> None:
        """Mark silent devices down and re-evaluate flapping every `every` seconds."""
        while not await wait_or_stop(stop, every):
            try:
                self.status.sweep_device_timeouts(self.source.devices(), self.clock())
            except Exception:
                logger.exception("Timeout sweep failed")

    async def cleanup_counters(self, stop: asyncio.Event, every: float) -> None:
        """Bound counter state memory every `every` seconds."""
        while not await wait_or_stop(stop, every):
            self.prune_counters()

    def prune_counters(self) -> bool:
        """Run counter cleanup; forget stream widths along with the values."""
        if not self.normalizer.cleanup():
            return False
        self._widths.clear()
        return True


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def run_forever() -> None:
    from smon.config import settings
    from smon.service import Monitor

    monitor = Monitor.from_settings(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await monitor.run()


def main() -> None:
    """
    Main collector loop: poll, sweep timeouts, probe targets, until signalled.
    """
    from smon.config import settings, setup_logging

    setup_logging(settings)
    logger.info("Starting SMon collector")
    logger.info("Poll interval: %s seconds", settings.poll_interval_seconds)
    logger.info("Probe interval: %s seconds", settings.probe_interval_seconds)
    asyncio.run(run_forever())


if __name__ == "__main__":
    main()
