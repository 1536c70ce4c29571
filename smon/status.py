"""
Liveness and flapping state.

Every monitored entity (an SNMP device or a probe target) moves between
UNKNOWN, UP and DOWN. `StatusEngine` owns three state stores:

- LivenessStore: current alive flag, last check time, last latency/loss
- FlapStore:     recent UP/DOWN transitions and the derived flapping flag
- AlertStore:    whether a "flapping started" alert is currently open

An entity is flapping when the number of transitions inside a rolling
window reaches a threshold (separate window/threshold for devices and probe
targets). While an entity flaps, its ordinary alerts (up, down, timeout,
high latency) are suppressed; only "flapping started" / "flapping stopped"
are sent. Liveness is updated either way.

Methods take an explicit `now` so tests can drive time; it defaults to the
engine clock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

from smon.notifiers import AlertEvent, EventKind, Notifier
from smon.schemas import Device, ProbeResult, ProbeTarget

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    DEVICE = "device"
    PROBE = "probe"


class Status(str, Enum):
    UNKNOWN = "unknown"
    UP = "up"
    DOWN = "down"


class EntityKey(NamedTuple):
    kind: EntityKind
    id: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# State stores
# ---------------------------------------------------------------------------

@dataclass
class LivenessState:
    alive: Optional[bool]  # None until the entity has answered once
    last_check: datetime
    latency_ms: Optional[float] = None
    packet_loss_percent: Optional[float] = None


@dataclass
class Transition:
    timestamp: datetime
    status: Status
    previous: Status


@dataclass
class FlapHistory:
    transitions: List[Transition] = field(default_factory=list)
    is_flapping: bool = False
    last_status: Status = Status.UNKNOWN


@dataclass
class ActiveAlert:
    started_at: datetime
    active: bool = True


class LivenessStore:
    def __init__(self) -> None:
        self._states: Dict[EntityKey, LivenessState] = {}

    def get(self, key: EntityKey) -> Optional[LivenessState]:
        return self._states.get(key)

    def set(self, key: EntityKey, state: LivenessState) -> None:
        self._states[key] = state

    def items(self) -> Iterator[Tuple[EntityKey, LivenessState]]:
        return iter(list(self._states.items()))


class FlapStore:
    def __init__(self) -> None:
        self._histories: Dict[EntityKey, FlapHistory] = {}

    def get(self, key: EntityKey) -> Optional[FlapHistory]:
        return self._histories.get(key)

    def get_or_create(self, key: EntityKey) -> FlapHistory:
        history = self._histories.get(key)
        if history is None:
            history = self._histories[key] = FlapHistory()
        return history

    def items(self) -> Iterator[Tuple[EntityKey, FlapHistory]]:
        return iter(list(self._histories.items()))


class AlertStore:
    def __init__(self) -> None:
        self._alerts: Dict[EntityKey, ActiveAlert] = {}

    def get(self, key: EntityKey) -> Optional[ActiveAlert]:
        return self._alerts.get(key)

    def open(self, key: EntityKey, now: datetime) -> ActiveAlert:
        alert = self._alerts[key] = ActiveAlert(started_at=now)
        return alert

    def close(self, key: EntityKey) -> None:
        alert = self._alerts.get(key)
        if alert is not None:
            alert.active = False


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FlappingPolicy:
    enabled: bool = True
    device_threshold: int = 5
    device_window: timedelta = timedelta(minutes=10)
    probe_threshold: int = 3
    probe_window: timedelta = timedelta(minutes=5)
    suppress_notifications: bool = True
    notify_on_start: bool = True
    notify_on_stop: bool = True
    retention: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings) -> "FlappingPolicy":
        return cls(
            enabled=settings.flapping_enabled,
            device_threshold=settings.flapping_device_threshold,
            device_window=timedelta(minutes=settings.flapping_device_window_minutes),
            probe_threshold=settings.flapping_probe_threshold,
            probe_window=timedelta(minutes=settings.flapping_probe_window_minutes),
            suppress_notifications=settings.flapping_suppress_notifications,
            notify_on_start=settings.notify_on_flapping_start,
            notify_on_stop=settings.notify_on_flapping_stop,
        )

    def window(self, kind: EntityKind) -> timedelta:
        return self.device_window if kind is EntityKind.DEVICE else self.probe_window

    def threshold(self, kind: EntityKind) -> int:
        return self.device_threshold if kind is EntityKind.DEVICE else self.probe_threshold


@dataclass(frozen=True)
class AlertPolicy:
    device_up: bool = True
    device_down: bool = True
    probe_up: bool = True
    probe_down: bool = True
    probe_timeout: bool = True
    probe_high_latency: bool = True
    latency_threshold_ms: float = 50
    high_cpu: bool = True
    cpu_threshold: float = 80

    @classmethod
    def from_settings(cls, settings) -> "AlertPolicy":
        return cls(
            device_up=settings.notify_on_device_up,
            device_down=settings.notify_on_device_down,
            probe_up=settings.notify_on_probe_up,
            probe_down=settings.notify_on_probe_down,
            probe_timeout=settings.notify_on_probe_timeout,
            probe_high_latency=settings.notify_on_probe_high_latency,
            latency_threshold_ms=settings.probe_latency_threshold_ms,
            high_cpu=settings.notify_on_high_cpu,
            cpu_threshold=settings.cpu_threshold,
        )

    def allows(self, kind: EventKind) -> bool:
        return {
            EventKind.DEVICE_UP: self.device_up,
            EventKind.DEVICE_DOWN: self.device_down,
            EventKind.PROBE_UP: self.probe_up,
            EventKind.PROBE_DOWN: self.probe_down,
            EventKind.PROBE_TIMEOUT: self.probe_timeout,
            EventKind.PROBE_HIGH_LATENCY: self.probe_high_latency,
            EventKind.HIGH_CPU: self.high_cpu,
        }.get(kind, True)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class StatusEngine:
    def __init__(
        self,
        notifier: Notifier,
        flapping: Optional[FlappingPolicy] = None,
        alerts: Optional[AlertPolicy] = None,
        device_timeout: timedelta = timedelta(minutes=5),
        liveness: Optional[LivenessStore] = None,
        flaps: Optional[FlapStore] = None,
        active_alerts: Optional[AlertStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.notifier = notifier
        self.flapping = flapping or FlappingPolicy()
        self.alerts = alerts or AlertPolicy()
        self.device_timeout = device_timeout
        self.liveness = liveness if liveness is not None else LivenessStore()
        self.flaps = flaps if flaps is not None else FlapStore()
        self.active_alerts = active_alerts if active_alerts is not None else AlertStore()
        self.clock = clock
        # Display name and host per entity, for messages raised by the sweep
        self._labels: Dict[EntityKey, Tuple[str, str]] = {}
        # Devices with a poll cycle currently running; the sweep leaves them alone
        self._polling: Set[EntityKey] = set()

    # -- flapping ------------------------------------------------------------

    def observe(self, key: EntityKey, status: Status, now: Optional[datetime] = None) -> bool:
        """
        Feed one observed status into the entity's flap history.

        A transition is recorded only when `status` differs from the last
        recorded one. The first observation of an entity only sets the
        baseline. Returns True when a transition was recorded.
        """
        now = now or self.clock()
        history = self.flaps.get_or_create(key)
        if history.last_status is status:
            return False
        if history.last_status is Status.UNKNOWN:
            history.last_status = status
            return False

        history.transitions.append(Transition(now, status, history.last_status))
        history.transitions = [
            t for t in history.transitions if now - t.timestamp < self.flapping.retention
        ]
        history.last_status = status
        self.reevaluate(key, now)
        return True

    def evaluate(self, key: EntityKey, now: Optional[datetime] = None) -> bool:
        """Prune the history to the active window and apply the threshold."""
        if not self.flapping.enabled:
            return False
        history = self.flaps.get(key)
        if history is None:
            return False
        now = now or self.clock()
        window = self.flapping.window(key.kind)
        history.transitions = [t for t in history.transitions if now - t.timestamp < window]
        return len(history.transitions) >= self.flapping.threshold(key.kind)

    def reevaluate(self, key: EntityKey, now: Optional[datetime] = None) -> bool:
        """Recompute `is_flapping`, announcing a change. Returns the new value."""
        now = now or self.clock()
        history = self.flaps.get_or_create(key)
        flapping = self.evaluate(key, now)
        if flapping != history.is_flapping:
            history.is_flapping = flapping
            self._flapping_changed(key, flapping, now)
        return flapping

    def reevaluate_all(self, now: Optional[datetime] = None) -> None:
        now = now or self.clock()
        for key, _ in self.flaps.items():
            self.reevaluate(key, now)

    def is_flapping(self, key: EntityKey) -> bool:
        history = self.flaps.get(key)
        return bool(history and history.is_flapping)

    def _flapping_changed(self, key: EntityKey, flapping: bool, now: datetime) -> None:
        name, host = self._label(key)
        alert = self.active_alerts.get(key)
        noun = "Device" if key.kind is EntityKind.DEVICE else "Probe target"

        if flapping:
            logger.warning("[%s] %s %s started flapping", key.id, noun, name)
            if self.flapping.notify_on_start and (alert is None or not alert.active):
                self._emit(AlertEvent(
                    kind=EventKind.FLAPPING_START,
                    entity_kind=key.kind.value,
                    entity_id=key.id,
                    name=name,
                    host=host,
                    timestamp=now,
                    message=f'{noun} "{name}" is flapping, notifications suppressed until stable',
                ))
                self.active_alerts.open(key, now)
            return

        logger.info("[%s] %s %s stopped flapping", key.id, noun, name)
        if alert is None or not alert.active:
            return
        minutes = round((now - alert.started_at).total_seconds() / 60)
        if self.flapping.notify_on_stop:
            self._emit(AlertEvent(
                kind=EventKind.FLAPPING_STOP,
                entity_kind=key.kind.value,
                entity_id=key.id,
                name=name,
                host=host,
                timestamp=now,
                message=f'{noun} "{name}" stopped flapping after {minutes} minutes',
                details={"duration_minutes": minutes},
            ))
        self.active_alerts.close(key)

    # -- alert emission ------------------------------------------------------

    def _label(self, key: EntityKey) -> Tuple[str, str]:
        return self._labels.get(key, (key.id, ""))

    def _emit(self, event: AlertEvent) -> None:
        try:
            self.notifier.notify(event)
        except Exception:
            logger.exception("Notifier failed for %s", event.kind.value)

    def _alert(
        self,
        key: EntityKey,
        kind: EventKind,
        message: str,
        now: datetime,
        details: Optional[dict] = None,
        suppressible: bool = True,
    ) -> bool:
        """Send an ordinary alert unless the entity is flapping or the kind is disabled."""
        if suppressible and self.flapping.enabled and self.flapping.suppress_notifications:
            if self.reevaluate(key, now):
                logger.info("[%s] Suppressing %s notification - entity is flapping", key.id, kind.value)
                return False
        if not self.alerts.allows(kind):
            return False
        name, host = self._label(key)
        self._emit(AlertEvent(
            kind=kind,
            entity_kind=key.kind.value,
            entity_id=key.id,
            name=name,
            host=host,
            timestamp=now,
            message=message,
            details=details or {},
        ))
        return True

    # -- devices -------------------------------------------------------------

    def device_attempted(self, device: Device, now: Optional[datetime] = None) -> None:
        """
        A poll cycle for `device` has started. The device is registered at
        its first attempt so the timeout sweep covers it, and skipped by the
        sweep until `device_finished`.
        """
        key = EntityKey(EntityKind.DEVICE, device.id)
        self._labels[key] = (device.name, device.host)
        self._polling.add(key)
        if self.liveness.get(key) is None:
            self.liveness.set(key, LivenessState(alive=None, last_check=now or self.clock()))

    def device_finished(self, device: Device) -> None:
        self._polling.discard(EntityKey(EntityKind.DEVICE, device.id))

    def device_responded(self, device: Device, now: Optional[datetime] = None) -> None:
        """Mark a device up after a poll cycle in which it answered."""
        now = now or self.clock()
        key = EntityKey(EntityKind.DEVICE, device.id)
        self._labels[key] = (device.name, device.host)
        previous = self.liveness.get(key)
        self.liveness.set(key, LivenessState(alive=True, last_check=now))
        self.observe(key, Status.UP, now)
        if previous is not None and previous.alive is False:
            self._alert(
                key,
                EventKind.DEVICE_UP,
                f'Device "{device.name}" ({device.host}) is now online',
                now,
                details={"reason": "Device responded to SNMP polling"},
            )

    def sweep_device_timeouts(self, devices: Iterable[Device], now: Optional[datetime] = None) -> List[str]:
        """
        Mark devices down whose last successful poll is older than the
        timeout; devices with a poll cycle in flight are skipped. Also
        re-evaluates every flap history so flapping that has drained out of
        its window is reported as stopped. Returns the ids of devices newly
        marked down.
        """
        now = now or self.clock()
        marked: List[str] = []
        for device in devices:
            key = EntityKey(EntityKind.DEVICE, device.id)
            state = self.liveness.get(key)
            if state is None or state.alive is False or key in self._polling:
                continue
            silent = now - state.last_check
            if silent <= self.device_timeout:
                continue
            self._labels[key] = (device.name, device.host)
            self.liveness.set(key, LivenessState(alive=False, last_check=now))
            self.observe(key, Status.DOWN, now)
            minutes = round(silent.total_seconds() / 60)
            self._alert(
                key,
                EventKind.DEVICE_DOWN,
                f'Device "{device.name}" ({device.host}) is offline - no response for {minutes} minutes',
                now,
                details={"silent_seconds": int(silent.total_seconds())},
            )
            marked.append(device.id)
        self.reevaluate_all(now)
        return marked

    def cpu_observed(self, device: Device, value: float, now: Optional[datetime] = None) -> bool:
        """Raise a high-CPU alert when `value` crosses the configured threshold."""
        if value < self.alerts.cpu_threshold:
            return False
        key = EntityKey(EntityKind.DEVICE, device.id)
        self._labels[key] = (device.name, device.host)
        return self._alert(
            key,
            EventKind.HIGH_CPU,
            f'Device "{device.name}" has high CPU usage: {value}% (threshold: {self.alerts.cpu_threshold}%)',
            now or self.clock(),
            details={"cpu": value, "threshold": self.alerts.cpu_threshold},
            suppressible=False,
        )

    # -- probe targets -------------------------------------------------------

    def probe_observed(
        self,
        target: ProbeTarget,
        result: ProbeResult,
        now: Optional[datetime] = None,
    ) -> Optional[EventKind]:
        """
        Apply one probe outcome.

        UP/DOWN come straight from `result.alive`. Timeout (100% loss) and
        high latency are threshold crossings checked only while the target
        stays alive. The first result for a target only sets the baseline.
        Returns the alert kind that was evaluated, if any.
        """
        now = now or self.clock()
        key = EntityKey(EntityKind.PROBE, target.id)
        self._labels[key] = (target.name, target.host)
        previous = self.liveness.get(key)
        self.liveness.set(key, LivenessState(
            alive=result.alive,
            last_check=now,
            latency_ms=result.latency_ms,
            packet_loss_percent=result.packet_loss_percent,
        ))
        self.observe(key, Status.UP if result.alive else Status.DOWN, now)

        if previous is None or previous.alive is None:
            return None

        label = f'Probe target "{target.name}" ({target.host})'
        details = {"latency_ms": result.latency_ms, "packet_loss": result.packet_loss_percent}
        if previous.alive and not result.alive:
            kind, message = EventKind.PROBE_DOWN, f"{label} is down"
        elif not previous.alive and result.alive:
            kind, message = EventKind.PROBE_UP, f"{label} is back online ({result.latency_ms}ms)"
        elif result.alive and result.packet_loss_percent >= 100:
            kind, message = EventKind.PROBE_TIMEOUT, f"{label} timed out"
        elif result.alive and result.latency_ms >= self.alerts.latency_threshold_ms:
            kind = EventKind.PROBE_HIGH_LATENCY
            message = (
                f"{label} has high latency: {result.latency_ms}ms "
                f"(threshold: {self.alerts.latency_threshold_ms}ms)"
            )
        else:
            return None

        self._alert(key, kind, message, now, details=details)
        return kind

    # -- views ---------------------------------------------------------------

    def liveness_view(self, kind: EntityKind) -> List[dict]:
        rows = []
        for key, state in self.liveness.items():
            if key.kind is not kind:
                continue
            rows.append({
                "id": key.id,
                "name": self._label(key)[0],
                "alive": state.alive,
                "last_check": state.last_check,
                "latency_ms": state.latency_ms,
                "packet_loss_percent": state.packet_loss_percent,
            })
        return rows

    def flapping_view(self) -> List[dict]:
        rows = []
        for key, history in self.flaps.items():
            alert = self.active_alerts.get(key)
            rows.append({
                "kind": key.kind.value,
                "id": key.id,
                "is_flapping": history.is_flapping,
                "last_status": history.last_status.value,
                "transitions": len(history.transitions),
                "alert_started": alert.started_at if alert and alert.active else None,
            })
        return rows
