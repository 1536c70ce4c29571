"""
tests/conftest.py

Shared fakes for the monitoring core: a scripted SNMP session, an in-memory
device source, a recording sink and a recording notifier. Everything runs
in memory; no network, no ping binary, no database file.
"""

from __future__ import annotations

import os

# Must be set before smon.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from smon.database import make_session_factory
from smon.schemas import Device, Interface, ProbeTarget
from smon.snmp_client import SnmpError


T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeSession:
    """SNMP session answering from a dict; OIDs in `errors` raise SnmpError."""

    def __init__(self, values: Optional[Dict[str, Any]] = None, down: bool = False) -> None:
        self.values: Dict[str, Any] = dict(values or {})
        self.errors: set = set()
        self.down = down
        self.requests: List[str] = []
        self.closed = False

    async def get(self, oids: Sequence[str]) -> List[Any]:
        self.requests.extend(oids)
        if self.down:
            raise SnmpError("No SNMP response received before timeout")
        for oid in oids:
            if oid in self.errors:
                raise SnmpError(f"genErr at {oid}")
        return [self.values.get(oid) for oid in oids]

    async def walk(self, root: str):
        if self.down:
            raise SnmpError("No SNMP response received before timeout")
        for oid in sorted(self.values):
            if oid.startswith(root + "."):
                yield oid, self.values[oid]

    def close(self) -> None:
        self.closed = True


class FakeSource:
    def __init__(self, devices=None, targets=None) -> None:
        self._devices: Dict[str, Device] = {d.id: d for d in (devices or [])}
        self._targets: List[ProbeTarget] = list(targets or [])
        self.vendor_updates: List[tuple] = []

    def devices(self) -> List[Device]:
        return list(self._devices.values())

    def probe_targets(self) -> List[ProbeTarget]:
        return list(self._targets)

    def update_vendor(self, device_id, vendor) -> None:
        self.vendor_updates.append((device_id, vendor))
        device = self._devices[device_id]
        self._devices[device_id] = device.model_copy(update={"vendor": vendor})


class RecordingSink:
    def __init__(self) -> None:
        self.writes: List[tuple] = []

    def write(self, measurement, tags, fields, timestamp) -> None:
        self.writes.append((measurement, dict(tags), dict(fields), timestamp))

    def of(self, measurement: str, **tags) -> List[tuple]:
        return [
            w for w in self.writes
            if w[0] == measurement and all(w[1].get(k) == v for k, v in tags.items())
        ]


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Any] = []

    def notify(self, event) -> None:
        self.events.append(event)

    @property
    def kinds(self) -> List[str]:
        return [e.kind.value for e in self.events]


def make_device(
    device_id: str = "sw1",
    vendor: Optional[str] = "standard",
    interfaces=((1, "ge-0/0/1"),),
    **kwargs,
) -> Device:
    return Device(
        id=device_id,
        name=kwargs.pop("name", device_id.upper()),
        host=kwargs.pop("host", "10.0.0.1"),
        vendor=vendor,
        interfaces=[Interface(index=i, name=n) for i, n in interfaces],
        **kwargs,
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def db_factory():
    """Fresh in-memory database per test."""
    engine, factory = make_session_factory("sqlite://")
    yield factory
    engine.dispose()
