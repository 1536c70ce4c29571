"""
tests/test_api.py

FastAPI route tests using TestClient (synchronous).
The DB dependency is overridden with a fresh in-memory database and the
status endpoints read a StatusEngine attached as the in-process monitor.
"""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from conftest import T0, make_device
from smon.api import app, get_db
from smon.notifiers import AlertEvent, EventHistoryNotifier, EventKind
from smon.schemas import Interface, ProbeResult, ProbeTarget
from smon.sink import SqlMetricSink
from smon.status import EntityKey, EntityKind, Status, StatusEngine


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def client(db_factory):
    def override_db():
        db = db_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.state.monitor = None
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.monitor = None


@pytest.fixture
def engine(notifier) -> StatusEngine:
    status = StatusEngine(notifier, clock=lambda: T0)
    app.state.monitor = SimpleNamespace(status=status)
    return status


# ---------------------------------------------------------------------------
# Health and samples
# ---------------------------------------------------------------------------

class TestHealth:

    def test_ok_without_monitor(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "monitor": False}

    def test_reports_monitor(self, client, engine):
        assert client.get("/health").json()["monitor"] is True


class TestLatestSamples:

    def seed(self, db_factory):
        sink = SqlMetricSink(db_factory)
        rx = {"device": "sw1", "interface": "ge-0/0/1", "direction": "rx"}
        sink.write("snmp_metric", rx, {"value": 0}, T0)
        sink.write("snmp_metric", rx, {"value": 10_295}, T0 + timedelta(minutes=5))
        sink.write("ping_metric", {"target_id": "1"}, {"alive": True, "latency": 11.0}, T0)

    def test_latest_per_series(self, client, db_factory):
        self.seed(db_factory)
        rows = client.get("/samples/latest").json()
        assert len(rows) == 2
        snmp = next(r for r in rows if r["measurement"] == "snmp_metric")
        assert snmp["fields"] == {"value": 10_295}
        assert snmp["tags"]["direction"] == "rx"

    def test_filter_by_measurement(self, client, db_factory):
        self.seed(db_factory)
        rows = client.get("/samples/latest", params={"measurement": "ping_metric"}).json()
        assert [r["measurement"] for r in rows] == ["ping_metric"]

    def test_empty(self, client):
        assert client.get("/samples/latest").json() == []


# ---------------------------------------------------------------------------
# Status views
# ---------------------------------------------------------------------------

class TestStatusViews:

    def test_empty_without_monitor(self, client):
        for path in ("/devices/status", "/devices/discovered", "/probes/status", "/flapping/status"):
            assert client.get(path).json() == []

    def test_device_status(self, client, engine):
        engine.device_responded(make_device(), T0)
        (row,) = client.get("/devices/status").json()
        assert row["id"] == "sw1"
        assert row["name"] == "SW1"
        assert row["alive"] is True

    def test_probe_status(self, client, engine):
        target = ProbeTarget(id=7, name="dns", host="8.8.8.8")
        engine.probe_observed(target, ProbeResult(alive=True, latency_ms=3.5), T0)
        (row,) = client.get("/probes/status").json()
        assert row["id"] == "7"
        assert row["latency_ms"] == 3.5

    def test_flapping_status_lists_flapping_first(self, client, engine):
        quiet = EntityKey(EntityKind.PROBE, "1")
        engine.observe(quiet, Status.UP, T0)
        noisy = EntityKey(EntityKind.DEVICE, "sw1")
        status = Status.UP
        engine.observe(noisy, status, T0)
        for i in range(1, 6):
            status = Status.DOWN if status is Status.UP else Status.UP
            engine.observe(noisy, status, T0 + timedelta(minutes=i))

        rows = client.get("/flapping/status").json()
        assert [(r["id"], r["is_flapping"]) for r in rows] == [("sw1", True), ("1", False)]
        assert rows[0]["transitions"] == 5

    def test_discovered_interfaces(self, client):
        discovered = {"sw2": [Interface(index=2, name="Gi0/2")], "sw1": [Interface(index=1, name="Gi0/1")]}
        app.state.monitor = SimpleNamespace(scheduler=SimpleNamespace(discovered=discovered))
        rows = client.get("/devices/discovered").json()
        assert [r["device_id"] for r in rows] == ["sw1", "sw2"]
        assert rows[0]["interfaces"] == [{"index": 1, "name": "Gi0/1"}]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestEvents:

    def seed(self, db_factory, count=3):
        history = EventHistoryNotifier(db_factory)
        kinds = [EventKind.DEVICE_DOWN, EventKind.DEVICE_UP, EventKind.FLAPPING_START]
        for i in range(count):
            history.notify(AlertEvent(
                kind=kinds[i % len(kinds)],
                entity_kind="device",
                entity_id="sw1",
                name="SW1",
                message=f"event {i}",
                timestamp=T0 + timedelta(minutes=i),
            ))

    def test_newest_first(self, client, db_factory):
        self.seed(db_factory)
        rows = client.get("/events").json()
        assert [r["message"] for r in rows] == ["event 2", "event 1", "event 0"]
        assert rows[0]["severity"] == "warning"

    def test_limit(self, client, db_factory):
        self.seed(db_factory)
        rows = client.get("/events", params={"limit": 2}).json()
        assert len(rows) == 2

    def test_filter_by_kind(self, client, db_factory):
        self.seed(db_factory)
        rows = client.get("/events", params={"kind": "device_up"}).json()
        assert [r["message"] for r in rows] == ["event 1"]

    def test_invalid_limit(self, client):
        assert client.get("/events", params={"limit": 0}).status_code == 422
