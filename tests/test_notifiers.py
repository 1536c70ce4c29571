"""
tests/test_notifiers.py

Composite fan-out with per-channel failure isolation, the event history
table (bounded), the metric sink, and webhook delivery over an httpx
mock transport.
"""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import T0
from smon.models import EventRecord, MetricSample
from smon.notifiers import (
    AlertEvent,
    CompositeNotifier,
    EventHistoryNotifier,
    EventKind,
    LoggingNotifier,
    WebhookNotifier,
)
from smon.sink import SqlMetricSink, safe_write, series_key


def event(kind=EventKind.DEVICE_DOWN, entity_id="sw1", **kwargs) -> AlertEvent:
    return AlertEvent(
        kind=kind,
        entity_kind="device",
        entity_id=entity_id,
        name=kwargs.pop("name", "Core switch"),
        message=kwargs.pop("message", 'Device "Core switch" is offline'),
        timestamp=kwargs.pop("timestamp", T0),
        host="10.0.0.2",
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Events and fan-out
# ---------------------------------------------------------------------------

class TestAlertEvent:

    def test_severity(self):
        assert event(EventKind.DEVICE_DOWN).severity == "error"
        assert event(EventKind.FLAPPING_START).severity == "warning"
        assert event(EventKind.DEVICE_UP).severity == "info"

    def test_payload_is_json_ready(self):
        payload = event(details={"silent_seconds": 400}).to_payload()
        assert payload["kind"] == "device_down"
        assert payload["severity"] == "error"
        assert payload["timestamp"] == T0.isoformat()
        assert payload["details"] == {"silent_seconds": 400}
        json.dumps(payload)


class TestCompositeNotifier:

    def test_fans_out_in_order(self, notifier):
        seen = []

        class Tagger:
            def notify(self, ev):
                seen.append("tagger")

        composite = CompositeNotifier([Tagger(), notifier])
        composite.notify(event())
        assert seen == ["tagger"]
        assert notifier.kinds == ["device_down"]

    def test_failing_channel_does_not_block_others(self, notifier):
        class Broken:
            def notify(self, ev):
                raise RuntimeError("smtp down")

        composite = CompositeNotifier([Broken()])
        composite.add(notifier)
        composite.notify(event())
        assert notifier.kinds == ["device_down"]

    def test_logging_notifier(self, caplog):
        with caplog.at_level("INFO", logger="smon.notifiers"):
            LoggingNotifier().notify(event())
        assert "[ALERT] device_down" in caplog.text


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class TestEventHistory:

    def test_stores_event(self, db_factory):
        EventHistoryNotifier(db_factory).notify(event(details={"silent_seconds": 400}))
        with db_factory() as db:
            (row,) = db.query(EventRecord).all()
        assert (row.kind, row.severity, row.source) == ("device_down", "error", "Core switch")
        assert row.details["entity_id"] == "sw1"
        assert row.details["silent_seconds"] == 400

    def test_keeps_most_recent(self, db_factory):
        history = EventHistoryNotifier(db_factory, max_events=3)
        for i in range(5):
            history.notify(event(entity_id=f"d{i}"))
        with db_factory() as db:
            rows = db.query(EventRecord).order_by(EventRecord.id).all()
        assert [r.details["entity_id"] for r in rows] == ["d2", "d3", "d4"]


class TestSqlMetricSink:

    def test_writes_sample(self, db_factory):
        tags = {"device": "sw1", "interface": "ge-0/0/1", "direction": "rx"}
        SqlMetricSink(db_factory).write("snmp_metric", tags, {"value": 10_295}, T0)
        with db_factory() as db:
            (row,) = db.query(MetricSample).all()
        assert row.measurement == "snmp_metric"
        assert row.tags == tags
        assert row.fields == {"value": 10_295}
        assert row.series == "snmp_metric|device=sw1,direction=rx,interface=ge-0/0/1"

    def test_series_key_ignores_tag_order(self):
        assert series_key("m", {"b": "2", "a": "1"}) == series_key("m", {"a": "1", "b": "2"})

    def test_safe_write_swallows_sink_errors(self):
        class Broken:
            def write(self, *args):
                raise OSError("disk full")

        assert safe_write(Broken(), "snmp_metric", {}, {"value": 1}, T0) is False

    def test_safe_write_success(self, sink):
        assert safe_write(sink, "ping_metric", {"target_id": "1"}, {"alive": True}, T0) is True
        assert sink.writes == [("ping_metric", {"target_id": "1"}, {"alive": True}, T0)]


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

def webhook_with(handler, **kwargs) -> WebhookNotifier:
    hook = WebhookNotifier("https://hooks.example.test/smon", retry_delay=0, **kwargs)
    hook._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return hook


class TestWebhookNotifier:

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        hook = webhook_with(handler)
        assert await hook.send(event()) is True
        await hook.aclose()
        assert received[0]["kind"] == "device_down"
        assert received[0]["entity_id"] == "sw1"

    @pytest.mark.asyncio
    async def test_retries_then_gives_up(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500)

        hook = webhook_with(handler, max_retries=3)
        assert await hook.send(event()) is False
        await hook.aclose()
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_recovers_after_transport_error(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200)

        hook = webhook_with(handler)
        assert await hook.send(event()) is True
        await hook.aclose()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_notify_schedules_background_delivery(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        hook = webhook_with(handler)
        hook.notify(event())
        await hook.aclose()
        assert len(received) == 1
