"""
Alert delivery.

The status engine emits typed `AlertEvent`s to a single `Notifier`. In
practice that is a `CompositeNotifier` holding an ordered list of channels:

- LoggingNotifier:      writes the alert to the application log
- EventHistoryNotifier: appends it to the `events` table
- WebhookNotifier:      POSTs it as JSON to an HTTP endpoint (httpx)

Each channel fails on its own. A broken channel is logged and skipped; it
never affects the other channels or the monitoring state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx
from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from smon.models import EventRecord

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    DEVICE_UP = "device_up"
    DEVICE_DOWN = "device_down"
    PROBE_UP = "probe_up"
    PROBE_DOWN = "probe_down"
    PROBE_TIMEOUT = "probe_timeout"
    PROBE_HIGH_LATENCY = "probe_high_latency"
    HIGH_CPU = "high_cpu"
    FLAPPING_START = "flapping_start"
    FLAPPING_STOP = "flapping_stop"


SEVERITY: Dict[EventKind, str] = {
    EventKind.DEVICE_UP: "info",
    EventKind.DEVICE_DOWN: "error",
    EventKind.PROBE_UP: "info",
    EventKind.PROBE_DOWN: "error",
    EventKind.PROBE_TIMEOUT: "warning",
    EventKind.PROBE_HIGH_LATENCY: "warning",
    EventKind.HIGH_CPU: "warning",
    EventKind.FLAPPING_START: "warning",
    EventKind.FLAPPING_STOP: "info",
}


@dataclass
class AlertEvent:
    kind: EventKind
    entity_kind: str
    entity_id: str
    name: str
    message: str
    timestamp: datetime
    host: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return SEVERITY[self.kind]

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["severity"] = self.severity
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class Notifier(Protocol):
    def notify(self, event: AlertEvent) -> None:
        ...


class CompositeNotifier:
    """Fans an event out to every registered notifier, in order."""

    def __init__(self, notifiers: Optional[List[Notifier]] = None) -> None:
        self.notifiers: List[Notifier] = list(notifiers or [])

    def add(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def notify(self, event: AlertEvent) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(event)
            except Exception:
                logger.exception(
                    "Notifier %s failed for %s", type(notifier).__name__, event.kind.value
                )


class LoggingNotifier:
    _LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

    def notify(self, event: AlertEvent) -> None:
        logger.log(
            self._LEVELS.get(event.severity, logging.INFO),
            "[ALERT] %s: %s",
            event.kind.value,
            event.message,
        )


class EventHistoryNotifier:
    """Keeps the most recent `max_events` alerts in the `events` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, max_events: int = 10_000) -> None:
        if session_factory is None:
            from smon.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self.max_events = max_events

    def notify(self, event: AlertEvent) -> None:
        record = EventRecord(
            ts=event.timestamp,
            kind=event.kind.value,
            severity=event.severity,
            source=event.name,
            message=event.message,
            details={
                "entity_kind": event.entity_kind,
                "entity_id": event.entity_id,
                "host": event.host,
                **event.details,
            },
        )
        with self._session_factory() as db:
            db.add(record)
            db.flush()
            newest = db.scalar(select(func.max(EventRecord.id)))
            if newest is not None and newest > self.max_events:
                db.execute(delete(EventRecord).where(EventRecord.id <= newest - self.max_events))
            db.commit()


class WebhookNotifier:
    """
    POSTs each event as JSON to `endpoint`.

    Delivery runs as a background task on the running event loop so a slow
    endpoint never holds up the status engine. Without a running loop the
    event is sent synchronously.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client (lazy init)."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def notify(self, event: AlertEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._send_once_and_close(event))
            return
        task = loop.create_task(self.send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_once_and_close(self, event: AlertEvent) -> None:
        try:
            await self.send(event)
        finally:
            await self.aclose()

    async def send(self, event: AlertEvent) -> bool:
        """Send one event, retrying on transport and HTTP errors."""
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = await self.client.post(
                    self.endpoint,
                    json=event.to_payload(),
                    headers={"User-Agent": "smon"},
                )
                response.raise_for_status()
                logger.debug("Webhook delivered %s to %s", event.kind.value, self.endpoint)
                return True
            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    "Webhook HTTP %s (attempt %d/%d)",
                    e.response.status_code, attempt + 1, self.max_retries,
                )
            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    "Webhook request error: %s (attempt %d/%d)",
                    e, attempt + 1, self.max_retries,
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay)

        logger.error("Webhook failed after %d attempts: %s", self.max_retries, last_error)
        return False

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
