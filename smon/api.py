"""
FastAPI application exposing the monitoring state.

Endpoints
---------
- GET /health             -> Simple liveness check
- GET /samples/latest     -> Latest sample per series (optionally one measurement)
- GET /devices/status     -> Current liveness of every polled device
- GET /devices/discovered -> Interfaces found on devices without a selection
- GET /probes/status      -> Current liveness of every probe target
- GET /flapping/status    -> Flap history summary per entity
- GET /events             -> Most recent alert events

The status endpoints read the in-process `Monitor` held in `app.state`.
It is started by the app lifespan when RUN_MONITOR_IN_API is set; otherwise
those endpoints return empty lists and only the database-backed endpoints
have data (written by `python -m smon.collector`).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from sqlalchemy import func
from sqlalchemy.orm import Session

from smon.config import settings, setup_logging
from smon.database import SessionLocal
from smon.models import EventRecord, MetricSample
from smon.schemas import DiscoveredOut, EventOut, FlappingOut, LivenessOut, MetricSampleOut
from smon.status import EntityKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: optionally run the monitor inside the API process
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.monitor = None
    task = None
    if settings.run_monitor_in_api:
        from smon.service import Monitor

        setup_logging(settings)
        monitor = Monitor.from_settings(settings)
        app.state.monitor = monitor
        task = asyncio.create_task(monitor.run())
        logger.info("Monitor started inside the API process")
    try:
        yield
    finally:
        if task is not None:
            app.state.monitor.stop()
            await task


app = FastAPI(
    title="SMon Status API",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_db() -> Session:
    """
    FastAPI dependency that provides a SQLAlchemy session.

    The session is created at the start of the request and closed at the end.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_status(request: Request):
    """Status engine of the in-process monitor, or None."""
    monitor = getattr(request.app.state, "monitor", None)
    return monitor.status if monitor is not None else None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
def health(status=Depends(get_status)) -> dict:
    """Simple liveness endpoint used for health checks."""
    return {"status": "ok", "monitor": status is not None}


@app.get("/samples/latest", response_model=List[MetricSampleOut])
def get_latest_samples(
    measurement: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Return the latest sample per series.

    1. Build a subquery that finds `max(ts)` per `series`.
    2. Join it back to `MetricSample` to get the full rows.
    3. Order by series for a stable output.
    """
    subq = db.query(
        MetricSample.series,
        func.max(MetricSample.ts).label("max_ts"),
    )
    if measurement:
        subq = subq.filter(MetricSample.measurement == measurement)
    subq = subq.group_by(MetricSample.series).subquery()

    q = (
        db.query(MetricSample)
        .join(
            subq,
            (MetricSample.series == subq.c.series)
            & (MetricSample.ts == subq.c.max_ts),
        )
        .order_by(MetricSample.series, MetricSample.id)
    )
    return q.all()


@app.get("/devices/status", response_model=List[LivenessOut])
def get_device_status(status=Depends(get_status)):
    if status is None:
        return []
    return status.liveness_view(EntityKind.DEVICE)


@app.get("/devices/discovered", response_model=List[DiscoveredOut])
def get_discovered_interfaces(request: Request):
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        return []
    discovered = monitor.scheduler.discovered
    return [
        {"device_id": device_id, "interfaces": interfaces}
        for device_id, interfaces in sorted(discovered.items())
    ]


@app.get("/probes/status", response_model=List[LivenessOut])
def get_probe_status(status=Depends(get_status)):
    if status is None:
        return []
    return status.liveness_view(EntityKind.PROBE)


@app.get("/flapping/status", response_model=List[FlappingOut])
def get_flapping_status(status=Depends(get_status)):
    """Entities with a flap history; currently flapping ones first."""
    if status is None:
        return []
    rows = status.flapping_view()
    return sorted(rows, key=lambda r: (not r["is_flapping"], r["kind"], r["id"]))


@app.get("/events", response_model=List[EventOut])
def get_events(
    limit: int = Query(default=100, ge=1, le=1000),
    kind: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Most recent alert events, newest first."""
    q = db.query(EventRecord)
    if kind:
        q = q.filter(EventRecord.kind == kind)
    return q.order_by(EventRecord.id.desc()).limit(limit).all()
