"""
SQLAlchemy ORM models.

- MetricSample: one row per sink write (measurement + tags + fields)
- EventRecord:  one row per alert event (the event history)
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from smon.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricSample(Base):
    """
    One time-series point written by the monitoring core.

    Typical usage:
    - the poll scheduler normalises a counter
    - the sink creates a MetricSample
    - the API reads back the latest point per series
    """

    __tablename__ = "metric_samples"

    id = Column(Integer, primary_key=True, index=True)

    # Cycle timestamp shared by every sample of one poll cycle
    ts = Column(DateTime(timezone=True), index=True, default=_utcnow, nullable=False)

    measurement = Column(String(64), index=True, nullable=False)

    # Series identity, e.g. {"device": "sw1", "interface": "ge-0/0/1", "direction": "rx"}
    tags = Column(JSON, nullable=False, default=dict)
    # Sorted "k=v,k=v" rendering of `tags` for grouping latest-per-series
    series = Column(String(512), index=True, nullable=False)

    fields = Column(JSON, nullable=False, default=dict)


class EventRecord(Base):
    """An alert event: up/down, timeout, latency, CPU, flapping start/stop."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    ts = Column(DateTime(timezone=True), index=True, default=_utcnow, nullable=False)

    kind = Column(String(32), index=True, nullable=False)
    severity = Column(String(16), nullable=False)
    source = Column(String(128), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
