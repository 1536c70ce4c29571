"""
Metric sink: the boundary to the time-series store.

The core only needs `write(measurement, tags, fields, timestamp)`. Delivery
is attempted once per sample; a failing store must never stop polling, so
callers go through `safe_write()`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Mapping, Optional, Protocol, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from smon.models import MetricSample

logger = logging.getLogger(__name__)

FieldValue = Union[int, float, bool]


class MetricSink(Protocol):
    def write(
        self,
        measurement: str,
        tags: Mapping[str, str],
        fields: Mapping[str, FieldValue],
        timestamp: datetime,
    ) -> None:
        ...


def series_key(measurement: str, tags: Mapping[str, str]) -> str:
    """Stable identity of a series: measurement plus sorted tags."""
    parts = ",".join(f"{k}={tags[k]}" for k in sorted(tags))
    return f"{measurement}|{parts}"


class SqlMetricSink:
    """Stores every sample as a `MetricSample` row."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        if session_factory is None:
            from smon.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def write(
        self,
        measurement: str,
        tags: Mapping[str, str],
        fields: Mapping[str, FieldValue],
        timestamp: datetime,
    ) -> None:
        sample = MetricSample(
            ts=timestamp,
            measurement=measurement,
            tags=dict(tags),
            series=series_key(measurement, tags),
            fields=dict(fields),
        )
        with self._session_factory() as db:
            try:
                db.add(sample)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise


def safe_write(
    sink: MetricSink,
    measurement: str,
    tags: Dict[str, str],
    fields: Dict[str, FieldValue],
    timestamp: datetime,
) -> bool:
    """Write one sample, logging instead of raising on failure."""
    try:
        sink.write(measurement, tags, fields, timestamp)
    except Exception:
        logger.exception("Sink write failed for %s %s", measurement, tags)
        return False
    return True
