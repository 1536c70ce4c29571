"""
Pydantic models ("schemas").

Two groups live here:

- the monitoring data model read from the device file (`Device`,
  `Interface`, `ProbeTarget`) and the prober's `ProbeResult`
- response models for the status API

We keep these separate from the ORM models so the API layer
does not expose SQLAlchemy internals.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from smon.vendors import Vendor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Monitoring data model
# ---------------------------------------------------------------------------

class Interface(BaseModel):
    """One monitored interface, identified by its ifIndex on the device."""

    index: int = Field(ge=1)
    name: str


class Device(BaseModel):
    """
    An SNMP device descriptor.

    `vendor` is None until discovery has read the device's sysDescr; OID
    resolution treats None as the standard MIB-II table.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    host: str
    community: str = "public"
    vendor: Optional[Vendor] = None
    enabled: bool = True
    interfaces: List[Interface] = Field(default_factory=list, alias="selectedInterfaces")

    @field_validator("vendor", mode="before")
    @classmethod
    def parse_vendor(cls, v):
        """Unknown vendor tags fall back to None (i.e. standard) instead of failing."""
        if v is None or isinstance(v, Vendor):
            return v
        try:
            return Vendor(str(v).lower())
        except ValueError:
            logger.warning("Unknown vendor tag %r, treating as standard", v)
            return None

    @field_validator("interfaces", mode="before")
    @classmethod
    def drop_legacy_interfaces(cls, v):
        """
        Older device files stored interfaces as bare names without an
        ifIndex. Those cannot be polled, so they are dropped and must be
        re-selected.
        """
        if not isinstance(v, list):
            return v
        kept = []
        for item in v:
            if isinstance(item, dict) and item.get("index") and item.get("name"):
                kept.append(item)
            elif isinstance(item, Interface):
                kept.append(item)
            else:
                logger.warning("Skipping interface entry without index: %r", item)
        return kept


class ProbeTarget(BaseModel):
    """A host checked for reachability by the prober."""

    id: str
    name: str
    host: str
    group: str = "default"
    enabled: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v):
        return str(v)


class ProbeResult(BaseModel):
    alive: bool
    latency_ms: float = 0.0
    packet_loss_percent: float = 0.0


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class MetricSampleOut(BaseModel):
    id: int
    ts: datetime
    measurement: str
    tags: Dict[str, str]
    fields: Dict[str, Any]

    model_config = ConfigDict(from_attributes=True)


class EventOut(BaseModel):
    id: int
    ts: datetime
    kind: str
    severity: str
    source: str
    message: str
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class LivenessOut(BaseModel):
    """Current liveness of one device or probe target."""

    id: str
    name: str
    alive: Optional[bool]
    last_check: Optional[datetime]
    latency_ms: Optional[float] = None
    packet_loss_percent: Optional[float] = None


class FlappingOut(BaseModel):
    """
    Flapping view of one entity.

    - transitions: transitions currently kept in its history
    - alert_started: when the open flapping alert began, if any
    """

    kind: str
    id: str
    is_flapping: bool
    last_status: Optional[str]
    transitions: int
    alert_started: Optional[datetime] = None


class DiscoveredOut(BaseModel):
    """Interfaces found on a device that was polled without a selection."""

    device_id: str
    interfaces: List[Interface]
