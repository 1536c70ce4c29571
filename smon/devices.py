"""
Device and probe target source.

The monitoring core reads its inventory from a JSON file:

    {
      "snmpDevices": [
        {"id": "core-sw1", "name": "Core switch", "host": "10.0.0.2",
         "community": "public", "vendor": "cisco", "enabled": true,
         "selectedInterfaces": [{"index": 1, "name": "Gi0/1"}]}
      ],
      "probeTargets": [
        {"id": 1, "name": "Google DNS", "host": "8.8.8.8", "group": "DNS"}
      ]
    }

Editing the inventory is someone else's job; the core only writes back the
vendor it detected. Discovery (vendor + interface list) lives here too.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import ValidationError

from smon.schemas import Device, Interface, ProbeTarget
from smon.snmp_client import SnmpError
from smon.vendors import Metric, Vendor, detect_vendor, resolve

logger = logging.getLogger(__name__)


class DeviceSource(Protocol):
    def devices(self) -> List[Device]:
        ...

    def probe_targets(self) -> List[ProbeTarget]:
        ...

    def update_vendor(self, device_id: str, vendor: Vendor) -> None:
        ...


class FileDeviceSource:
    """Reads devices and probe targets from a JSON file; writes back vendors."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._devices: Dict[str, Device] = {}
        self._targets: Dict[str, ProbeTarget] = {}
        self.reload()

    def _read_raw(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as fh:
            return json.load(fh)

    def reload(self) -> None:
        """(Re)load the inventory. Invalid entries are logged and skipped."""
        if not self.path.exists():
            logger.warning("Device file %s not found, no devices configured", self.path)
        raw = self._read_raw()

        devices: Dict[str, Device] = {}
        for entry in raw.get("snmpDevices", []):
            try:
                device = Device.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping invalid device entry %r: %s", entry.get("id"), exc)
                continue
            devices[device.id] = device

        targets: Dict[str, ProbeTarget] = {}
        for entry in raw.get("probeTargets", []):
            try:
                target = ProbeTarget.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping invalid probe target %r: %s", entry.get("id"), exc)
                continue
            targets[target.id] = target

        self._devices, self._targets = devices, targets
        logger.info("Loaded %d devices and %d probe targets from %s", len(devices), len(targets), self.path)

    def devices(self) -> List[Device]:
        return list(self._devices.values())

    def probe_targets(self) -> List[ProbeTarget]:
        return list(self._targets.values())

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def update_vendor(self, device_id: str, vendor: Vendor) -> None:
        device = self._devices.get(device_id)
        if device is None:
            return
        self._devices[device_id] = device.model_copy(update={"vendor": vendor})

        raw = self._read_raw()
        for entry in raw.get("snmpDevices", []):
            if entry.get("id") == device_id:
                entry["vendor"] = vendor.value
        self._write_raw(raw)
        logger.info("[%s] Vendor set to %s", device_id, vendor.value)

    def _write_raw(self, raw: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(raw, fh, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

@dataclass
class DiscoveryResult:
    vendor: Optional[Vendor] = None
    interfaces: List[Interface] = field(default_factory=list)
    # True if any request of the discovery got an answer
    answered: bool = False


async def read_vendor(session: Any) -> Optional[Vendor]:
    """Fetch sysDescr and classify it. None if the device did not answer."""
    (descr,) = await session.get([resolve(Vendor.STANDARD, Metric.SYS_DESCR)])
    if descr is None:
        return None
    return detect_vendor(str(descr))


def store_vendor(source: DeviceSource, device_id: str, vendor: Vendor) -> bool:
    """Write a detected vendor back through the source. False if that failed."""
    try:
        source.update_vendor(device_id, vendor)
    except OSError as exc:
        logger.error("[%s] Could not store detected vendor: %s", device_id, exc)
        return False
    return True


async def discover_device(
    session: Any,
    host: str = "",
    timeout: float = 5,
    source: Optional[DeviceSource] = None,
    device_id: Optional[str] = None,
) -> DiscoveryResult:
    """
    Detect the vendor and list interfaces (ifIndex + ifDescr).

    With a `source` and `device_id`, a detected vendor is written back
    through the source. The interface walk is bounded by `timeout`;
    whatever was collected by then is returned.
    """
    result = DiscoveryResult()
    try:
        result.vendor = await read_vendor(session)
    except SnmpError as exc:
        logger.info("[DISCOVER] Could not read sysDescr from %s: %s", host, exc)
    else:
        result.answered = True
    if result.vendor is None:
        logger.info("[DISCOVER] Could not detect vendor for %s, using standard MIB-II", host)
    elif source is not None and device_id is not None:
        store_vendor(source, device_id, result.vendor)

    root = resolve(result.vendor, Metric.IF_DESCR)

    async def _walk() -> None:
        async for oid, value in session.walk(root):
            result.answered = True
            column, _, index = oid.rpartition(".")
            if column != root or not index.isdigit() or int(index) < 1:
                continue
            result.interfaces.append(Interface(index=int(index), name=str(value)))

    try:
        await asyncio.wait_for(_walk(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.info("[DISCOVER] Walk timeout for %s, found %d interfaces", host, len(result.interfaces))
    except SnmpError as exc:
        logger.info("[DISCOVER] Walk error for %s: %s", host, exc)
    else:
        logger.info("[DISCOVER] Found %d interfaces on %s", len(result.interfaces), host)
    return result
