"""
Vendor OID resolution.

Network equipment exposes the same logical value (inbound octets, CPU load,
...) under different OIDs depending on the manufacturer. This module holds:

- the closed set of vendors (`Vendor`) and logical metrics (`Metric`)
- one OID table per vendor, with the standard MIB-II table as fallback
- `resolve()` / `resolve_cpu_identifier()` used by the poll scheduler
- `detect_vendor()` which classifies a device from its sysDescr text

Everything here is pure: no I/O, no module state is mutated.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple, Union


class Vendor(str, Enum):
    STANDARD = "standard"
    CISCO = "cisco"
    HUAWEI = "huawei"
    MIKROTIK = "mikrotik"
    JUNIPER = "juniper"
    HP = "hp"


class Metric(str, Enum):
    IF_DESCR = "ifDescr"
    IF_IN_OCTETS = "ifInOctets"
    IF_OUT_OCTETS = "ifOutOctets"
    IF_HC_IN_OCTETS = "ifHCInOctets"
    IF_HC_OUT_OCTETS = "ifHCOutOctets"
    SYS_DESCR = "sysDescr"
    CPU_USAGE = "cpuUsage"
    CPM_CPU_TOTAL_5SEC = "cpmCPUTotal5sec"
    CPM_CPU_TOTAL_1MIN = "cpmCPUTotal1min"
    HW_ENTITY_CPU_USAGE = "hwEntityCpuUsage"
    MTXR_CPU_LOAD = "mtxrCpuLoad"
    JNX_OPERATING_CPU = "jnxOperatingCPU"
    HP_CPU_UTILIZATION = "hpCpuUtilization"


# UCD-SNMP-MIB ssCpuUser, understood by net-snmp based agents
GENERIC_CPU_OID = "1.3.6.1.4.1.2021.11.9.0"


# ---------------------------------------------------------------------------
# OID tables
# ---------------------------------------------------------------------------

STANDARD_OIDS: Dict[Metric, str] = {
    Metric.IF_DESCR: "1.3.6.1.2.1.2.2.1.2",
    Metric.IF_IN_OCTETS: "1.3.6.1.2.1.2.2.1.10",
    Metric.IF_OUT_OCTETS: "1.3.6.1.2.1.2.2.1.16",
    # IF-MIB ifXTable high capacity counters
    Metric.IF_HC_IN_OCTETS: "1.3.6.1.2.1.31.1.1.1.6",
    Metric.IF_HC_OUT_OCTETS: "1.3.6.1.2.1.31.1.1.1.10",
    Metric.SYS_DESCR: "1.3.6.1.2.1.1.1.0",
    Metric.CPU_USAGE: GENERIC_CPU_OID,
}

# Vendor tables only list what differs from STANDARD_OIDS; anything missing
# falls through to the standard entry.
VENDOR_OIDS: Dict[Vendor, Dict[Metric, str]] = {
    Vendor.STANDARD: STANDARD_OIDS,
    Vendor.CISCO: {
        Metric.CPM_CPU_TOTAL_5SEC: "1.3.6.1.4.1.9.9.109.1.1.1.1.5.1",
        Metric.CPM_CPU_TOTAL_1MIN: "1.3.6.1.4.1.9.9.109.1.1.1.1.6.1",
    },
    Vendor.HUAWEI: {
        Metric.IF_IN_OCTETS: "1.3.6.1.4.1.2011.5.25.31.1.1.3.1.6",
        Metric.IF_OUT_OCTETS: "1.3.6.1.4.1.2011.5.25.31.1.1.3.1.10",
        Metric.HW_ENTITY_CPU_USAGE: "1.3.6.1.4.1.2011.5.25.31.1.1.1.1.6",
    },
    Vendor.MIKROTIK: {
        Metric.IF_IN_OCTETS: "1.3.6.1.4.1.14988.1.1.14.1.1.6",
        Metric.IF_OUT_OCTETS: "1.3.6.1.4.1.14988.1.1.14.1.1.10",
        Metric.MTXR_CPU_LOAD: "1.3.6.1.4.1.14988.1.1.3.11.0",
    },
    Vendor.JUNIPER: {
        Metric.IF_IN_OCTETS: "1.3.6.1.4.1.2636.3.3.1.1.7",
        Metric.IF_OUT_OCTETS: "1.3.6.1.4.1.2636.3.3.1.1.11",
        Metric.JNX_OPERATING_CPU: "1.3.6.1.4.1.2636.4.16.1.4.1.1.1",
    },
    Vendor.HP: {
        Metric.IF_IN_OCTETS: "1.3.6.1.4.1.11.2.14.11.5.1.9.6.1.6",
        Metric.IF_OUT_OCTETS: "1.3.6.1.4.1.11.2.14.11.5.1.9.6.1.10",
        Metric.HP_CPU_UTILIZATION: "1.3.6.1.4.1.11.2.14.11.5.1.9.6.1.4",
    },
}

# Per-vendor CPU metric preference, first resolvable entry wins.
CPU_PRIORITY: Dict[Vendor, Tuple[Metric, ...]] = {
    Vendor.CISCO: (Metric.CPM_CPU_TOTAL_5SEC, Metric.CPM_CPU_TOTAL_1MIN),
    Vendor.HUAWEI: (Metric.HW_ENTITY_CPU_USAGE,),
    Vendor.MIKROTIK: (Metric.MTXR_CPU_LOAD,),
    Vendor.JUNIPER: (Metric.JNX_OPERATING_CPU,),
    Vendor.HP: (Metric.HP_CPU_UTILIZATION,),
}

# Ordered: the first keyword found in sysDescr decides the vendor.
VENDOR_SIGNATURES: Tuple[Tuple[str, Vendor], ...] = (
    ("cisco", Vendor.CISCO),
    ("huawei", Vendor.HUAWEI),
    ("mikrotik", Vendor.MIKROTIK),
    ("routeros", Vendor.MIKROTIK),
    ("juniper", Vendor.JUNIPER),
    ("junos", Vendor.JUNIPER),
    ("hp", Vendor.HP),
    ("aruba", Vendor.HP),
    ("procurve", Vendor.HP),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def as_vendor(vendor: Union[Vendor, str, None]) -> Vendor:
    """Coerce a vendor tag into `Vendor`; unknown or empty tags become STANDARD."""
    if isinstance(vendor, Vendor):
        return vendor
    try:
        return Vendor(vendor)
    except ValueError:
        return Vendor.STANDARD


def resolve(
    vendor: Union[Vendor, str, None],
    metric: Union[Metric, str],
) -> Optional[str]:
    """
    Return the OID for `metric` on a device of the given vendor.

    Lookup order:
    1. the vendor's own table (unknown vendors use the standard table)
    2. the standard table

    Returns None when neither table knows the metric; callers must treat
    that metric as unsupported for the device and not poll it.
    """
    try:
        metric = Metric(metric)
    except ValueError:
        return None

    table = VENDOR_OIDS[as_vendor(vendor)]
    return table.get(metric) or STANDARD_OIDS.get(metric)


def resolve_cpu_identifier(vendor: Union[Vendor, str, None]) -> str:
    """Pick the preferred CPU-load OID for a vendor, else the generic one."""
    for metric in CPU_PRIORITY.get(as_vendor(vendor), ()):
        oid = resolve(vendor, metric)
        if oid:
            return oid
    return GENERIC_CPU_OID


def detect_vendor(sys_descr: str) -> Vendor:
    """
    Classify a device from its sysDescr.

    Case-insensitive substring match against VENDOR_SIGNATURES, first match
    wins. Anything unrecognised is treated as a plain MIB-II device.
    """
    descr = (sys_descr or "").lower()
    for keyword, vendor in VENDOR_SIGNATURES:
        if keyword in descr:
            return vendor
    return Vendor.STANDARD


def normalize_cpu(vendor: Union[Vendor, str, None], value: float) -> float:
    """Undo vendor-specific CPU scaling (MikroTik may report percent x 100)."""
    if as_vendor(vendor) is Vendor.MIKROTIK and value > 100:
        return value / 100
    return value
