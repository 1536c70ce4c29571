"""
SNMP client abstraction.

We support two session types with the same async interface:

1. `SnmpSession`: real SNMPv2c over pysnmp's asyncio API.
2. `StubSnmpSession`: in-memory counters that look like a busy switch.

Both expose:

- `await session.get([oid, ...])` -> list of raw values, `None` for any OID
  the agent could not answer (noSuchObject, noSuchInstance, endOfMibView)
- `session.walk(root)` -> async iterator of `(oid, value)` under `root`

A failure of the whole request (timeout, error status) raises `SnmpError`.
Sessions are long-lived: `SessionPool` keeps one per device across cycles.
"""

from __future__ import annotations

import logging
import math
import random
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
    walk_cmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from smon.schemas import Device
from smon.vendors import GENERIC_CPU_OID, STANDARD_OIDS, Metric

logger = logging.getLogger(__name__)


class SnmpError(Exception):
    """Raised when SNMP retrieval fails."""


_MISSING = (NoSuchObject, NoSuchInstance, EndOfMibView)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def as_number(value: Any) -> Optional[int]:
    """
    Convert a counter value to a Python int.

    Agents return counters as Counter32/Counter64, but some send them as an
    octet string (big-endian bytes) or a decimal string. Anything else is
    malformed and yields None.
    """
    if value is None or isinstance(value, bool):
        return None
    if hasattr(value, "asOctets"):
        value = value.asOctets()
    if isinstance(value, (bytes, bytearray)):
        text = value.decode("ascii", errors="ignore").strip()
        if text.isdigit():
            return int(text)
        return int.from_bytes(value, "big") if value else None
    if isinstance(value, str):
        value = value.strip()
        return int(value) if value.isdigit() else None
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value >= 0 else None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def as_float(value: Any) -> Optional[float]:
    """Convert a gauge-like value (CPU load) to float, None if malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    return number if math.isfinite(number) else None


# ---------------------------------------------------------------------------
# Real SNMP implementation
# ---------------------------------------------------------------------------

class SnmpSession:
    """
    One SNMPv2c session per device.

    The engine and transport are created on first use and reused for every
    request afterwards. pysnmp applies `timeout` and `retries` per request,
    so a dead device costs at most `timeout * (retries + 1)` seconds.
    """

    def __init__(
        self,
        host: str,
        community: str,
        port: int = 161,
        timeout: float = 5,
        retries: int = 1,
    ) -> None:
        self.host = host
        self.community = community
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self._engine: Optional[SnmpEngine] = None
        self._target: Optional[UdpTransportTarget] = None

    async def _transport(self) -> Tuple[SnmpEngine, UdpTransportTarget]:
        if self._engine is None:
            self._engine = SnmpEngine()
        if self._target is None:
            try:
                self._target = await UdpTransportTarget.create(
                    (self.host, self.port),
                    timeout=self.timeout,
                    retries=self.retries,
                )
            except Exception as exc:
                raise SnmpError(f"cannot reach {self.host}:{self.port}: {exc}") from exc
        return self._engine, self._target

    async def get(self, oids: Sequence[str]) -> List[Any]:
        """
        Perform an SNMPv2c GET for `oids`.

        Returns one value per requested OID, in order. OIDs the agent does
        not implement come back as None.
        """
        engine, target = await self._transport()
        errorIndication, errorStatus, errorIndex, varBinds = await get_cmd(
            engine,
            CommunityData(self.community, mpModel=1),  # SNMP v2c
            target,
            ContextData(),
            *[ObjectType(ObjectIdentity(oid)) for oid in oids],
        )

        if errorIndication:
            raise SnmpError(str(errorIndication))
        if errorStatus:
            msg = f"{errorStatus.prettyPrint()} at {errorIndex and varBinds[int(errorIndex) - 1][0] or '?'}"
            raise SnmpError(msg)

        values: List[Any] = [None] * len(oids)
        for i, (_, value) in enumerate(varBinds[: len(oids)]):
            values[i] = None if isinstance(value, _MISSING) else value
        return values

    async def walk(self, root: str) -> AsyncIterator[Tuple[str, Any]]:
        """Yield `(oid, value)` for every row under `root`."""
        engine, target = await self._transport()
        async for errorIndication, errorStatus, errorIndex, varBinds in walk_cmd(
            engine,
            CommunityData(self.community, mpModel=1),
            target,
            ContextData(),
            ObjectType(ObjectIdentity(root)),
            lexicographicMode=False,
        ):
            if errorIndication:
                raise SnmpError(str(errorIndication))
            if errorStatus:
                raise SnmpError(errorStatus.prettyPrint())
            for name, value in varBinds:
                if isinstance(value, _MISSING):
                    continue
                yield str(name), value

    def close(self) -> None:
        if self._engine is not None:
            self._engine.close_dispatcher()
        self._engine = None
        self._target = None


# ---------------------------------------------------------------------------
# Stub implementation: fake counters for demo purposes
# ---------------------------------------------------------------------------

_COUNTER_COLUMNS = {
    STANDARD_OIDS[Metric.IF_IN_OCTETS]: 32,
    STANDARD_OIDS[Metric.IF_OUT_OCTETS]: 32,
    STANDARD_OIDS[Metric.IF_HC_IN_OCTETS]: 64,
    STANDARD_OIDS[Metric.IF_HC_OUT_OCTETS]: 64,
}


class StubSnmpSession:
    """
    Fake agent for running the pipeline without hardware.

    Each GET on an octet counter advances it by a random amount; 32-bit
    counters wrap like the real thing. With `hc_counters=False` the
    high-capacity columns are reported missing, which exercises the 32-bit
    fallback path of the scheduler.
    """

    def __init__(
        self,
        host: str = "stub",
        interfaces: int = 4,
        hc_counters: bool = True,
        sys_descr: str = "Stub SNMP agent",
    ) -> None:
        self.host = host
        self.interfaces = interfaces
        self.hc_counters = hc_counters
        self.sys_descr = sys_descr
        self._counters: Dict[str, int] = {}

    def _counter(self, column: str, oid: str) -> Optional[int]:
        bits = _COUNTER_COLUMNS[column]
        if bits == 64 and not self.hc_counters:
            return None
        value = self._counters.get(oid)
        if value is None:
            # Seed counters with some baseline values
            value = random.randint(1_000_000, 10_000_000)
        else:
            value += random.randint(10_000, 100_000)
        value %= 2**bits
        self._counters[oid] = value
        return value

    def _value(self, oid: str) -> Any:
        column, _, index = oid.rpartition(".")
        if column in _COUNTER_COLUMNS and index.isdigit():
            return self._counter(column, oid)
        if oid == STANDARD_OIDS[Metric.SYS_DESCR]:
            return self.sys_descr
        if oid == GENERIC_CPU_OID:
            return random.randint(1, 40)
        return None

    async def get(self, oids: Sequence[str]) -> List[Any]:
        return [self._value(oid) for oid in oids]

    async def walk(self, root: str) -> AsyncIterator[Tuple[str, Any]]:
        if root == STANDARD_OIDS[Metric.IF_DESCR]:
            for index in range(1, self.interfaces + 1):
                yield f"{root}.{index}", f"stub-if{index}"

    def close(self) -> None:
        self._counters.clear()


# ---------------------------------------------------------------------------
# Session pool
# ---------------------------------------------------------------------------

SessionFactory = Callable[[Device], Any]


class SessionPool:
    """
    Keeps one session per device id, reused across poll cycles.

    A session is rebuilt when the device's host or community changes.
    """

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._sessions: Dict[str, Tuple[Tuple[str, str], Any]] = {}

    def get(self, device: Device) -> Any:
        identity = (device.host, device.community)
        entry = self._sessions.get(device.id)
        if entry is not None and entry[0] == identity:
            return entry[1]
        if entry is not None:
            entry[1].close()
        session = self._factory(device)
        self._sessions[device.id] = (identity, session)
        logger.info("[%s] SNMP session initialised for %s", device.id, device.host)
        return session

    def close(self) -> None:
        for _, session in self._sessions.values():
            session.close()
        self._sessions.clear()


def session_factory(
    use_stub: bool,
    port: int = 161,
    timeout: float = 5,
    retries: int = 1,
) -> SessionFactory:
    """Build the factory `SessionPool` uses to open device sessions."""

    def open_session(device: Device) -> Any:
        if use_stub:
            return StubSnmpSession(host=device.host)
        return SnmpSession(
            device.host,
            device.community,
            port=port,
            timeout=timeout,
            retries=retries,
        )

    return open_session
