"""
Counter delta computation.

SNMP octet counters are cumulative and wrap when they overflow their width
(32 or 64 bits). Devices also reset them on reboot. `CounterNormalizer`
turns successive raw readings into per-interval deltas and decides, for
every apparent decrease, whether it was a wrap, several wraps, or a reset.

The rollover heuristic is best-effort: without the counter width reported
by the device an arbitrary backward jump has no single correct reading, so
the checks run in a fixed order that favours the common single 32-bit wrap.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)


COUNTER32_MAX = 2**32 - 1
COUNTER64_MAX = 2**64 - 1

# Backward jumps larger than this cannot be a single 32-bit wrap seen from
# below the top of the range.
MULTI_WRAP_JUMP = 1_000_000_000
# Readings this close to zero after a drop are treated as a counter reset.
RESET_FLOOR = 1_000_000
# Deltas above this are logged and feed the high-speed estimate.
HIGH_SPEED_DELTA = 500_000_000

DEFAULT_STATE_LIMIT = 1000


class Direction(str, Enum):
    RX = "rx"
    TX = "tx"


class CounterKey(NamedTuple):
    device_id: str
    if_index: int
    direction: Direction


class CounterStore:
    """Last raw reading per (device, interface, direction)."""

    def __init__(self) -> None:
        self._values: Dict[CounterKey, int] = {}

    def get(self, key: CounterKey) -> Optional[int]:
        return self._values.get(key)

    def set(self, key: CounterKey, value: int) -> None:
        self._values[key] = value

    def discard(self, key: CounterKey) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: CounterKey) -> bool:
        return key in self._values


class HighSpeedStore:
    """Highest implied throughput (Mbps) seen per (device, interface). Diagnostic only."""

    def __init__(self) -> None:
        self._marks: Dict[tuple, float] = {}

    def get(self, device_id: str, if_index: int) -> Optional[float]:
        return self._marks.get((device_id, if_index))

    def raise_to(self, device_id: str, if_index: int, mbps: float) -> bool:
        """Record `mbps` if it beats the current mark. Returns True when it did."""
        current = self._marks.get((device_id, if_index))
        if current is not None and current >= mbps:
            return False
        self._marks[(device_id, if_index)] = mbps
        return True

    def __len__(self) -> int:
        return len(self._marks)


class CounterNormalizer:
    """
    Stateful raw-counter -> delta converter.

    The stores are injected so the scheduler and tests can share or isolate
    state as needed.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        high_speed: Optional[HighSpeedStore] = None,
        interval_seconds: float = 300,
        state_limit: int = DEFAULT_STATE_LIMIT,
    ) -> None:
        self.store = store if store is not None else CounterStore()
        self.high_speed = high_speed if high_speed is not None else HighSpeedStore()
        self.interval_seconds = interval_seconds
        self.state_limit = state_limit

    def delta(self, key: CounterKey, raw_value: int, bits: int = 32) -> int:
        """
        Return the corrected delta since the previous reading for `key`.

        `bits` is the width of the OID the value came from. 32-bit readings
        go through the full rollover heuristic; 64-bit readings only consider
        a 64-bit wrap or a reset.
        """
        previous = self.store.get(key)
        # Always the newest reading, whatever the outcome below.
        self.store.set(key, raw_value)

        if previous is None:
            return 0

        if raw_value >= previous:
            result = raw_value - previous
        elif bits == 64:
            result = self._backward_64(key, previous, raw_value)
        else:
            result = self._backward_32(key, previous, raw_value)

        self._track_high_speed(key, result)
        return result

    def _backward_32(self, key: CounterKey, previous: int, current: int) -> int:
        jump = previous - current

        if previous > COUNTER32_MAX * 0.8:
            single = COUNTER32_MAX - previous + current
            if single > 0:
                return single

        if jump > MULTI_WRAP_JUMP:
            wraps = math.ceil(jump / COUNTER32_MAX)
            adjusted = wraps * COUNTER32_MAX - previous + current
            logger.info(
                "[%s] Multi-wrap on ifIndex %s %s: prev=%d curr=%d wraps=%d adjusted=%d",
                key.device_id, key.if_index, key.direction.value,
                previous, current, wraps, adjusted,
            )
            return adjusted

        single = COUNTER32_MAX - previous + current
        if 0 < single < COUNTER32_MAX * 2:
            return single

        return self._backward_64(key, previous, current)

    def _backward_64(self, key: CounterKey, previous: int, current: int) -> int:
        wrapped = COUNTER64_MAX - previous + current
        if 0 < wrapped < COUNTER64_MAX * 0.05:
            logger.info(
                "[%s] 64-bit wrap on ifIndex %s %s: %d octets",
                key.device_id, key.if_index, key.direction.value, wrapped,
            )
            return wrapped

        if current < RESET_FLOOR:
            logger.warning(
                "[%s] Counter reset on ifIndex %s %s: %d -> %d",
                key.device_id, key.if_index, key.direction.value, previous, current,
            )
            return 0

        jump = previous - current
        logger.warning(
            "[%s] Unexplained counter drop on ifIndex %s %s: prev=%d curr=%d, using drop %d",
            key.device_id, key.if_index, key.direction.value, previous, current, jump,
        )
        return jump

    def _track_high_speed(self, key: CounterKey, delta: int) -> None:
        if delta <= HIGH_SPEED_DELTA or self.interval_seconds <= 0:
            return
        mbps = delta * 8 / 1_000_000 / self.interval_seconds
        logger.info(
            "[%s] High-speed %s on ifIndex %s: delta=%d (~%.2f Mbps)",
            key.device_id, key.direction.value, key.if_index, delta, mbps,
        )
        if self.high_speed.raise_to(key.device_id, key.if_index, mbps):
            logger.info(
                "[%s] ifIndex %s marked high-speed (%.2f Mbps)",
                key.device_id, key.if_index, mbps,
            )

    def cleanup(self) -> bool:
        """
        Drop all counter state once it grows past `state_limit`.

        Every stream re-baselines on its next reading (delta 0). Returns
        True when the state was cleared.
        """
        if len(self.store) <= self.state_limit:
            return False
        logger.info(
            "Clearing %d counter states (limit %d)", len(self.store), self.state_limit
        )
        self.store.clear()
        return True
