"""ICMP reachability probing via the system `ping` binary."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from typing import Optional, Protocol

from smon.schemas import ProbeResult

logger = logging.getLogger(__name__)

_LOSS_RE = re.compile(r"([\d.]+)% packet loss")
# Linux: "rtt min/avg/max/mdev = 0.1/0.2/0.3/0.0 ms"
# BSD/macOS: "round-trip min/avg/max/stddev = 0.1/0.2/0.3/0.0 ms"
_RTT_RE = re.compile(r"(?:rtt|round-trip) [\w/]+ = ([\d.]+)/([\d.]+)/([\d.]+)")


class Prober(Protocol):
    async def probe(self, host: str, timeout_seconds: float) -> ProbeResult:
        ...


def parse_ping_output(output: str, returncode: int) -> ProbeResult:
    """
    Extract packet loss and average RTT from `ping` summary lines.

    Missing summary lines mean the host never answered.
    """
    loss_match = _LOSS_RE.search(output)
    loss = float(loss_match.group(1)) if loss_match else 100.0

    rtt_match = _RTT_RE.search(output)
    latency = float(rtt_match.group(2)) if rtt_match else 0.0

    alive = returncode == 0 and loss < 100
    return ProbeResult(alive=alive, latency_ms=latency, packet_loss_percent=loss)


class PingProber:
    """Runs `ping -c <count> -W <timeout> host` and parses its summary."""

    def __init__(self, count: int = 1, binary: Optional[str] = None) -> None:
        self.count = count
        self.binary = binary or shutil.which("ping") or "ping"

    async def probe(self, host: str, timeout_seconds: float) -> ProbeResult:
        cmd = [self.binary, "-n", "-c", str(self.count), "-W", str(int(timeout_seconds)), host]
        logger.debug("Running %s", " ".join(cmd))

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, "LANG": "C", "LC_ALL": "C"},
        )
        # Upper bound on the whole run: every echo may wait the full timeout
        deadline = timeout_seconds * self.count + 5
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=deadline)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("ping %s did not finish within %ss", host, deadline)
            return ProbeResult(alive=False, latency_ms=0.0, packet_loss_percent=100.0)

        return parse_ping_output(stdout.decode("utf-8", errors="replace"), process.returncode)
