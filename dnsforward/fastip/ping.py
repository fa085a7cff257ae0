"""TCP connection probes used to measure address latency."""

from __future__ import annotations

import ipaddress
import socket
import time
from dataclasses import dataclass

PING_TCP_TIMEOUT = 4.0
"""TCP connection timeout in seconds; longer than the wait for results so
that slower connections still get cached."""

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass(frozen=True)
class PingResult:
    """Outcome of dialing an address; latency is in milliseconds."""

    ip: IPAddress
    port: int = 0
    latency: int = 0
    success: bool = False


def ping_tcp(ip, port: int, timeout: float = PING_TCP_TIMEOUT) -> PingResult:
    """Open and close a TCP connection to ip:port and time it."""
    addr = ip if not isinstance(ip, str) else ipaddress.ip_address(ip)
    start = time.monotonic()
    try:
        with socket.create_connection((str(addr), port), timeout=timeout):
            pass
        success = True
    except OSError:
        success = False
    latency = int((time.monotonic() - start) * 1000)
    return PingResult(ip=addr, port=port, latency=latency, success=success)