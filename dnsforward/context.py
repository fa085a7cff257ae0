"""Per-request state carried through the proxy."""

from __future__ import annotations

import ipaddress
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

import dns.flags
import dns.message

DEFAULT_UDP_BUF_SIZE = 2048


class Proto(str, Enum):
    """Protocol a request arrived over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"


class DoQVersion(IntEnum):
    """Supported DNS-over-QUIC versions."""

    V1_DRAFT = 0x00
    V1 = 0x01


@dataclass
class DNSContext:
    """A DNS request together with its response and metadata."""

    proto: Proto = Proto.UDP
    req: dns.message.Message | None = None
    res: dns.message.Message | None = None
    addr: Any = None
    start_time: float = field(default_factory=time.time)
    upstream: Any = None
    cached_upstream_addr: str = ""
    custom_upstream_config: Any = None
    conn: Any = None
    local_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None
    doq_version: DoQVersion = DoQVersion.V1_DRAFT
    request_id: int = 0
    req_ecs: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None

    _ad_bit: bool = field(default=False, init=False, repr=False)
    _has_edns0: bool = field(default=False, init=False, repr=False)
    _do_bit: bool = field(default=False, init=False, repr=False)
    _udp_size: int = field(default=0, init=False, repr=False)

    @property
    def ad_bit(self) -> bool:
        return self._ad_bit

    @property
    def has_edns0(self) -> bool:
        return self._has_edns0

    @property
    def do_bit(self) -> bool:
        return self._do_bit

    @property
    def udp_size(self) -> int:
        return self._udp_size

    def calc_flags_and_size(self) -> None:
        """Compute request flags and UDP size once, from the request."""
        if self._udp_size != 0 or self.req is None:
            return
        self._ad_bit = bool(self.req.flags & dns.flags.AD)
        self._udp_size = DEFAULT_UDP_BUF_SIZE
        if self.req.edns >= 0:
            self._has_edns0 = True
            self._do_bit = bool(self.req.ednsflags & dns.flags.DO)
            self._udp_size = self.req.payload