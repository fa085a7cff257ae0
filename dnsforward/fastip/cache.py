"""Cache of TCP ping results for the fastest-address algorithm."""

from __future__ import annotations

import ipaddress
import struct
import threading
import time
from dataclasses import dataclass

from dnsforward.cache import LRUCache

FASTEST_ADDR_CACHE_TTL_SEC = 10 * 60
"""How long, in seconds, a ping result is kept."""

CACHE_MAX_SIZE = 64 * 1024

STATUS_OK = 0
STATUS_FAILED = 1

# Expiry time, status byte, latency in milliseconds.
_ENTRY = struct.Struct("!IBH")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _as_ip(ip) -> IPAddress:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    return ipaddress.ip_address(ip)


def _cache_key(ip) -> bytes:
    """Return the packed address, with IPv4-mapped IPv6 shortened to 4 bytes."""
    addr = _as_ip(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr.packed


@dataclass
class CacheEntry:
    """Result of pinging an address: status 0 is success, 1 is failure."""

    status: int = STATUS_OK
    latency_msec: int = 0


def pack_cache_entry(entry: CacheEntry, ttl: int) -> bytes:
    """Serialise entry together with its expiry time, ttl seconds from now."""
    expire = (int(time.time()) + ttl) & 0xFFFFFFFF
    return _ENTRY.pack(expire, entry.status & 0xFF, entry.latency_msec & 0xFFFF)


def unpack_cache_entry(data: bytes) -> CacheEntry | None:
    """Decode data into an entry, or return None if it has expired."""
    expire, status, latency = _ENTRY.unpack_from(data)
    if expire <= int(time.time()):
        return None
    return CacheEntry(status=status, latency_msec=latency)


class FastestAddrCache:
    """Thread-safe cache of ping results keyed by IP address."""

    def __init__(self, max_size: int = CACHE_MAX_SIZE) -> None:
        self._items = LRUCache(max_size)
        self._lock = threading.Lock()

    def find(self, ip) -> CacheEntry | None:
        """Return the unexpired entry for ip, or None."""
        data = self._items.get(_cache_key(ip))
        if data is None:
            return None
        return unpack_cache_entry(data)

    def add(self, entry: CacheEntry, ip, ttl: int) -> None:
        """Store entry for ip for ttl seconds."""
        self._items.set(_cache_key(ip), pack_cache_entry(entry, ttl))

    def add_failure(self, ip) -> None:
        """Record a failed ping unless a result for ip is already cached."""
        with self._lock:
            if self.find(ip) is None:
                self.add(CacheEntry(status=STATUS_FAILED), ip, FASTEST_ADDR_CACHE_TTL_SEC)

    def add_successful(self, ip, latency: int) -> None:
        """Record a successful ping, replacing failures and slower results."""
        entry = CacheEntry(status=STATUS_OK, latency_msec=latency)
        with self._lock:
            cached = self.find(ip)
            if cached is None or cached.status != STATUS_OK or cached.latency_msec > latency:
                self.add(entry, ip, FASTEST_ADDR_CACHE_TTL_SEC)