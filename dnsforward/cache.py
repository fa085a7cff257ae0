"""Response cache keyed by question and, optionally, by client subnet."""

from __future__ import annotations

import ipaddress
import logging
import struct
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass

import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 64 * 1024
"""Default size of a cache, in bytes of keys and values."""

OPTIMISTIC_TTL = 10
"""TTL, in seconds, given to expired responses served from an optimistic cache."""

_EXP_TIME = struct.Struct("!I")
_MSG_LEN = struct.Struct("!H")
MIN_PACKED_LEN = _EXP_TIME.size + _MSG_LEN.size

_MAX_U32 = 0xFFFFFFFF

_DNSSEC_TYPES = frozenset(
    {
        dns.rdatatype.NSEC,
        dns.rdatatype.NSEC3,
        dns.rdatatype.DS,
        dns.rdatatype.RRSIG,
        dns.rdatatype.SIG,
        dns.rdatatype.DNSKEY,
    }
)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class LRUCache:
    """A thread-safe byte-keyed cache bounded by the total size of its entries."""

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        self.max_size = max_size
        self._items: OrderedDict[bytes, bytes] = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def size(self) -> int:
        """Total number of bytes held in keys and values."""
        with self._lock:
            return self._size

    def get(self, key: bytes) -> bytes | None:
        """Return the value for key and mark it as recently used, or None."""
        key = bytes(key)
        with self._lock:
            value = self._items.get(key)
            if value is not None:
                self._items.move_to_end(key)
            return value

    def set(self, key: bytes, value: bytes) -> None:
        """Store value under key, evicting the least recently used entries."""
        key, value = bytes(key), bytes(value)
        entry_size = len(key) + len(value)
        with self._lock:
            old = self._items.pop(key, None)
            if old is not None:
                self._size -= len(key) + len(old)
            if entry_size > self.max_size:
                return
            self._items[key] = value
            self._size += entry_size
            while self._size > self.max_size:
                old_key, old_value = self._items.popitem(last=False)
                self._size -= len(old_key) + len(old_value)

    def delete(self, key: bytes) -> None:
        """Remove key if present."""
        key = bytes(key)
        with self._lock:
            old = self._items.pop(key, None)
            if old is not None:
                self._size -= len(key) + len(old)

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._items.clear()
            self._size = 0


@dataclass
class CacheItem:
    """A cached response together with the address of the upstream that gave it."""

    m: dns.message.Message
    u: str = ""

    def pack(self) -> bytes:
        """Serialise as expiry time, message length, wire message and upstream."""
        try:
            wire = self.m.to_wire()
        except dns.exception.DNSException:
            wire = b""
        expire = (int(time.time()) + lowest_ttl(self.m)) & _MAX_U32
        return b"".join(
            (
                _EXP_TIME.pack(expire),
                _MSG_LEN.pack(len(wire) & 0xFFFF),
                wire,
                self.u.encode(),
            )
        )


def _reply_to(req: dns.message.Message, rcode: int) -> dns.message.Message:
    res = dns.message.Message(id=req.id)
    res.flags = dns.flags.QR | (req.flags & (dns.flags.RD | dns.flags.CD))
    res.set_opcode(req.opcode())
    if req.question:
        q = req.question[0]
        res.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]
    res.set_rcode(rcode)
    return res


def _do_bit(msg: dns.message.Message) -> bool:
    return msg.edns >= 0 and bool(msg.ednsflags & dns.flags.DO)


def _subnet_parts(subnet) -> tuple[IPAddress | None, int]:
    if subnet is None:
        return None, 0
    if isinstance(subnet, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return subnet.ip, subnet.network.prefixlen
    return subnet.network_address, subnet.prefixlen


class Cache:
    """Caches responses, generally and per client subnet."""

    def __init__(self, size: int = 0, optimistic: bool = False) -> None:
        self.cache_size = size
        self.optimistic = optimistic
        self.items: LRUCache | None = None
        self.items_with_subnet: LRUCache | None = None
        self._init_lock = threading.Lock()

    def _create_cache(self) -> LRUCache:
        return LRUCache(self.cache_size if self.cache_size > 0 else DEFAULT_CACHE_SIZE)

    def _init_lazy(self) -> LRUCache:
        with self._init_lock:
            if self.items is None:
                self.items = self._create_cache()
            return self.items

    def _init_lazy_with_subnet(self) -> LRUCache:
        with self._init_lock:
            if self.items_with_subnet is None:
                self.items_with_subnet = self._create_cache()
            return self.items_with_subnet

    def unpack_item(
        self, data: bytes, req: dns.message.Message
    ) -> tuple[CacheItem | None, bool]:
        """Decode data into an item answering req; also report whether it expired.

        Expired items are returned only when the cache is optimistic.
        """
        if len(data) < MIN_PACKED_LEN:
            return None, False

        (expire,) = _EXP_TIME.unpack_from(data, 0)
        now = int(time.time())
        expired = expire <= now
        if expired:
            if not self.optimistic:
                return None, True
            ttl = OPTIMISTIC_TTL
        else:
            ttl = expire - now

        (length,) = _MSG_LEN.unpack_from(data, _EXP_TIME.size)
        if length == 0:
            return None, expired

        body = data[MIN_PACKED_LEN : MIN_PACKED_LEN + length]
        try:
            cached = dns.message.from_wire(body)
        except (dns.exception.DNSException, ValueError):
            return None, expired

        res = _reply_to(req, cached.rcode())
        res.flags |= cached.flags & (dns.flags.AD | dns.flags.RA)

        # OPT records are never served from cache (RFC 6891); DNSSEC records
        # are dropped unless the request carries the DO bit.
        filter_msg(res, cached, bool(req.flags & dns.flags.AD), _do_bit(req), ttl)

        upstream = data[MIN_PACKED_LEN + length :].decode(errors="replace")
        return CacheItem(m=res, u=upstream), expired

    def get(
        self, req: dns.message.Message | None
    ) -> tuple[CacheItem | None, bool, bytes | None]:
        """Return (item, expired, key) for req; key is None if nothing is searched."""
        items = self.items
        if items is None or req is None or len(req.question) != 1:
            return None, False, None

        key = msg_to_key(req)
        data = items.get(key)
        if data is None:
            return None, False, key

        item, expired = self.unpack_item(data, req)
        if item is None:
            items.delete(key)
        return item, expired, key

    def get_with_subnet(
        self, req: dns.message.Message | None, subnet
    ) -> tuple[CacheItem | None, bool, bytes | None]:
        """Like get, matching the longest stored prefix of subnet's address.

        subnet is an ip_interface or ip_network; its address is used as given.
        """
        ip, prefix = _subnet_parts(subnet)
        items = self.items_with_subnet
        if items is None or req is None or len(req.question) != 1:
            return None, False, None

        key = b""
        data = None
        for mask in range(prefix, -1, -1):
            key = msg_to_key_with_subnet(req, ip, mask)
            data = items.get(key)
            if data is not None:
                break
        if data is None:
            return None, False, key

        item, expired = self.unpack_item(data, req)
        if item is None:
            items.delete(key)
        return item, expired, key

    def set(self, item: CacheItem) -> None:
        """Store item if its response is cacheable."""
        if not is_cacheable(item.m):
            return
        items = self._init_lazy()
        items.set(msg_to_key(item.m), item.pack())

    def set_with_subnet(self, item: CacheItem, subnet) -> None:
        """Store item under subnet if its response is cacheable.

        A subnet of None is stored as the zero-length prefix.
        """
        if not is_cacheable(item.m):
            return
        items = self._init_lazy_with_subnet()
        ip, prefix = _subnet_parts(subnet)
        items.set(msg_to_key_with_subnet(item.m, ip, prefix), item.pack())


def is_cacheable(msg: dns.message.Message | None) -> bool:
    """Return True if msg may be cached; negative answers follow RFC 2308."""
    if msg is None:
        return False
    if msg.flags & dns.flags.TC:
        logger.debug("refusing to cache truncated message")
        return False
    if len(msg.question) != 1:
        logger.debug("refusing to cache message with wrong number of questions")
        return False
    if lowest_ttl(msg) == 0:
        return False

    q = msg.question[0]
    rcode = msg.rcode()
    if rcode == dns.rcode.NOERROR:
        if q.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
            return True
        return has_ip_answer(msg) or is_cacheable_negative(msg)
    if rcode == dns.rcode.NXDOMAIN:
        return is_cacheable_negative(msg)

    logger.debug(
        "%s: refusing to cache message with response code %s",
        q.name,
        dns.rcode.to_text(rcode),
    )
    return False


def has_ip_answer(msg: dns.message.Message) -> bool:
    """Return True if the answer section holds at least one A or AAAA record."""
    return any(
        len(rrset) > 0 and rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
        for rrset in msg.answer
    )


def is_cacheable_negative(msg: dns.message.Message) -> bool:
    """Return True if the authority section has an SOA record and no NS records."""
    ok = False
    for rrset in msg.authority:
        if len(rrset) == 0:
            continue
        if rrset.rdtype == dns.rdatatype.SOA:
            ok = True
        elif rrset.rdtype == dns.rdatatype.NS:
            return False
    return ok


def lowest_ttl(msg: dns.message.Message) -> int:
    """Return the lowest TTL among msg's records, ignoring OPT, or 0 if none."""
    ttls = [
        rrset.ttl
        for section in (msg.answer, msg.authority, msg.additional)
        for rrset in section
        if len(rrset) > 0 and rrset.rdtype != dns.rdatatype.OPT
    ]
    return min(ttls, default=0)


def respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    """Clamp ttl to [min_ttl, max_ttl]; a max_ttl of 0 means no upper bound."""
    if ttl < min_ttl:
        return min_ttl
    if max_ttl != 0 and ttl > max_ttl:
        return max_ttl
    return ttl


def _qname(q: dns.rrset.RRset) -> bytes:
    return q.name.to_text().lower().encode()


def msg_to_key(msg: dns.message.Message) -> bytes:
    """Build the key from the question's type, class and lower-cased name."""
    q = msg.question[0]
    return struct.pack("!HH", q.rdtype, q.rdclass) + _qname(q)


def msg_to_key_with_subnet(
    msg: dns.message.Message, ecs_ip: IPAddress | None, mask: int
) -> bytes:
    """Build the key from DO bit, type, class, mask, client address and name.

    The address is included only for a non-zero mask and should already be
    masked by the caller.
    """
    q = msg.question[0]
    key = struct.pack("!BHHB", int(_do_bit(msg)), q.rdtype, q.rdclass, mask & 0xFF)
    if mask != 0 and ecs_ip is not None:
        key += ecs_ip.packed
    return key + _qname(q)


def is_dnssec(rr) -> bool:
    """Return True for NSEC, NSEC3, DS, DNSKEY, RRSIG and SIG records."""
    return rr.rdtype in _DNSSEC_TYPES


def filter_rr_list(
    rrs: Iterable[dns.rrset.RRset], do: bool, ttl: int, except_type: int
) -> list[dns.rrset.RRset]:
    """Return copies of rrs without OPT, and without DNSSEC unless do is set.

    DNSSEC records of except_type are kept; a non-zero ttl replaces the TTLs.
    """
    filtered = []
    for rrset in rrs:
        if rrset.rdtype == dns.rdatatype.OPT:
            continue
        if not do and is_dnssec(rrset) and rrset.rdtype != except_type:
            continue
        copied = rrset.copy()
        if ttl != 0:
            copied.ttl = ttl
        filtered.append(copied)
    return filtered


def filter_msg(
    dst: dns.message.Message, msg: dns.message.Message, ad: bool, do: bool, ttl: int
) -> None:
    """Fill dst's sections with msg's filtered records and adjust its AD bit."""
    # RFC 6840: AD is set only when the request had DO or AD set.
    if not (ad or do):
        dst.flags &= ~dns.flags.AD

    qtype = msg.question[0].rdtype if msg.question else dns.rdatatype.NONE
    dst.answer = filter_rr_list(msg.answer, do, ttl, qtype)
    dst.authority = filter_rr_list(msg.authority, do, ttl, dns.rdatatype.NONE)
    dst.additional = filter_rr_list(msg.additional, do, ttl, dns.rdatatype.NONE)