"""Detection of responses that should be turned into NXDOMAIN."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

import dns.message
import dns.rdatatype

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def ip_from_rr(rr) -> IPAddress | None:
    """Return the address held by an A or AAAA record, or None for others."""
    if rr.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return ipaddress.ip_address(rr.address)
    return None


def contains_ip(subnets: Iterable[IPNetwork], ip: IPAddress | None) -> bool:
    """Return True if ip belongs to any of the subnets."""
    if ip is None:
        return False
    mapped = ip.ipv4_mapped if isinstance(ip, ipaddress.IPv6Address) else None
    for net in subnets:
        if net.version == ip.version and ip in net:
            return True
        if mapped is not None and net.version == 4 and mapped in net:
            return True
    return False


def is_bogus_nxdomain(msg: dns.message.Message | None, subnets: list[IPNetwork]) -> bool:
    """Return True if msg answers an A/AAAA question with an address in subnets."""
    if msg is None or not subnets or not msg.question:
        return False
    if msg.question[0].rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return False
    return any(
        contains_ip(subnets, ip_from_rr(rr)) for rrset in msg.answer for rr in rrset
    )