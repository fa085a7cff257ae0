"""DNS64: synthesising AAAA answers from A answers with a NAT64 prefix."""

from __future__ import annotations

import ipaddress
import logging
import threading
from collections.abc import Callable
from typing import Any

import dns.flags
import dns.message
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

logger = logging.getLogger(__name__)

NAT64_PREFIX_LENGTH = 12

Exchange = Callable[[dns.message.Message], "tuple[dns.message.Message, Any]"]


class DNS64Error(Exception):
    """Raised when a DNS64 response cannot be produced."""


def is_empty_aaaa_response(resp: dns.message.Message | None, req: dns.message.Message) -> bool:
    """Return True if req asks for AAAA and resp carries no answer."""
    return (resp is None or not resp.answer) and req.question[0].rdtype == dns.rdatatype.AAAA


def create_modified_a_request(msg: dns.message.Message) -> dns.message.Message:
    """Build an A request for the name of an AAAA request."""
    if msg.question[0].rdtype != dns.rdatatype.AAAA:
        raise DNS64Error("question is not AAAA, do nothing")
    return dns.message.make_query(msg.question[0].name, dns.rdatatype.A, dns.rdataclass.IN)


class Dns64Mapper:
    """Holds a NAT64 prefix and maps A answers into AAAA answers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._prefix = b""

    def set_prefix(self, prefix: bytes) -> None:
        """Set the NAT64 prefix; prefixes of the wrong length are ignored."""
        prefix = bytes(prefix)
        if len(prefix) != NAT64_PREFIX_LENGTH:
            return
        with self._lock:
            self._prefix = prefix
        shown = ipaddress.IPv6Address(prefix + bytes(16 - NAT64_PREFIX_LENGTH))
        logger.info("NAT64 prefix: %s", shown)

    def prefix_available(self) -> bool:
        with self._lock:
            return len(self._prefix) == NAT64_PREFIX_LENGTH

    def create_mapped_response(
        self, new_a_resp: dns.message.Message, old_aaaa_resp: dns.message.Message
    ) -> dns.message.Message:
        """Replace old_aaaa_resp's answer with the mapped A records."""
        with self._lock:
            prefix = self._prefix
        if len(prefix) != NAT64_PREFIX_LENGTH:
            raise DNS64Error("cannot create a mapped response, no NAT64 prefix specified")
        if not new_a_resp.answer:
            raise DNS64Error("no ipv4 answer")

        name = new_a_resp.question[0].name
        old_aaaa_resp.answer = []
        for rrset in new_a_resp.answer:
            if rrset.rdtype != dns.rdatatype.A:
                continue
            rdatas = [
                dns.rdata.from_text(
                    dns.rdataclass.IN,
                    dns.rdatatype.AAAA,
                    str(ipaddress.IPv6Address(prefix + ipaddress.IPv4Address(rd.address).packed)),
                )
                for rd in rrset
            ]
            old_aaaa_resp.answer.append(dns.rrset.from_rdata_list(name, rrset.ttl, rdatas))
        return old_aaaa_resp

    def check(self, req: dns.message.Message, resp: dns.message.Message | None, exchange: Exchange):
        """Resolve req's name as A through exchange and return (mapped, upstream)."""
        try:
            a_req = create_modified_a_request(req)
        except DNS64Error as err:
            logger.debug("Failed to create DNS64 mapped request %s", err)
            raise
        try:
            a_resp, upstream = exchange(a_req)
        except Exception as err:
            logger.debug("Failed to exchange DNS64 request: %s", err)
            raise

        if resp is None:
            resp = dns.message.Message(id=req.id)
            resp.flags = req.flags & dns.flags.RD
            q = req.question[0]
            resp.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]

        try:
            mapped = self.create_mapped_response(a_resp, resp)
        except DNS64Error as err:
            logger.debug("Failed to create DNS64 mapped request %s", err)
            raise
        return mapped, upstream