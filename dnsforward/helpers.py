"""Helpers for building synthetic responses and handling ECS."""

from __future__ import annotations

import ipaddress
import logging

import dns.edns
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.SOA
import dns.rrset

logger = logging.getLogger(__name__)

RETRY_NO_ERROR = 60
NEGATIVE_CACHING_NS = "fake-for-negative-caching.invalid."

_DEFAULT_ECS_V4 = 24
# Seven octets: some public resolvers refuse longer masks.
_DEFAULT_ECS_V6 = 56


def _reply_to(request: dns.message.Message, rcode: int) -> dns.message.Message:
    resp = dns.message.Message(id=request.id)
    resp.flags = dns.flags.QR | (request.flags & (dns.flags.RD | dns.flags.CD))
    resp.set_opcode(request.opcode())
    if request.question:
        q = request.question[0]
        resp.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]
    resp.set_rcode(rcode)
    return resp


def check_disabled_aaaa_request(ctx, ipv6_disabled: bool) -> bool:
    """Answer an AAAA request with an empty NOERROR if IPv6 is disabled."""
    if ipv6_disabled and ctx.req.question[0].rdtype == dns.rdatatype.AAAA:
        logger.debug(
            "IPv6 is disabled. Reply with NoError to %s AAAA request",
            ctx.req.question[0].name,
        )
        ctx.res = gen_empty_no_error(ctx.req)
        return True
    return False


def gen_empty_message(request: dns.message.Message, rcode: int, retry: int) -> dns.message.Message:
    """Build an empty response with the given rcode and an SOA authority."""
    resp = _reply_to(request, rcode)
    resp.flags |= dns.flags.RA
    resp.authority = gen_soa(request, retry)
    return resp


def gen_empty_no_error(request: dns.message.Message) -> dns.message.Message:
    """Build an empty NOERROR response."""
    return gen_empty_message(request, dns.rcode.NOERROR, RETRY_NO_ERROR)


def gen_soa(request: dns.message.Message, retry: int) -> list[dns.rrset.RRset]:
    """Build the authority section holding a synthetic SOA record."""
    zone = request.question[0].name if request.question else dns.name.root
    zone_text = zone.to_text()
    mbox = "hostmaster."
    if zone_text and not zone_text.startswith("."):
        mbox += zone_text
    soa = dns.rdtypes.ANY.SOA.SOA(
        dns.rdataclass.IN,
        dns.rdatatype.SOA,
        dns.name.from_text(NEGATIVE_CACHING_NS),
        dns.name.from_text(mbox),
        100500,
        1800,
        retry,
        604800,
        86400,
    )
    return [dns.rrset.from_rdata(zone, 10, soa)]


def ecs_from_msg(msg: dns.message.Message):
    """Return (subnet, scope) from the message's ECS option, or (None, 0)."""
    if msg.edns < 0:
        return None, 0
    for opt in msg.options:
        if not isinstance(opt, dns.edns.ECSOption) or opt.family not in (1, 2):
            continue
        subnet = ipaddress.ip_network(f"{opt.address}/{opt.srclen}", strict=False)
        return subnet, opt.scopelen
    return None, 0


def set_ecs(msg: dns.message.Message, ip, scope: int):
    """Add an ECS option for ip to msg and return the masked subnet."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    prefix = _DEFAULT_ECS_V4 if ip.version == 4 else _DEFAULT_ECS_V6
    subnet = ipaddress.ip_network((ip, prefix), strict=False)
    option = dns.edns.ECSOption(str(subnet.network_address), prefix, scope)

    if msg.edns >= 0:
        msg.use_edns(
            msg.edns,
            msg.ednsflags,
            msg.payload,
            request_payload=msg.request_payload,
            options=[*msg.options, option],
        )
    else:
        msg.use_edns(0, 0, 4096, options=[option])
    return subnet