"""Query several resolvers, ping every returned address and keep the fastest."""

from __future__ import annotations

import ipaddress
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import dns.message
import dns.rdatatype
import dns.rrset

from dnsforward.bogus import ip_from_rr
from dnsforward.fastip.cache import STATUS_OK, FastestAddrCache
from dnsforward.fastip.ping import PING_TCP_TIMEOUT, PingResult, ping_tcp

logger = logging.getLogger(__name__)

DEFAULT_PING_WAIT_TIMEOUT = 1.0
"""Default time, in seconds, to wait for ping results."""

DEFAULT_PING_PORTS = (80, 443)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
Pinger = Callable[[IPAddress, int, float], PingResult]


class Upstream(ABC):
    """A DNS server that requests can be sent to."""

    @abstractmethod
    def exchange(self, msg: dns.message.Message) -> dns.message.Message:
        """Send msg and return the response, raising on failure."""

    @abstractmethod
    def address(self) -> str:
        """Return the address of the server."""


@dataclass
class ExchangeAllResult:
    """A response together with the upstream that gave it."""

    resp: dns.message.Message
    upstream: Upstream


def exchange_all(upstreams: Iterable[Upstream], req: dns.message.Message) -> list[ExchangeAllResult]:
    """Query every upstream in parallel and return the successful responses.

    If every upstream fails, the first failure is raised.
    """
    upstreams = list(upstreams)
    if not upstreams:
        raise ValueError("no upstream specified")
    if len(upstreams) == 1:
        u = upstreams[0]
        return [ExchangeAllResult(u.exchange(req), u)]

    with ThreadPoolExecutor(max_workers=len(upstreams)) as pool:
        futures = [(pool.submit(u.exchange, req), u) for u in upstreams]
        results = []
        errors = []
        for fut, u in futures:
            try:
                resp = fut.result()
            except Exception as err:
                errors.append(err)
                continue
            if resp is not None:
                results.append(ExchangeAllResult(resp, u))

    if not results:
        if errors:
            raise errors[0]
        raise ValueError("no upstream replied")
    return results


def _normalize(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _same_ip(a: IPAddress, b: IPAddress) -> bool:
    return _normalize(a) == _normalize(b)


def has_in_answer(msg: dns.message.Message, ip: IPAddress) -> bool:
    """Return True if msg's answer section holds ip."""
    for rrset in msg.answer:
        for rd in rrset:
            resp_ip = ip_from_rr(rd)
            if resp_ip is not None and _same_ip(resp_ip, ip):
                return True
    return False


def contains_ip(ips: Iterable[IPAddress], ip: IPAddress) -> bool:
    """Return True if ips holds ip."""
    return any(_same_ip(i, ip) for i in ips)


def _keep_only(rrset: dns.rrset.RRset, ip: IPAddress) -> dns.rrset.RRset | None:
    if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return rrset
    kept = [rd for rd in rrset if _same_ip(ipaddress.ip_address(rd.address), ip)]
    if not kept:
        return None
    return dns.rrset.from_rdata_list(rrset.name, rrset.ttl, kept)


class FastestAddr:
    """Determines the fastest of the addresses that resolvers return."""

    def __init__(
        self,
        *,
        ping_ports: Sequence[int] = DEFAULT_PING_PORTS,
        ping_wait_timeout: float = DEFAULT_PING_WAIT_TIMEOUT,
        pinger: Pinger = ping_tcp,
        ping_tcp_timeout: float = PING_TCP_TIMEOUT,
    ) -> None:
        self.cache = FastestAddrCache()
        self.ping_ports = list(ping_ports)
        self.ping_wait_timeout = ping_wait_timeout
        self.pinger = pinger
        self.ping_tcp_timeout = ping_tcp_timeout

    def exchange_fastest(
        self, req: dns.message.Message, upstreams: Iterable[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Query all upstreams and answer with only the fastest address."""
        replies = exchange_all(upstreams, req)
        host = req.question[0].name.to_text().lower()

        ips: list[IPAddress] = []
        for r in replies:
            for rrset in r.resp.answer:
                for rd in rrset:
                    ip = ip_from_rr(rd)
                    if ip is not None and not contains_ip(ips, ip):
                        ips.append(ip)

        ping_res = self.ping_all(host, ips)
        if ping_res is not None:
            return self.prepare_reply(ping_res, replies)

        logger.debug("%s: no fastest IP found, using the first response", host)
        return replies[0].resp, replies[0].upstream

    def prepare_reply(
        self, ping_res: PingResult, replies: Sequence[ExchangeAllResult]
    ) -> tuple[dns.message.Message, Upstream]:
        """Return the reply holding the fastest address, stripped of other addresses."""
        ip = ping_res.ip
        found = next((r for r in replies if has_in_answer(r.resp, ip)), None)
        if found is None:
            logger.error("found no replies with IP %s, most likely this is a bug", ip)
            return replies[0].resp, replies[0].upstream

        msg = found.resp
        answer = []
        for rrset in msg.answer:
            kept = _keep_only(rrset, ip)
            if kept is not None:
                answer.append(kept)
        msg.answer = answer
        return msg, found.upstream

    def ping_all(self, host: str, ips: Sequence[IPAddress]) -> PingResult | None:
        """Ping ips concurrently; return the first success, a cached one, or None."""
        ips = list(ips)
        if not ips:
            return None
        if len(ips) == 1:
            return PingResult(ip=ips[0], success=True)

        results: queue.Queue[PingResult] = queue.Queue()
        scheduled = 0
        best: PingResult | None = None

        for ip in ips:
            cached = self.cache.find(ip)
            if cached is None:
                for port in self.ping_ports:
                    threading.Thread(
                        target=self._ping_do_tcp,
                        args=(host, ip, port, results),
                        daemon=True,
                    ).start()
                scheduled += len(self.ping_ports)
                continue
            if cached.status != STATUS_OK:
                continue
            if best is None or cached.latency_msec < best.latency:
                best = PingResult(ip=ip, latency=cached.latency_msec, success=True)

        have_cached = best is not None
        if scheduled == 0:
            if have_cached:
                logger.debug("pingAll: %s: return cached response: %s", host, best.ip)
            else:
                logger.debug("pingAll: %s: returning nothing", host)
            return best

        deadline = time.monotonic() + self.ping_wait_timeout
        for _ in range(scheduled):
            try:
                res = results.get(timeout=max(deadline - time.monotonic(), 0))
            except queue.Empty:
                if have_cached:
                    logger.debug(
                        "pingAll: %s: pinging timed out, returning cached: %s", host, best.ip
                    )
                else:
                    logger.debug("pingAll: %s: ping checks timed out, returning nothing", host)
                return best

            logger.debug(
                "pingAll: %s: got result for %s:%d status %s", host, res.ip, res.port, res.success
            )
            if not res.success:
                continue
            if not have_cached or best.latency >= res.latency:
                best = res
            return best

        return best

    def _ping_do_tcp(self, host: str, ip: IPAddress, port: int, results: queue.Queue) -> None:
        logger.debug("pingDoTCP: %s: connecting to %s:%d", host, ip, port)
        res = self.pinger(ip, port, self.ping_tcp_timeout)
        results.put(res)
        if res.success:
            logger.debug("pingDoTCP: %s: elapsed %d ms on %s:%d", host, res.latency, ip, port)
            self.cache.add_successful(ip, res.latency)
        else:
            logger.debug(
                "pingDoTCP: %s: failed to connect to %s:%d, elapsed %d ms",
                host,
                ip,
                port,
                res.latency,
            )
            self.cache.add_failure(ip)