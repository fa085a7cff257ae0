"""Sending requests to upstream servers according to the configured mode."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import IntEnum

import dns.message
import dns.rcode
import dns.rdatatype

from dnsforward.fastip.fastest import FastestAddr, Upstream

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
"""Round-trip time, in milliseconds, charged to an upstream that failed."""


class UpstreamMode(IntEnum):
    """How upstream servers are queried."""

    LOAD_BALANCE = 0
    PARALLEL = 1
    FASTEST_ADDR = 2


class AllUpstreamsFailedError(Exception):
    """Raised when no upstream could answer; errors holds each failure."""

    def __init__(self, message: str, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{message}: {details}" if details else message)


def exchange_with_upstream(
    upstream: Upstream, req: dns.message.Message
) -> tuple[dns.message.Message, int]:
    """Exchange req with upstream; return the reply and elapsed milliseconds."""
    question = req.question[0].to_text() if req.question else ""
    start = time.monotonic()
    try:
        reply = upstream.exchange(req)
    except Exception as err:
        elapsed = time.monotonic() - start
        logger.debug(
            "upstream %s failed to exchange %s in %.3fs. Cause: %s",
            upstream.address(),
            question,
            elapsed,
            err,
        )
        raise
    elapsed = time.monotonic() - start
    logger.debug(
        "upstream %s successfully finished exchange of %s. Elapsed %.3fs.",
        upstream.address(),
        question,
        elapsed,
    )
    return reply, int(elapsed * 1000)


class Exchanger:
    """Sends requests to upstreams and tracks their round-trip times."""

    def __init__(
        self,
        mode: UpstreamMode = UpstreamMode.LOAD_BALANCE,
        only_ok: bool = False,
        fastest_addr: FastestAddr | None = None,
    ) -> None:
        self.mode = mode
        self.only_ok = only_ok
        self.fastest_addr = fastest_addr if fastest_addr is not None else FastestAddr()
        self._rtt_stats: dict[str, int] = {}
        self._rtt_lock = threading.Lock()

    def exchange(
        self, req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Send req to upstreams and return the reply with the upstream that gave it."""
        upstreams = list(upstreams)
        qtype = req.question[0].rdtype
        if self.mode == UpstreamMode.FASTEST_ADDR and qtype in (
            dns.rdatatype.A,
            dns.rdatatype.AAAA,
        ):
            return self.fastest_addr.exchange_fastest(req, upstreams)

        if self.mode == UpstreamMode.PARALLEL:
            return self._exchange_parallel(req, upstreams)

        if len(upstreams) == 1:
            reply, _ = exchange_with_upstream(upstreams[0], req)
            return reply, upstreams[0]

        errors = []
        for upstream in self.sorted_upstreams(upstreams):
            try:
                reply, elapsed = exchange_with_upstream(upstream, req)
            except Exception as err:
                errors.append(err)
                self.update_rtt(upstream.address(), DEFAULT_TIMEOUT_MS)
                continue
            self.update_rtt(upstream.address(), elapsed)
            return reply, upstream

        raise AllUpstreamsFailedError("all upstreams failed to exchange request", errors)

    def _exchange_parallel(
        self, req: dns.message.Message, upstreams: list[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        if not upstreams:
            raise ValueError("no upstream specified")
        if len(upstreams) == 1:
            reply, _ = exchange_with_upstream(upstreams[0], req)
            return reply, upstreams[0]

        pool = ThreadPoolExecutor(max_workers=len(upstreams))
        try:
            futures = {pool.submit(exchange_with_upstream, u, req): u for u in upstreams}
            errors = []
            fallback = None
            for fut in as_completed(futures):
                upstream = futures[fut]
                try:
                    reply, _ = fut.result()
                except Exception as err:
                    errors.append(err)
                    continue
                if self.only_ok and reply.rcode() != dns.rcode.NOERROR:
                    if fallback is None:
                        fallback = (reply, upstream)
                    continue
                return reply, upstream
            if fallback is not None:
                return fallback
            raise AllUpstreamsFailedError("all upstreams failed to respond", errors)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def sorted_upstreams(self, upstreams: Iterable[Upstream]) -> list[Upstream]:
        """Return a copy of upstreams ordered from the fastest to the slowest."""
        with self._rtt_lock:
            stats = dict(self._rtt_stats)
        return sorted(upstreams, key=lambda u: stats.get(u.address(), 0))

    def update_rtt(self, address: str, rtt: int) -> None:
        """Average rtt into the recorded round-trip time of address."""
        with self._rtt_lock:
            self._rtt_stats[address] = (self._rtt_stats.get(address, 0) + rtt) // 2