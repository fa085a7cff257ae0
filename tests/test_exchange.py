import threading
import time

import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from dnsforward.exchange import (
    AllUpstreamsFailedError,
    Exchanger,
    UpstreamMode,
    exchange_with_upstream,
)
from dnsforward.fastip.fastest import Upstream


class UpstreamError(Exception):
    pass


class FakeUpstream(Upstream):
    def __init__(self, name, ip="10.0.0.1", rcode=dns.rcode.NOERROR, fail=False, delay=0.0):
        self.name = name
        self.ip = ip
        self.rcode = rcode
        self.fail = fail
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def exchange(self, msg):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise UpstreamError(self.name)
        resp = dns.message.make_response(msg)
        resp.set_rcode(self.rcode)
        if self.rcode == dns.rcode.NOERROR and msg.question[0].rdtype == dns.rdatatype.A:
            resp.answer.append(dns.rrset.from_text(msg.question[0].name, 60, "IN", "A", self.ip))
        return resp

    def address(self):
        return self.name


def a_request():
    return dns.message.make_query("example.com.", dns.rdatatype.A)


def test_single_upstream_success():
    up = FakeUpstream("one")
    reply, u = Exchanger().exchange(a_request(), [up])
    assert u is up
    assert reply.rcode() == dns.rcode.NOERROR
    assert up.calls == 1


def test_single_upstream_failure_raises_its_error():
    with pytest.raises(UpstreamError):
        Exchanger().exchange(a_request(), [FakeUpstream("bad", fail=True)])


def test_load_balance_falls_back_to_working_upstream():
    bad, good = FakeUpstream("bad", fail=True), FakeUpstream("good")
    ex = Exchanger()
    reply, u = ex.exchange(a_request(), [bad, good])
    assert u is good
    assert reply.rcode() == dns.rcode.NOERROR
    assert ex.sorted_upstreams([bad, good]) == [good, bad]


def test_load_balance_all_fail():
    ups = [FakeUpstream("a", fail=True), FakeUpstream("b", fail=True)]
    with pytest.raises(AllUpstreamsFailedError) as info:
        Exchanger().exchange(a_request(), ups)
    assert len(info.value.errors) == 2
    assert all(isinstance(e, UpstreamError) for e in info.value.errors)


def test_update_rtt_orders_upstreams():
    slow, fast = FakeUpstream("slow"), FakeUpstream("fast")
    ex = Exchanger()
    ex.update_rtt("slow", 500)
    ex.update_rtt("fast", 10)
    original = [slow, fast]
    assert ex.sorted_upstreams(original) == [fast, slow]
    assert original == [slow, fast]


def test_parallel_ignores_failures():
    bad, good = FakeUpstream("bad", fail=True), FakeUpstream("good")
    reply, u = Exchanger(mode=UpstreamMode.PARALLEL).exchange(a_request(), [bad, good])
    assert u is good
    assert reply.rcode() == dns.rcode.NOERROR


def test_parallel_only_ok_prefers_noerror():
    servfail = FakeUpstream("sf", rcode=dns.rcode.SERVFAIL)
    ok = FakeUpstream("ok", delay=0.1)
    ex = Exchanger(mode=UpstreamMode.PARALLEL, only_ok=True)
    reply, u = ex.exchange(a_request(), [servfail, ok])
    assert u is ok
    assert reply.rcode() == dns.rcode.NOERROR


def test_parallel_all_fail():
    ups = [FakeUpstream("a", fail=True), FakeUpstream("b", fail=True)]
    with pytest.raises(AllUpstreamsFailedError):
        Exchanger(mode=UpstreamMode.PARALLEL).exchange(a_request(), ups)


def test_fastest_mode_single_address():
    up = FakeUpstream("one", ip="127.0.0.1")
    ex = Exchanger(mode=UpstreamMode.FASTEST_ADDR)
    reply, u = ex.exchange(a_request(), [up])
    assert u is up
    addrs = [rd.address for rrset in reply.answer for rd in rrset]
    assert addrs == ["127.0.0.1"]


def test_fastest_mode_non_address_query_uses_load_balance():
    up = FakeUpstream("one")
    req = dns.message.make_query("example.com.", dns.rdatatype.MX)
    reply, u = Exchanger(mode=UpstreamMode.FASTEST_ADDR).exchange(req, [up])
    assert u is up
    assert reply.answer == []


def test_exchange_with_upstream_reports_elapsed():
    up = FakeUpstream("one", delay=0.05)
    reply, elapsed = exchange_with_upstream(up, a_request())
    assert reply.rcode() == dns.rcode.NOERROR
    assert elapsed >= 40


def test_exchange_with_upstream_raises():
    with pytest.raises(UpstreamError):
        exchange_with_upstream(FakeUpstream("bad", fail=True), a_request())