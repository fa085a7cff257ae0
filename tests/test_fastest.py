import ipaddress
import socket
import threading
import time

import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from dnsforward.fastip.fastest import (
    ExchangeAllResult,
    FastestAddr,
    Upstream,
    contains_ip,
    exchange_all,
    has_in_answer,
)
from dnsforward.fastip.ping import PING_TCP_TIMEOUT, PingResult, ping_tcp

LOCALHOST = ipaddress.ip_address("127.0.0.1")


class DesiredError(Exception):
    pass


class ErrUpstream(Upstream):
    def __init__(self, err):
        self.err = err

    def exchange(self, msg):
        raise self.err

    def address(self):
        return "err"


class FakeAUpstream(Upstream):
    def __init__(self, *ips):
        self.ips = list(ips)

    def exchange(self, msg):
        resp = dns.message.make_response(msg)
        name = msg.question[0].name
        for ip in self.ips:
            resp.answer.append(dns.rrset.from_text(name, 60, "IN", "A", ip))
        return resp

    def address(self):
        return ""


def a_request(name="fastest.example."):
    return dns.message.make_query(name, dns.rdatatype.A)


def first_a(msg):
    return ipaddress.ip_address(next(iter(msg.answer[0])).address)


def listen():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    return sock


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def eventually(pred, timeout=PING_TCP_TIMEOUT, tick=PING_TCP_TIMEOUT / 16):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(tick)
    return pred()


def cached_with_status(f, ip, status):
    return lambda: (ce := f.cache.find(ip)) is not None and ce.status == status


def blocking_pinger(event):
    def pinger(ip, port, timeout):
        event.wait(5)
        return PingResult(ip=ip, port=port, success=False)

    return pinger


# exchange_fastest


def test_exchange_fastest_error():
    f = FastestAddr()
    with pytest.raises(DesiredError):
        f.exchange_fastest(a_request(), [ErrUpstream(DesiredError("this is expected"))])


def test_exchange_fastest_one_dead():
    sock = listen()
    try:
        port = sock.getsockname()[1]
        f = FastestAddr(ping_ports=[port])
        alive = FakeAUpstream("127.0.0.1")
        dead = FakeAUpstream("192.0.2.1")

        rep, up = f.exchange_fastest(a_request(), [dead, alive])
    finally:
        sock.close()

    assert up is alive
    assert rep.answer
    assert rep.answer[0].rdtype == dns.rdatatype.A
    assert first_a(rep) == LOCALHOST


def test_exchange_fastest_all_dead():
    f = FastestAddr(ping_ports=[free_port()])
    up = FakeAUpstream("127.0.0.1", "127.0.0.2", "127.0.0.3")

    resp, _ = f.exchange_fastest(a_request(), [up])

    assert resp.answer
    assert resp.answer[0].rdtype == dns.rdatatype.A
    assert first_a(resp) == LOCALHOST


def test_prepare_reply_keeps_only_fastest():
    f = FastestAddr()
    up = FakeAUpstream("10.0.0.1", "10.0.0.2")
    resp = up.exchange(a_request())
    ip = ipaddress.ip_address("10.0.0.2")

    msg, u = f.prepare_reply(PingResult(ip=ip, success=True), [ExchangeAllResult(resp, up)])

    assert u is up
    addrs = [ipaddress.ip_address(rd.address) for rrset in msg.answer for rd in rrset]
    assert addrs == [ip]


def test_has_in_answer_and_contains_ip():
    resp = FakeAUpstream("10.0.0.1").exchange(a_request())
    assert has_in_answer(resp, ipaddress.ip_address("10.0.0.1"))
    assert not has_in_answer(resp, ipaddress.ip_address("10.0.0.9"))
    ips = [ipaddress.ip_address("10.0.0.1")]
    assert contains_ip(ips, ipaddress.ip_address("::ffff:10.0.0.1"))
    assert not contains_ip(ips, ipaddress.ip_address("10.0.0.2"))
    assert not contains_ip([], ipaddress.ip_address("10.0.0.1"))


def test_exchange_all_skips_failures():
    good = FakeAUpstream("10.0.0.1")
    results = exchange_all([ErrUpstream(DesiredError("x")), good], a_request())
    assert [r.upstream for r in results] == [good]


# ping_all: timeout


def test_ping_all_timeout_isolated():
    event = threading.Event()
    f = FastestAddr(ping_wait_timeout=0.2, pinger=blocking_pinger(event))
    try:
        res = f.ping_all("", [LOCALHOST, LOCALHOST])
    finally:
        event.set()
    assert res is None


def test_ping_all_timeout_cached():
    lat = 42
    ip1, ip2 = LOCALHOST, ipaddress.ip_address("127.0.0.2")
    event = threading.Event()
    f = FastestAddr(ping_wait_timeout=0.2, pinger=blocking_pinger(event))
    f.cache.add_successful(ip1, lat)
    try:
        res = f.ping_all("", [ip1, ip2])
    finally:
        event.set()
    assert res is not None
    assert res.success is True
    assert res.latency == lat


# ping_all: cache


def test_ping_all_cached_failed():
    f = FastestAddr()
    f.cache.add_failure(LOCALHOST)
    assert f.ping_all("", [LOCALHOST, LOCALHOST]) is None


def test_ping_all_cached_successful():
    f = FastestAddr()
    f.cache.add_successful(LOCALHOST, 1)
    res = f.ping_all("", [LOCALHOST, LOCALHOST])
    assert res is not None
    assert res.success is True
    assert res.latency == 1


def test_ping_all_not_cached():
    sock = listen()
    port = sock.getsockname()[1]
    calls = []
    lock = threading.Lock()

    def pinger(ip, p, timeout):
        with lock:
            calls.append((ip, p))
        return ping_tcp(ip, p, timeout)

    try:
        f = FastestAddr(ping_ports=[port], pinger=pinger)
        res = f.ping_all("", [LOCALHOST, LOCALHOST])
        assert res is not None
        assert res.success is True
        assert eventually(cached_with_status(f, LOCALHOST, 0))
        assert eventually(lambda: len(calls) == 2)
    finally:
        sock.close()
    assert all(ip == LOCALHOST and p in f.ping_ports for ip, p in calls)


# ping_all: general


def test_ping_all_single():
    f = FastestAddr()
    res = f.ping_all("", [LOCALHOST])
    assert res is not None
    assert res.success is True
    assert res.ip == LOCALHOST
    assert res.port == 0
    assert f.cache.find(res.ip) is None


def test_ping_all_fastest():
    fast, slow = listen(), listen()
    fast_port, slow_port = fast.getsockname()[1], slow.getsockname()[1]
    release = threading.Event()

    def pinger(ip, port, timeout):
        assert port in (fast_port, slow_port)
        if port != fast_port:
            release.wait(5)
        return ping_tcp(ip, port, timeout)

    try:
        f = FastestAddr(ping_ports=[fast_port, slow_port], pinger=pinger)
        res = f.ping_all("", [LOCALHOST, LOCALHOST])
        release.set()

        assert res is not None
        assert res.success is True
        assert res.ip == LOCALHOST
        assert res.port == fast_port
        assert eventually(cached_with_status(f, LOCALHOST, 0))
    finally:
        release.set()
        fast.close()
        slow.close()


def test_ping_all_zero():
    assert FastestAddr().ping_all("", []) is None


def test_ping_all_fail():
    f = FastestAddr(ping_ports=[free_port()])
    res = f.ping_all("test", [LOCALHOST, LOCALHOST])
    assert res is None
    assert eventually(cached_with_status(f, LOCALHOST, 1))