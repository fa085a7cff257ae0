import ipaddress
import socket

import pytest

from dnsforward.fastip.ping import PingResult, ping_tcp

LOCALHOST = ipaddress.ip_address("127.0.0.1")


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock
    sock.close()


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_ping_listening_port(listener):
    port = listener.getsockname()[1]
    res = ping_tcp(LOCALHOST, port, 2.0)
    assert res.success is True
    assert res.ip == LOCALHOST
    assert res.port == port
    assert res.latency >= 0


def test_ping_closed_port():
    port = _free_port()
    res = ping_tcp(LOCALHOST, port, 2.0)
    assert res.success is False
    assert res.port == port


def test_ping_accepts_string_address(listener):
    port = listener.getsockname()[1]
    res = ping_tcp("127.0.0.1", port)
    assert res.ip == LOCALHOST
    assert res.success is True


def test_ping_result_defaults():
    res = PingResult(ip=LOCALHOST)
    assert (res.port, res.latency, res.success) == (0, 0, False)