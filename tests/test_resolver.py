import socket

import pytest

from sntp_consensus import resolver
from sntp_consensus.exceptions import AddressResolutionError


def addrinfo(address, family=socket.AF_INET):
    return (family, socket.SOCK_DGRAM, 17, "", (address, 123))


def test_resolve_all_dedupes_in_order(monkeypatch):
    infos = [
        addrinfo("192.0.2.2"),
        addrinfo("192.0.2.1"),
        addrinfo("192.0.2.2"),
        addrinfo("2001:db8::1", socket.AF_INET6),
    ]
    calls = []

    def fake_getaddrinfo(host, port, type=0):
        calls.append((host, port, type))
        return infos

    monkeypatch.setattr(resolver.socket, "getaddrinfo", fake_getaddrinfo)

    assert resolver.resolve_all("pool.ntp.example") == ["192.0.2.2", "192.0.2.1", "2001:db8::1"]
    assert calls == [("pool.ntp.example", 123, socket.SOCK_DGRAM)]


def test_resolve_all_wraps_resolver_errors(monkeypatch):
    def fake_getaddrinfo(host, port, type=0):
        raise socket.gaierror(-2, "Name or service not known")

    monkeypatch.setattr(resolver.socket, "getaddrinfo", fake_getaddrinfo)

    with pytest.raises(AddressResolutionError) as excinfo:
        resolver.resolve_all("nowhere.invalid")
    assert excinfo.value.hostname == "nowhere.invalid"


def test_resolve_all_with_no_results(monkeypatch):
    monkeypatch.setattr(resolver.socket, "getaddrinfo", lambda host, port, type=0: [])

    with pytest.raises(AddressResolutionError):
        resolver.resolve_all("empty.example")


class FakeConnection:
    def __init__(self):
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True
        return False


def test_is_reachable(monkeypatch):
    connections = []

    def fake_create_connection(address, timeout=None):
        connections.append((address, timeout))
        return FakeConnection()

    monkeypatch.setattr(resolver.socket, "create_connection", fake_create_connection)

    assert resolver.is_reachable("192.0.2.1")
    assert connections == [(("192.0.2.1", 80), 5.0)]


def test_is_not_reachable(monkeypatch):
    def fake_create_connection(address, timeout=None):
        raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr(resolver.socket, "create_connection", fake_create_connection)

    assert not resolver.is_reachable("192.0.2.1", port=8080, timeout_millis=100)
