"""Shared fixtures: an in-process SNTP server on the loopback interface."""

import socket
import threading
import time
from typing import Callable, List, Optional

import pytest

from sntp_client.time.packet import (
    LeapIndicator,
    NtpMode,
    NtpPacket,
    to_ntp_timestamp,
)


def make_reply(
    request: NtpPacket,
    received_at: float,
    *,
    skew: float = 0.0,
    stratum: int = 2,
    leap: LeapIndicator = LeapIndicator.NO_WARNING,
    mode: NtpMode = NtpMode.SERVER,
    origin: Optional[int] = None,
    reference_id: bytes = b"GPS\x00",
) -> bytes:
    """Encode a server reply to ``request`` from a clock ``skew`` seconds ahead."""
    return NtpPacket(
        leap_indicator=leap,
        version=4,
        mode=mode,
        stratum=stratum,
        poll=6,
        precision=-20,
        root_delay=0.015625,
        root_dispersion=0.03125,
        reference_id=reference_id,
        reference_timestamp=to_ntp_timestamp(received_at + skew - 16),
        origin_timestamp=request.transmit_timestamp if origin is None else origin,
        receive_timestamp=to_ntp_timestamp(received_at + skew),
        transmit_timestamp=to_ntp_timestamp(time.time() + skew),
    ).encode()


Responder = Callable[[NtpPacket, float], Optional[bytes]]


class FakeSntpServer:
    """UDP server answering each query with whatever ``responder`` returns.

    A responder returning ``None`` leaves the query unanswered.
    """

    def __init__(self, host: str = "127.0.0.1"):
        self.host = host
        self.responder: Responder = make_reply
        self.requests: List[NtpPacket] = []
        self.running = False
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((host, 0))
        self.sock.settimeout(0.05)
        self.port = self.sock.getsockname()[1]
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self.running = True
        self.thread = threading.Thread(target=self._serve_loop, daemon=True)
        self.thread.start()

    def stop(self) -> None:
        self.running = False
        if self.thread:
            self.thread.join()
        self.sock.close()

    def _serve_loop(self) -> None:
        while self.running:
            try:
                data, addr = self.sock.recvfrom(1024)
            except socket.timeout:
                continue
            received_at = time.time()
            request = NtpPacket.decode(data)
            self.requests.append(request)
            reply = self.responder(request, received_at)
            if reply is not None:
                self.sock.sendto(reply, addr)


@pytest.fixture
def sntp_server():
    server = FakeSntpServer()
    server.start()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def silent_port():
    """A bound UDP port that never answers."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        yield s.getsockname()[1]


def _dual_stack_works() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as v4, \
                socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as v6:
            v4.bind(("127.0.0.1", 0))
            v4.settimeout(0.5)
            v6.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            v6.sendto(b"probe", ("::ffff:127.0.0.1", v4.getsockname()[1], 0, 0))
            return v4.recv(16) == b"probe"
    except (OSError, AttributeError):
        return False


@pytest.fixture
def dual_stack():
    if not _dual_stack_works():
        pytest.skip("IPv4-mapped IPv6 sockets not supported on this host")


@pytest.fixture
def fake_resolver(monkeypatch):
    """Resolve every host name to 127.0.0.1 on a chosen port.

    Returns a function taking the target port; the lookups performed are
    recorded on its ``calls`` attribute as ``(host, port, family)``.
    """
    def install(target_port: int):
        def getaddrinfo(host, port, family=0, type=0, proto=0, flags=0):
            install.calls.append((host, port, family))
            return [(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP, "", ("127.0.0.1", target_port))]

        monkeypatch.setattr(socket, "getaddrinfo", getaddrinfo)

    install.calls = []
    return install
