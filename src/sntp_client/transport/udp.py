"""UDP transport for SNTP queries.

One socket per exchange: the socket is created, used for a single
send/receive round trip and closed again before control returns to the
caller, whether the exchange succeeded, timed out or failed. Retries are
left to the caller.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator, List, Optional, Tuple, Union

from sntp_client.utils.errors import (
    NtpConfigurationError,
    NtpTimeoutError,
    NtpTransportError,
)
from sntp_client.utils.logging_config import get_logger

logger = get_logger(__name__)

NTP_PORT = 123
RECV_BUFFER = 1024  # room for extension fields and MAC

SockAddr = Tuple[Any, ...]
Address = Tuple[int, SockAddr]  # (family, sockaddr)


@dataclass(frozen=True)
class Endpoint:
    """Destination of a query: an address literal or a host name, plus a port."""

    host: str
    port: int = NTP_PORT

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host.strip():
            raise NtpConfigurationError(f"invalid host: {self.host!r}")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 0 < self.port <= 65535:
            raise NtpConfigurationError(f"invalid port: {self.port!r}")

    @property
    def family(self) -> int:
        """AF_INET/AF_INET6 for address literals, AF_UNSPEC for host names."""
        try:
            ip = ipaddress.ip_address(self.host)
        except ValueError:
            return socket.AF_UNSPEC
        return socket.AF_INET6 if ip.version == 6 else socket.AF_INET

    @property
    def is_literal(self) -> bool:
        return self.family != socket.AF_UNSPEC

    @classmethod
    def parse(
        cls,
        value: Union["Endpoint", str, Tuple[str, int], ipaddress.IPv4Address, ipaddress.IPv6Address],
        port: Optional[int] = None,
    ) -> "Endpoint":
        """Build an endpoint from any of the accepted server notations.

        Accepted: ``Endpoint``, ``(host, port)``, ``ipaddress`` objects,
        ``"192.0.2.1"``, ``"2001:db8::1"``, ``"[2001:db8::1]:123"``,
        ``"time.example.com"`` and ``"time.example.com:123"``. A port may be
        given either inside ``value`` or as ``port``, not both.
        """
        if isinstance(value, Endpoint):
            if port is not None and port != value.port:
                raise NtpConfigurationError("port given both in endpoint and as argument")
            return value

        if isinstance(value, tuple):
            if len(value) != 2:
                raise NtpConfigurationError(f"endpoint tuple must be (host, port), got {value!r}")
            if port is not None and port != value[1]:
                raise NtpConfigurationError("port given both in endpoint and as argument")
            host, embedded = value
            return cls(str(host), embedded)

        if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return cls(str(value), NTP_PORT if port is None else port)

        if not isinstance(value, str):
            raise NtpConfigurationError(f"unsupported endpoint type: {type(value).__name__}")

        host, embedded = split_host_port(value.strip())
        if embedded is not None and port is not None and embedded != port:
            raise NtpConfigurationError("port given both in endpoint and as argument")
        if embedded is None:
            embedded = NTP_PORT if port is None else port
        return cls(host, embedded)

    def __str__(self):
        if self.family == socket.AF_INET6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def split_host_port(text: str) -> Tuple[str, Optional[int]]:
    if text.startswith("["):
        close = text.find("]")
        if close == -1:
            raise NtpConfigurationError(f"unterminated IPv6 literal: {text!r}")
        host, rest = text[1:close], text[close + 1:]
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise NtpConfigurationError(f"invalid endpoint: {text!r}")
        return host, _parse_port(rest[1:], text)
    if text.count(":") == 1:
        host, port_text = text.split(":", 1)
        return host, _parse_port(port_text, text)
    # bare host name, IPv4 literal or unbracketed IPv6 literal
    return text, None


def _parse_port(port_text: str, original: str) -> int:
    try:
        return int(port_text)
    except ValueError:
        raise NtpConfigurationError(f"invalid port in endpoint {original!r}") from None


def select_family(family: int) -> int:
    """Socket family to use for an endpoint family.

    Host names (AF_UNSPEC) get a dual-stack IPv6 socket so IPv4 servers stay
    reachable through IPv4-mapped addresses.
    """
    if family == socket.AF_UNSPEC:
        return socket.AF_INET6 if socket.has_ipv6 else socket.AF_INET
    return family


def open_socket(family: int, timeout: float) -> socket.socket:
    """Create a UDP socket with the receive deadline already applied."""
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as e:
        raise NtpTransportError(f"cannot create UDP socket: {e}") from e

    try:
        sock.settimeout(timeout)
        if family == socket.AF_INET6:
            _enable_dual_stack(sock)
    except (OSError, OverflowError, ValueError) as e:
        sock.close()
        raise NtpTransportError(f"cannot configure UDP socket: {e}") from e

    logger.debug("Socket opened", family=socket.AddressFamily(family).name, timeout=timeout)
    return sock


def _enable_dual_stack(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
    except (AttributeError, OSError) as e:
        # Platform without dual-stack support; IPv6 destinations still work.
        logger.debug("IPV6_V6ONLY could not be cleared", error=str(e))


def _addresses(endpoint: Endpoint, infos: list) -> List[Address]:
    addresses = [(info[0], info[4]) for info in infos if info[0] in (socket.AF_INET, socket.AF_INET6)]
    if not addresses:
        raise NtpConfigurationError(f"no usable address for {endpoint.host}")
    return addresses


def _lookup_family(endpoint: Endpoint) -> int:
    return endpoint.family if endpoint.is_literal else socket.AF_UNSPEC


def resolve(endpoint: Endpoint) -> List[Address]:
    """Resolve an endpoint with the platform resolver."""
    try:
        infos = socket.getaddrinfo(
            endpoint.host, endpoint.port, _lookup_family(endpoint), socket.SOCK_DGRAM
        )
    except (socket.gaierror, UnicodeError) as e:
        raise NtpConfigurationError(f"cannot resolve {endpoint.host}: {e}") from e
    return _addresses(endpoint, infos)


async def resolve_async(endpoint: Endpoint) -> List[Address]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(
            endpoint.host, endpoint.port, family=_lookup_family(endpoint), type=socket.SOCK_DGRAM
        )
    except (socket.gaierror, UnicodeError) as e:
        raise NtpConfigurationError(f"cannot resolve {endpoint.host}: {e}") from e
    return _addresses(endpoint, infos)


def pick_address(addresses: List[Address], family: int) -> SockAddr:
    """Choose the destination for a socket of ``family``.

    A dual-stack IPv6 socket reaches IPv4-only hosts through the
    ``::ffff:a.b.c.d`` mapped form.
    """
    for addr_family, sockaddr in addresses:
        if addr_family == family:
            return sockaddr
    if family == socket.AF_INET6:
        for addr_family, sockaddr in addresses:
            if addr_family == socket.AF_INET:
                return (f"::ffff:{sockaddr[0]}", sockaddr[1], 0, 0)
    raise NtpConfigurationError(
        f"no {socket.AddressFamily(family).name} address available"
    )


def round_trip(sock: socket.socket, payload: bytes, address: SockAddr) -> Tuple[bytes, float]:
    """Send one datagram and block for one reply.

    Returns the reply bytes and the local arrival time (Unix seconds).
    """
    try:
        sock.sendto(payload, address)
        logger.debug("Datagram sent", address=address[0], port=address[1], size=len(payload))
        data, _ = sock.recvfrom(RECV_BUFFER)
        arrival = time.time()
    except socket.timeout as e:
        raise NtpTimeoutError(
            f"no reply from {address[0]}:{address[1]} within {sock.gettimeout()}s"
        ) from e
    except OSError as e:
        raise NtpTransportError(f"UDP exchange with {address[0]}:{address[1]} failed: {e}") from e

    logger.debug("Datagram received", size=len(data))
    return data, arrival


class _ReplyProtocol(asyncio.DatagramProtocol):
    """Resolves a future with the first datagram received."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.reply: asyncio.Future = loop.create_future()

    def datagram_received(self, data: bytes, addr) -> None:
        if not self.reply.done():
            self.reply.set_result((data, time.time()))

    def error_received(self, exc: Exception) -> None:
        if not self.reply.done():
            self.reply.set_exception(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None and not self.reply.done():
            self.reply.set_exception(exc)


class UdpChannel:
    """A ready socket bound for one endpoint."""

    def __init__(self, sock: socket.socket, address: SockAddr):
        self.sock = sock
        self.address = address

    def round_trip(self, payload: bytes) -> Tuple[bytes, float]:
        return round_trip(self.sock, payload, self.address)


class AsyncUdpChannel:
    """Asyncio counterpart of ``UdpChannel``."""

    def __init__(self, transport: asyncio.DatagramTransport, protocol: _ReplyProtocol,
                 address: SockAddr, timeout: float):
        self.transport = transport
        self.protocol = protocol
        self.address = address
        self.timeout = timeout

    async def round_trip(self, payload: bytes) -> Tuple[bytes, float]:
        """Send ``payload``; suspend only while waiting for the reply."""
        host, port = self.address[0], self.address[1]
        self.transport.sendto(payload, self.address)
        logger.debug("Datagram sent", address=host, port=port, size=len(payload))
        try:
            data, arrival = await asyncio.wait_for(self.protocol.reply, self.timeout)
        except asyncio.TimeoutError as e:
            raise NtpTimeoutError(f"no reply from {host}:{port} within {self.timeout}s") from e
        except OSError as e:
            raise NtpTransportError(f"UDP exchange with {host}:{port} failed: {e}") from e

        logger.debug("Datagram received", size=len(data))
        return data, arrival


class UdpTransport:
    """Hands out one freshly opened socket per exchange."""

    def __init__(self, endpoint: Endpoint, timeout: float):
        self.endpoint = endpoint
        self.timeout = timeout

    def _open(self, addresses: List[Address]) -> Tuple[socket.socket, SockAddr]:
        family = select_family(self.endpoint.family)
        try:
            sock = open_socket(family, self.timeout)
        except NtpTransportError:
            if self.endpoint.is_literal:
                raise
            # IPv6 disabled on this host: prefer an IPv4 result.
            family = next((f for f, _ in addresses if f == socket.AF_INET), addresses[0][0])
            logger.debug("Dual-stack socket unavailable, falling back",
                         family=socket.AddressFamily(family).name)
            sock = open_socket(family, self.timeout)

        try:
            address = pick_address(addresses, family)
        except NtpConfigurationError:
            sock.close()
            raise
        return sock, address

    @contextmanager
    def connect(self) -> Iterator[UdpChannel]:
        """Resolve the endpoint and yield a channel; the socket is closed on exit."""
        addresses = resolve(self.endpoint)
        sock, address = self._open(addresses)
        with sock:
            yield UdpChannel(sock, address)

    @asynccontextmanager
    async def connect_async(self) -> AsyncIterator[AsyncUdpChannel]:
        loop = asyncio.get_running_loop()
        addresses = await resolve_async(self.endpoint)
        sock, address = self._open(addresses)
        sock.setblocking(False)

        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _ReplyProtocol(loop), sock=sock
            )
        except OSError as e:
            sock.close()
            raise NtpTransportError(f"cannot create datagram endpoint: {e}") from e

        try:
            yield AsyncUdpChannel(transport, protocol, address, self.timeout)
        finally:
            transport.close()

    def exchange(self, payload: bytes) -> Tuple[bytes, float]:
        """Send ``payload`` once and return ``(reply, arrival_time)``."""
        with self.connect() as channel:
            return channel.round_trip(payload)

    async def exchange_async(self, payload: bytes) -> Tuple[bytes, float]:
        async with self.connect_async() as channel:
            return await channel.round_trip(payload)
