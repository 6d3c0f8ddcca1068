"""SNTP query/response exchange.

Most applications only need ``NtpClient().get_correction_offset()``.
``get_correction_response()`` additionally exposes the round-trip delay and
the decoded reply.

It is the application's responsibility to be a good netizen: poll public
servers at reasonable intervals and back off exponentially after
``NtpTimeoutError`` or ``ServerRejectedError``. The client itself never
retries.
"""

from __future__ import annotations

import math
import threading
import time
from datetime import timedelta
from typing import Optional, Union

from sntp_client.config.settings import Settings
from sntp_client.time.correction import DEFAULT_MAX_DELAY, CorrectionResult
from sntp_client.time.packet import (
    LeapIndicator,
    NtpMode,
    NtpPacket,
    from_ntp_timestamp,
    to_ntp_timestamp,
)
from sntp_client.transport.udp import NTP_PORT, Endpoint, UdpTransport
from sntp_client.utils.errors import (
    NtpConfigurationError,
    NtpProtocolError,
    OriginMismatchError,
    ServerRejectedError,
)
from sntp_client.utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_STRATUM = 15  # 16 means unsynchronized

TimeoutLike = Union[float, int, timedelta]


def _seconds(timeout: TimeoutLike) -> float:
    if isinstance(timeout, timedelta):
        timeout = timeout.total_seconds()
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise NtpConfigurationError(f"invalid timeout: {timeout!r}")
    if not timeout > 0:
        raise NtpConfigurationError(f"timeout must be positive, got {timeout!r}")
    if timeout > threading.TIMEOUT_MAX or not math.isfinite(timeout):
        raise NtpConfigurationError(f"timeout too large: {timeout!r}")
    return float(timeout)


def validate_reply(request: NtpPacket, reply: NtpPacket) -> None:
    """Reject replies that cannot be used for offset computation.

    Raises ``OriginMismatchError`` when the reply was not produced by
    ``request``, ``ServerRejectedError`` when the server sent a kiss-of-death
    or declares itself unsynchronized, and ``NtpProtocolError`` for other
    malformed replies.
    """
    if reply.origin_timestamp != request.transmit_timestamp:
        raise OriginMismatchError(request.transmit_timestamp, reply.origin_timestamp)

    if reply.mode not in (NtpMode.SERVER, NtpMode.BROADCAST):
        raise NtpProtocolError(f"unexpected reply mode {reply.mode.name}")

    if reply.stratum == 0:
        code = reply.kiss_code
        raise ServerRejectedError(
            f"kiss-of-death from server: {code or 'no code'}",
            kiss_code=code,
            stratum=reply.stratum,
            leap_indicator=int(reply.leap_indicator),
        )

    if reply.leap_indicator == LeapIndicator.ALARM or reply.stratum > MAX_STRATUM:
        raise ServerRejectedError(
            f"server clock is not synchronized (leap={int(reply.leap_indicator)}, stratum={reply.stratum})",
            stratum=reply.stratum,
            leap_indicator=int(reply.leap_indicator),
        )

    if reply.transmit_timestamp == 0:
        raise NtpProtocolError("reply has no transmit timestamp")


class NtpClient:
    """Queries one RFC 4330 SNTP/NTP server over UDP.

    ``endpoint`` may be a host name, an IPv4/IPv6 literal (string or
    ``ipaddress`` object), ``"host:port"``, a ``(host, port)`` tuple or an
    ``Endpoint``. ``timeout`` is in seconds (``timedelta`` also accepted)
    and may be changed between calls; it must not be changed while a call
    is in flight.
    """

    DEFAULT_ENDPOINT = "pool.ntp.org"
    DEFAULT_PORT = NTP_PORT
    DEFAULT_TIMEOUT = 1.0

    def __init__(
        self,
        endpoint=DEFAULT_ENDPOINT,
        timeout: Optional[TimeoutLike] = None,
        port: Optional[int] = None,
        max_delay: float = DEFAULT_MAX_DELAY,
    ):
        self._endpoint = Endpoint.parse(endpoint, port)
        self.timeout = self.DEFAULT_TIMEOUT if timeout is None else timeout
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "NtpClient":
        settings = settings or Settings()
        return cls(
            settings.SERVER,
            timeout=settings.TIMEOUT,
            port=settings.PORT,
            max_delay=settings.MAX_DELAY,
        )

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def timeout(self) -> float:
        return self._timeout

    @timeout.setter
    def timeout(self, value: TimeoutLike) -> None:
        self._timeout = _seconds(value)

    def __repr__(self):
        return f"NtpClient(endpoint={str(self._endpoint)!r}, timeout={self._timeout})"

    def _transport(self) -> UdpTransport:
        return UdpTransport(self._endpoint, self._timeout)

    def _prepare(self) -> NtpPacket:
        return NtpPacket.request(to_ntp_timestamp(time.time()))

    def _complete(self, request: NtpPacket, data: bytes, arrival: float, stacklevel: int) -> CorrectionResult:
        reply = NtpPacket.decode(data)
        validate_reply(request, reply)

        result = CorrectionResult.from_timestamps(
            from_ntp_timestamp(request.transmit_timestamp),
            reply.receive_time,
            reply.transmit_time,
            arrival,
            reply=reply,
            max_delay=self.max_delay,
            stacklevel=stacklevel + 1,
        )
        logger.debug(
            "Correction computed",
            server=str(self._endpoint),
            offset=result.offset,
            delay=result.delay,
            stratum=reply.stratum,
        )
        return result

    # stacklevel counts frames from _query up to the application's call site,
    # so ExcessiveDelayWarning is attributed to user code.
    def _query(self, stacklevel: int) -> CorrectionResult:
        with self._transport().connect() as channel:
            # T1 is taken after resolution and socket setup, right before sending.
            request = self._prepare()
            data, arrival = channel.round_trip(request.encode())
        return self._complete(request, data, arrival, stacklevel + 1)

    async def _query_async(self, stacklevel: int) -> CorrectionResult:
        async with self._transport().connect_async() as channel:
            request = self._prepare()
            data, arrival = await channel.round_trip(request.encode())
        return self._complete(request, data, arrival, stacklevel + 1)

    def get_correction_response(self) -> CorrectionResult:
        """Query the server and return offset, delay and the decoded reply."""
        return self._query(stacklevel=3)

    def get_correction_offset(self) -> float:
        """Seconds to add to the local clock to match the server."""
        return self._query(stacklevel=3).offset

    async def get_correction_response_async(self) -> CorrectionResult:
        return await self._query_async(stacklevel=3)

    async def get_correction_offset_async(self) -> float:
        return (await self._query_async(stacklevel=3)).offset
