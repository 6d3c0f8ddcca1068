"""Error taxonomy for SNTP queries.

Callers are expected to treat every ``NtpError`` as "time unavailable this
cycle". ``NtpTimeoutError`` is kept apart from the other network failures so
that applications can back off before asking the same server again.
"""

from __future__ import annotations

from typing import Optional


class NtpError(Exception):
    """Base class for every failure raised by the client."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class NtpConfigurationError(NtpError, ValueError):
    """Invalid endpoint, port or timeout, or a host name that does not resolve."""


class NtpTimeoutError(NtpError, TimeoutError):
    """No reply arrived before the receive deadline."""


class NtpTransportError(NtpError):
    """Socket creation, send or receive failed for a reason other than timeout."""


class NtpProtocolError(NtpError):
    """The server answered, but the reply is malformed or not usable."""


class OriginMismatchError(NtpProtocolError):
    """The reply does not echo the originate timestamp of our query."""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"reply origin timestamp {received:#018x} does not match query {expected:#018x}"
        )
        self.expected = expected
        self.received = received


class ServerRejectedError(NtpProtocolError):
    """The server refused to serve valid time (kiss-of-death or unsynchronized)."""

    def __init__(
        self,
        message: str,
        kiss_code: Optional[str] = None,
        stratum: Optional[int] = None,
        leap_indicator: Optional[int] = None,
    ):
        super().__init__(message)
        self.kiss_code = kiss_code
        self.stratum = stratum
        self.leap_indicator = leap_indicator


class ExcessiveDelayWarning(RuntimeWarning):
    """Round-trip delay is implausibly large; the offset may be inaccurate."""
