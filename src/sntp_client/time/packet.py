"""RFC 4330 message codec.

Only the fixed 48-byte header is handled; extension fields and the optional
authenticator that may follow it are ignored on decode and never produced.

Timestamps stay in their raw 64-bit 32.32 fixed-point form inside
``NtpPacket`` so that the originate timestamp a server echoes back can be
compared bit for bit with the one we sent. Use ``to_ntp_timestamp`` and
``from_ntp_timestamp`` to move between raw values and Unix epoch seconds.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from sntp_client.utils.errors import NtpProtocolError


PACKET_FORMAT = "!BBbbII4sQQQQ"
PACKET_SIZE = struct.calcsize(PACKET_FORMAT)  # 48

NTP_VERSION = 4
NTP_DELTA = 2208988800  # 1900-01-01 to 1970-01-01 in seconds
ERA_SECONDS = 2**32
FRACTION = 2**32
SHORT_FRACTION = 2**16


class LeapIndicator(IntEnum):
    NO_WARNING = 0
    LAST_MINUTE_HAS_61_SECONDS = 1
    LAST_MINUTE_HAS_59_SECONDS = 2
    ALARM = 3  # clock not synchronized


class NtpMode(IntEnum):
    RESERVED = 0
    SYMMETRIC_ACTIVE = 1
    SYMMETRIC_PASSIVE = 2
    CLIENT = 3
    SERVER = 4
    BROADCAST = 5
    CONTROL = 6
    PRIVATE = 7


def to_ntp_timestamp(unix_seconds: float) -> int:
    """Convert Unix epoch seconds to a raw 64-bit NTP timestamp."""
    whole = math.floor(unix_seconds)
    frac = int((unix_seconds - whole) * FRACTION)
    seconds = (whole + NTP_DELTA) % ERA_SECONDS
    return (seconds << 32) | (frac & 0xFFFFFFFF)


def from_ntp_timestamp(raw: int) -> float:
    """Convert a raw 64-bit NTP timestamp to Unix epoch seconds.

    RFC 4330 section 3: when the most significant bit of the seconds field is
    clear the value belongs to era 1, which starts 2036-02-07 06:28:16 UTC.
    """
    seconds = (raw >> 32) & 0xFFFFFFFF
    frac = raw & 0xFFFFFFFF
    if not seconds & 0x80000000:
        seconds += ERA_SECONDS
    return seconds - NTP_DELTA + frac / FRACTION


def _to_short(value: float) -> int:
    return int(round(value * SHORT_FRACTION)) & 0xFFFFFFFF


def _from_short(raw: int) -> float:
    return raw / SHORT_FRACTION


@dataclass
class NtpPacket:
    """A single SNTP message header."""

    leap_indicator: LeapIndicator = LeapIndicator.NO_WARNING
    version: int = NTP_VERSION
    mode: NtpMode = NtpMode.CLIENT
    stratum: int = 0
    poll: int = 0
    precision: int = 0
    root_delay: float = 0.0  # seconds
    root_dispersion: float = 0.0  # seconds
    reference_id: bytes = b"\x00\x00\x00\x00"
    reference_timestamp: int = 0
    origin_timestamp: int = 0
    receive_timestamp: int = 0
    transmit_timestamp: int = 0

    @classmethod
    def request(cls, transmit_timestamp: int) -> "NtpPacket":
        """Create a client query carrying our originate timestamp."""
        return cls(mode=NtpMode.CLIENT, transmit_timestamp=transmit_timestamp)

    @property
    def kiss_code(self) -> Optional[str]:
        """ASCII kiss code (e.g. ``RATE``, ``DENY``) of a stratum 0 reply."""
        if self.stratum != 0:
            return None
        code = self.reference_id.rstrip(b"\x00").decode("ascii", errors="replace")
        return code or None

    @property
    def origin_time(self) -> float:
        return from_ntp_timestamp(self.origin_timestamp)

    @property
    def receive_time(self) -> float:
        return from_ntp_timestamp(self.receive_timestamp)

    @property
    def transmit_time(self) -> float:
        return from_ntp_timestamp(self.transmit_timestamp)

    @property
    def reference_time(self) -> float:
        return from_ntp_timestamp(self.reference_timestamp)

    def encode(self) -> bytes:
        first = (
            ((int(self.leap_indicator) & 0x3) << 6)
            | ((self.version & 0x7) << 3)
            | (int(self.mode) & 0x7)
        )
        return struct.pack(
            PACKET_FORMAT,
            first,
            self.stratum & 0xFF,
            self.poll,
            self.precision,
            _to_short(self.root_delay),
            _to_short(self.root_dispersion),
            self.reference_id[:4].ljust(4, b"\x00"),
            self.reference_timestamp,
            self.origin_timestamp,
            self.receive_timestamp,
            self.transmit_timestamp,
        )

    @classmethod
    def decode(cls, data: bytes) -> "NtpPacket":
        if len(data) < PACKET_SIZE:
            raise NtpProtocolError(
                f"reply too short: {len(data)} bytes, expected at least {PACKET_SIZE}"
            )

        (
            first,
            stratum,
            poll,
            precision,
            root_delay,
            root_dispersion,
            reference_id,
            reference_ts,
            origin_ts,
            receive_ts,
            transmit_ts,
        ) = struct.unpack(PACKET_FORMAT, data[:PACKET_SIZE])

        version = (first >> 3) & 0x7
        if not 1 <= version <= NTP_VERSION:
            raise NtpProtocolError(f"unsupported NTP version {version}")

        return cls(
            leap_indicator=LeapIndicator((first >> 6) & 0x3),
            version=version,
            mode=NtpMode(first & 0x7),
            stratum=stratum,
            poll=poll,
            precision=precision,
            root_delay=_from_short(root_delay),
            root_dispersion=_from_short(root_dispersion),
            reference_id=reference_id,
            reference_timestamp=reference_ts,
            origin_timestamp=origin_ts,
            receive_timestamp=receive_ts,
            transmit_timestamp=transmit_ts,
        )
