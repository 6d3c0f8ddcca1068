"""Clock offset and round-trip delay from the four SNTP timestamps.

    T1  originate    client clock, query sent
    T2  receive      server clock, query received
    T3  transmit     server clock, reply sent
    T4  destination  client clock, reply received

All values are Unix epoch seconds as floats; results are signed seconds.
"""

from __future__ import annotations

import time
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sntp_client.time.packet import NtpPacket
from sntp_client.utils.errors import ExcessiveDelayWarning
from sntp_client.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_DELAY = 1.0  # seconds


def round_trip_delay(t1: float, t2: float, t3: float, t4: float) -> float:
    """Network transit time, clamped at zero when local clock steps backwards."""
    delay = (t4 - t1) - (t3 - t2)
    return max(delay, 0.0)


def clock_offset(t1: float, t2: float, t3: float, t4: float) -> float:
    """Amount to add to the local clock to match the server."""
    return ((t2 - t1) + (t3 - t4)) / 2


@dataclass(frozen=True)
class CorrectionResult:
    """Outcome of one successful query."""

    offset: float
    delay: float
    t1: float
    t2: float
    t3: float
    t4: float
    reply: Optional[NtpPacket] = field(default=None, compare=False)

    @classmethod
    def from_timestamps(
        cls,
        t1: float,
        t2: float,
        t3: float,
        t4: float,
        reply: Optional[NtpPacket] = None,
        max_delay: float = DEFAULT_MAX_DELAY,
        stacklevel: int = 2,
    ) -> "CorrectionResult":
        """Build a result; warns with ``ExcessiveDelayWarning`` when ``delay`` exceeds ``max_delay``.

        ``stacklevel`` selects the frame the warning is attributed to, as for
        ``warnings.warn``; the default points at the caller.
        """
        offset = clock_offset(t1, t2, t3, t4)
        delay = round_trip_delay(t1, t2, t3, t4)
        if delay > max_delay:
            logger.warning("Excessive round-trip delay", delay=delay, max_delay=max_delay)
            warnings.warn(
                f"round-trip delay {delay:.3f}s exceeds {max_delay:.3f}s; offset may be inaccurate",
                ExcessiveDelayWarning,
                stacklevel=stacklevel,
            )
        return cls(offset=offset, delay=delay, t1=t1, t2=t2, t3=t3, t4=t4, reply=reply)

    def corrected_time(self, now: Optional[float] = None) -> float:
        """Local time (or ``now``) shifted by the measured offset."""
        if now is None:
            now = time.time()
        return now + self.offset

    def corrected_datetime(self, now: Optional[float] = None) -> datetime:
        return datetime.fromtimestamp(self.corrected_time(now), tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "offset": self.offset,
            "delay": self.delay,
            "t1": self.t1,
            "t2": self.t2,
            "t3": self.t3,
            "t4": self.t4,
        }
        if self.reply is not None:
            data.update({
                "stratum": self.reply.stratum,
                "leap_indicator": int(self.reply.leap_indicator),
                "version": self.reply.version,
                "precision": self.reply.precision,
                "root_delay": self.reply.root_delay,
                "root_dispersion": self.reply.root_dispersion,
            })
        return data
