"""Clock used to age push telemetry.

``TransportEngine.data_age`` is the difference between two readings, so
any monotonic source will do.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """``time.monotonic`` behind :class:`ClockPort`."""

    def now(self) -> float:
        return time.monotonic()
