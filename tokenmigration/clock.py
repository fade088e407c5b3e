"""
Migration Ledger Clocks

Ledger deadlines are integer unix timestamps, the way block timestamps are.
``SystemClock`` reads the wall clock; ``ManualClock`` is set and advanced
explicitly by simulations and tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from typing import Optional, Protocol

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


class Clock(Protocol):
    """Anything that can report the current unix timestamp."""

    def now(self) -> int:
        ...


class SystemClock:
    """Wall-clock time, truncated to whole seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[int] = None):
        self._now = int(time.time()) if start is None else int(start)
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int = 0, hours: int = 0, days: int = 0) -> int:
        """Move forward and return the new timestamp."""
        delta = seconds + hours * SECONDS_PER_HOUR + days * SECONDS_PER_DAY
        if delta < 0:
            raise ValueError(f"Clock cannot move backwards (delta {delta}s)")
        with self._lock:
            self._now += delta
            return self._now

    def set(self, timestamp: int) -> None:
        """Jump to an absolute timestamp no earlier than the current one."""
        with self._lock:
            if timestamp < self._now:
                raise ValueError(f"Clock cannot move backwards to {timestamp}")
            self._now = int(timestamp)
