"""
core/clock.py -- Wall-clock abstraction.

Token freshness and rate-limit windows are computed against an injected Clock
rather than time.time() so boundary conditions can be pinned in tests.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int:
        """Return the current time as whole unix seconds."""
        ...


class SystemClock:
    def now(self) -> int:
        return int(time.time())
