"""
Time adapter interface.

All pipeline timestamps are UTC. Components take a TimePort so tests can
pin "now" (purge cutoffs, retry schedules, claim grace periods).
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class TimePort(Protocol):
    """Time source interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time (timezone-aware)."""
        ...
