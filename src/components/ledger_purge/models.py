"""
Ledger purge worker models.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class PurgeConfig:
    """Purge worker configuration."""

    retention_minutes: int = 1440
    error_sleep_seconds: float = 1.0


@dataclass(frozen=True)
class PurgeOutcome:
    """Result of one purge cycle."""

    cutoff: datetime
    deleted: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None
