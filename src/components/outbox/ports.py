"""
Outbox writer port definitions.
"""

from __future__ import annotations

from typing import Protocol

from src.core.ports.db import UnitOfWorkPort
from src.core.ports.time import TimePort


class OutboxDatabasePort(Protocol):
    """Database the outbox writes issues and delivery tasks into."""

    def begin(self, *, nowait: bool = False) -> UnitOfWorkPort:
        """Open a write transaction."""
        ...


__all__ = ["OutboxDatabasePort", "TimePort", "UnitOfWorkPort"]
