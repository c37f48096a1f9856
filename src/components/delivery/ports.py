"""
Delivery worker port definitions.
"""

from __future__ import annotations

from typing import Protocol

from src.core.ports.db import UnitOfWorkPort
from src.core.ports.email import EmailTransportPort
from src.core.ports.time import TimePort


class DeliveryDatabasePort(Protocol):
    """Database holding the delivery queue."""

    def begin(self, *, nowait: bool = False) -> UnitOfWorkPort:
        """Open a write transaction; nowait=True must not queue behind writers."""
        ...


__all__ = ["DeliveryDatabasePort", "EmailTransportPort", "TimePort", "UnitOfWorkPort"]
