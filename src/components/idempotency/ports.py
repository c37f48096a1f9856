"""
Idempotency ledger port definitions.

The ledger works on a unit of work so that the claim row and the
protected work (issue + delivery tasks) commit or roll back together.
"""

from __future__ import annotations

from typing import Protocol

from src.core.ports.db import IdempotencyRepoPort, UnitOfWorkPort


class LedgerDatabasePort(Protocol):
    """Subset of DatabasePort the ledger needs."""

    def begin(self, *, nowait: bool = False) -> UnitOfWorkPort:
        """Open a write transaction."""
        ...


__all__ = ["IdempotencyRepoPort", "LedgerDatabasePort", "UnitOfWorkPort"]
