"""
Ledger purge worker port definitions.
"""

from __future__ import annotations

from src.components.idempotency.ports import LedgerDatabasePort
from src.core.ports.time import TimePort

__all__ = ["LedgerDatabasePort", "TimePort"]
