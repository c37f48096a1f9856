"""
Ledger purge worker component.

Retention for the idempotency ledger.
"""

from src.components.ledger_purge.component import next_delay, run_purge_cycle
from src.components.ledger_purge.models import PurgeConfig, PurgeOutcome

__all__ = [
    "PurgeConfig",
    "PurgeOutcome",
    "next_delay",
    "run_purge_cycle",
]
