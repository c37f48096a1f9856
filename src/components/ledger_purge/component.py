"""
Ledger purge worker component.

Deletes idempotency ledger rows older than the retention window so the
ledger does not grow without bound. After a row is purged, a retry with
the same key is treated as a brand new request.

Schedule: on success wait half the retention window, on storage error
wait error_sleep_seconds and try again.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from src.components.idempotency import purge
from src.components.ledger_purge.models import PurgeConfig, PurgeOutcome
from src.components.ledger_purge.ports import LedgerDatabasePort, TimePort
from src.core.ports.db import StorageError

logger = logging.getLogger(__name__)


def run_purge_cycle(
    db: LedgerDatabasePort,
    *,
    clock: TimePort,
    retention_minutes: int,
) -> PurgeOutcome:
    """Purge ledger rows created before now - retention. Never raises StorageError."""
    cutoff = clock.now_utc() - timedelta(minutes=retention_minutes)
    try:
        deleted = purge(db, cutoff)
    except StorageError as e:
        logger.warning("Ledger purge failed: %s", e)
        return PurgeOutcome(cutoff=cutoff, error=str(e))

    logger.info("Purged %d idempotency records created before %s", deleted, cutoff.isoformat())
    return PurgeOutcome(cutoff=cutoff, deleted=deleted)


def next_delay(outcome: PurgeOutcome, config: PurgeConfig) -> float:
    """Seconds to wait before the next purge cycle."""
    if outcome.succeeded:
        return config.retention_minutes * 30.0
    return config.error_sleep_seconds
