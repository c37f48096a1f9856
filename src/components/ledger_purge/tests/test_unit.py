"""
Ledger purge worker unit tests.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.adapters.clock import FrozenClock
from src.components.ledger_purge import (
    PurgeConfig,
    PurgeOutcome,
    next_delay,
    run_purge_cycle,
)
from src.core.ports.db import StorageError

NOW = datetime(2026, 8, 15, 0, 0, tzinfo=UTC)


class RecordingLedger:
    """Records the cutoff it was asked to purge with."""

    def __init__(self, deleted: int = 0, error: Exception | None = None) -> None:
        self.deleted = deleted
        self.error = error
        self.cutoffs: list[datetime] = []
        self.commits = 0

    def begin(self, *, nowait: bool = False) -> RecordingLedger:
        if self.error is not None:
            raise self.error
        return self

    # Unit of work
    @property
    def idempotency(self) -> RecordingLedger:
        return self

    def delete_older_than(self, cutoff: datetime) -> int:
        self.cutoffs.append(cutoff)
        return self.deleted

    def commit(self) -> None:
        self.commits += 1

    def __enter__(self) -> RecordingLedger:
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


class TestRunPurgeCycle:
    def test_cutoff_is_now_minus_retention(self, clock: FrozenClock) -> None:
        ledger = RecordingLedger(deleted=4)

        outcome = run_purge_cycle(ledger, clock=clock, retention_minutes=60)

        assert ledger.cutoffs == [NOW - timedelta(minutes=60)]
        assert ledger.commits == 1
        assert outcome == PurgeOutcome(cutoff=NOW - timedelta(minutes=60), deleted=4)
        assert outcome.succeeded

    def test_storage_error_becomes_failed_outcome(self, clock: FrozenClock) -> None:
        ledger = RecordingLedger(error=StorageError("begin"))

        outcome = run_purge_cycle(ledger, clock=clock, retention_minutes=1440)

        assert not outcome.succeeded
        assert outcome.deleted == 0
        assert "begin" in (outcome.error or "")

    def test_other_errors_propagate(self, clock: FrozenClock) -> None:
        ledger = RecordingLedger(error=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            run_purge_cycle(ledger, clock=clock, retention_minutes=1440)


class TestNextDelay:
    def test_success_waits_half_the_retention_window(self) -> None:
        outcome = PurgeOutcome(cutoff=NOW, deleted=1)

        assert next_delay(outcome, PurgeConfig(retention_minutes=1440)) == 43_200.0

    def test_error_waits_error_sleep(self) -> None:
        outcome = PurgeOutcome(cutoff=NOW, error="db down")

        assert next_delay(outcome, PurgeConfig(error_sleep_seconds=2.5)) == 2.5

    def test_defaults(self) -> None:
        cfg = PurgeConfig()

        assert cfg.retention_minutes == 1440
        assert cfg.error_sleep_seconds == 1.0
