"""
Delivery worker unit tests.

Covers:
- process_task dispositions (delivered, failed, rescheduled, invalid
  recipient, missing issue)
- try_execute_task transaction handling and error classification,
  including cleanup failures and parking of tasks that hit unexpected errors
- run_worker_iteration delays
- drain_queue
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest

from src.adapters.clock import FrozenClock
from src.adapters.dev_email import DevEmailAdapter
from src.components.delivery import (
    DeliveryConfig,
    ExecutionOutcome,
    FatalDeliveryError,
    TaskDisposition,
    TransientDeliveryError,
    drain_queue,
    process_task,
    run_worker_iteration,
    try_execute_task,
)
from src.core.entities import DeliveryTask, NewsletterIssue
from src.core.ports.db import MalformedTaskError, StorageError
from src.core.ports.email import EmailResult

NOW = datetime(2026, 7, 1, 6, 0, tzinfo=UTC)

# --- In-memory Queue ---


class MemoryQueueDb:
    """Issues and queued tasks; a unit of work sees committed state only."""

    def __init__(self) -> None:
        self.issues: dict[UUID, NewsletterIssue] = {}
        self.tasks: list[DeliveryTask] = []
        self.begin_error: Exception | None = None
        self.dequeue_error: Exception | None = None
        self.rollback_error: Exception | None = None
        self.close_error: Exception | None = None
        self.broken_issues: set[UUID] = set()
        # Raw (issue_id, recipient_email, next_attempt_at) rows that cannot be mapped
        self.malformed: list[tuple[str, str, datetime]] = []
        self.units: list[MemoryUnitOfWork] = []

    def add_issue(self, recipients: list[str]) -> NewsletterIssue:
        issue = NewsletterIssue(title="Issue", html_body="<p>hi</p>", text_body="hi")
        self.issues[issue.id] = issue
        self.tasks.extend(
            DeliveryTask(issue_id=issue.id, recipient_email=r, next_attempt_at=NOW)
            for r in recipients
        )
        return issue

    def begin(self, *, nowait: bool = False) -> MemoryUnitOfWork:
        if self.begin_error is not None:
            raise self.begin_error
        uow = MemoryUnitOfWork(self)
        self.units.append(uow)
        return uow


class _Issues:
    def __init__(self, db: MemoryQueueDb) -> None:
        self.db = db

    def get(self, issue_id: UUID) -> NewsletterIssue | None:
        if issue_id in self.db.broken_issues:
            raise RuntimeError("corrupt issue row")
        return self.db.issues.get(issue_id)


class _Queue:
    def __init__(self, uow: MemoryUnitOfWork) -> None:
        self.uow = uow

    def dequeue(self, now: datetime) -> DeliveryTask | None:
        if self.uow.db.dequeue_error is not None:
            raise self.uow.db.dequeue_error
        for issue_id, email, when in self.uow.db.malformed:
            if when <= now:
                raise MalformedTaskError(issue_id, email, ValueError("badly formed UUID"))
        eligible = [
            t
            for t in self.uow.db.tasks
            if t.next_attempt_at is None or t.next_attempt_at <= now
        ]
        return eligible[0] if eligible else None

    def delete(self, task: DeliveryTask) -> None:
        self.uow.ops.append(("delete", task, None))

    def reschedule(self, task: DeliveryTask, next_attempt_at: datetime) -> None:
        self.uow.ops.append(("reschedule", task, next_attempt_at))

    def defer(self, issue_id: str, recipient_email: str, next_attempt_at: datetime) -> None:
        self.uow.ops.append(("defer", (issue_id, recipient_email), next_attempt_at))


class MemoryUnitOfWork:
    def __init__(self, db: MemoryQueueDb) -> None:
        self.db = db
        self.ops: list[tuple[str, Any, datetime | None]] = []
        self.issues = _Issues(db)
        self.delivery_queue = _Queue(self)
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def commit(self) -> None:
        for op, task, when in self.ops:
            if op == "defer":
                self._defer(task, when)
                continue
            index = self.db.tasks.index(task)
            if op == "delete":
                del self.db.tasks[index]
            else:
                self.db.tasks[index] = replace(
                    task, attempt_count=task.attempt_count + 1, next_attempt_at=when
                )
        self.committed = True

    def _defer(self, key: tuple[str, str], when: datetime) -> None:
        self.db.tasks = [
            replace(t, next_attempt_at=when) if (str(t.issue_id), t.recipient_email) == key else t
            for t in self.db.tasks
        ]
        self.db.malformed = [
            (i, e, when if (i, e) == key else w) for i, e, w in self.db.malformed
        ]

    def rollback(self) -> None:
        self.ops.clear()
        self.rolled_back = True
        if self.db.rollback_error is not None:
            raise self.db.rollback_error

    def close(self) -> None:
        self.ops.clear()
        self.closed = True
        if self.db.close_error is not None:
            raise self.db.close_error


class RaisingTransport:
    def send_email(
        self, recipient: str, subject: str, body_html: str, body_text: str
    ) -> EmailResult:
        raise RuntimeError("connection reset")


@pytest.fixture
def db() -> MemoryQueueDb:
    return MemoryQueueDb()


@pytest.fixture
def transport() -> DevEmailAdapter:
    return DevEmailAdapter()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


# --- Config ---


class TestDeliveryConfig:
    def test_defaults(self) -> None:
        cfg = DeliveryConfig()

        assert cfg.empty_queue_sleep_seconds == 10.0
        assert cfg.transient_error_sleep_seconds == 1.0
        assert cfg.max_attempts == 1

    def test_backoff_clamps_to_last_step(self) -> None:
        cfg = DeliveryConfig(retry_backoff_seconds=(10.0, 20.0))

        assert cfg.backoff_after(0) == timedelta(seconds=10)
        assert cfg.backoff_after(1) == timedelta(seconds=20)
        assert cfg.backoff_after(7) == timedelta(seconds=20)

    def test_empty_backoff_is_zero(self) -> None:
        assert DeliveryConfig(retry_backoff_seconds=()).backoff_after(3) == timedelta(0)


# --- process_task ---


class TestProcessTask:
    def test_delivered_task_is_deleted(
        self, db: MemoryQueueDb, transport: DevEmailAdapter
    ) -> None:
        issue = db.add_issue(["ada@example.com"])
        uow = db.begin()
        task = uow.delivery_queue.dequeue(NOW)

        disposition = process_task(uow, task, transport, now=NOW, config=DeliveryConfig())

        assert disposition is TaskDisposition.DELIVERED
        assert uow.ops == [("delete", task, None)]
        sent = transport.get_emails_to("ada@example.com")
        assert sent[0].subject == issue.title
        assert sent[0].body_text == issue.text_body

    def test_failed_send_is_deleted_without_retry(
        self, db: MemoryQueueDb, transport: DevEmailAdapter
    ) -> None:
        db.add_issue(["bad@example.com"])
        transport.failing_recipients.add("bad@example.com")
        uow = db.begin()
        task = uow.delivery_queue.dequeue(NOW)

        disposition = process_task(uow, task, transport, now=NOW, config=DeliveryConfig())

        assert disposition is TaskDisposition.FAILED
        assert uow.ops == [("delete", task, None)]

    def test_failed_send_rescheduled_when_attempts_remain(
        self, db: MemoryQueueDb, transport: DevEmailAdapter
    ) -> None:
        db.add_issue(["bad@example.com"])
        transport.failing_recipients.add("bad@example.com")
        uow = db.begin()
        task = uow.delivery_queue.dequeue(NOW)
        cfg = DeliveryConfig(max_attempts=3, retry_backoff_seconds=(30.0,))

        disposition = process_task(uow, task, transport, now=NOW, config=cfg)

        assert disposition is TaskDisposition.RESCHEDULED
        assert uow.ops == [("reschedule", task, NOW + timedelta(seconds=30))]

    def test_last_attempt_is_deleted(
        self, db: MemoryQueueDb, transport: DevEmailAdapter
    ) -> None:
        issue = db.add_issue([])
        task = DeliveryTask(issue.id, "bad@example.com", attempt_count=2, next_attempt_at=NOW)
        db.tasks.append(task)
        transport.failing_recipients.add("bad@example.com")
        uow = db.begin()

        disposition = process_task(
            uow, task, transport, now=NOW, config=DeliveryConfig(max_attempts=3)
        )

        assert disposition is TaskDisposition.FAILED
        assert uow.ops[0][0] == "delete"

    def test_transport_exception_counts_as_failure(self, db: MemoryQueueDb) -> None:
        db.add_issue(["ada@example.com"])
        uow = db.begin()
        task = uow.delivery_queue.dequeue(NOW)

        disposition = process_task(
            uow, task, RaisingTransport(), now=NOW, config=DeliveryConfig()
        )

        assert disposition is TaskDisposition.FAILED

    def test_invalid_recipient_deleted_without_sending(
        self, db: MemoryQueueDb, transport: DevEmailAdapter
    ) -> None:
        db.add_issue(["not-an-email"])
        uow = db.begin()
        task = uow.delivery_queue.dequeue(NOW)

        disposition = process_task(uow, task, transport, now=NOW, config=DeliveryConfig())

        assert disposition is TaskDisposition.INVALID_RECIPIENT
        assert transport.attempts == []
        assert uow.ops == [("delete", task, None)]

    def test_missing_issue_deleted_without_sending(
        self, db: MemoryQueueDb, transport: DevEmailAdapter
    ) -> None:
        task = DeliveryTask(uuid4(), "ada@example.com", next_attempt_at=NOW)
        db.tasks.append(task)
        uow = db.begin()

        disposition = process_task(uow, task, transport, now=NOW, config=DeliveryConfig())

        assert disposition is TaskDisposition.MISSING_ISSUE
        assert transport.attempts == []


# --- try_execute_task ---


class TestTryExecuteTask:
    def test_empty_queue(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        outcome = try_execute_task(db, transport, clock=clock)

        assert outcome is ExecutionOutcome.EMPTY_QUEUE
        assert db.units[0].closed
        assert not db.units[0].committed

    def test_task_completed_commits(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.add_issue(["ada@example.com"])

        outcome = try_execute_task(db, transport, clock=clock)

        assert outcome is ExecutionOutcome.TASK_COMPLETED
        assert db.units[0].committed
        assert db.units[0].closed
        assert db.tasks == []

    def test_future_tasks_not_eligible(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        issue = db.add_issue([])
        db.tasks.append(
            DeliveryTask(issue.id, "later@example.com", next_attempt_at=NOW + timedelta(hours=1))
        )

        assert try_execute_task(db, transport, clock=clock) is ExecutionOutcome.EMPTY_QUEUE

    def test_begin_storage_error_is_transient(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.begin_error = StorageError("begin")

        with pytest.raises(TransientDeliveryError) as exc_info:
            try_execute_task(db, transport, clock=clock)

        assert isinstance(exc_info.value.cause, StorageError)

    def test_dequeue_storage_error_is_transient_and_rolls_back(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.dequeue_error = StorageError("dequeue")

        with pytest.raises(TransientDeliveryError):
            try_execute_task(db, transport, clock=clock)

        assert db.units[0].rolled_back
        assert db.units[0].closed

    def test_unexpected_error_is_fatal(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.dequeue_error = KeyError("boom")

        with pytest.raises(FatalDeliveryError) as exc_info:
            try_execute_task(db, transport, clock=clock)

        assert exc_info.value.issue_id is None
        assert not exc_info.value.parked
        assert db.units[0].rolled_back

    def test_rollback_and_close_failures_do_not_mask_storage_error(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        lost = StorageError("delivery_queue.dequeue", RuntimeError("connection lost"))
        db.dequeue_error = lost
        db.rollback_error = StorageError("rollback", RuntimeError("connection is closed"))
        db.close_error = StorageError("close", RuntimeError("connection is closed"))

        with pytest.raises(TransientDeliveryError) as exc_info:
            try_execute_task(db, transport, clock=clock)

        assert exc_info.value.cause is lost
        with pytest.raises(TransientDeliveryError):
            drain_queue(db, transport, clock=clock)

    def test_rollback_failure_does_not_mask_fatal_error(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        issue = db.add_issue(["ada@example.com"])
        db.broken_issues.add(issue.id)
        db.rollback_error = StorageError("rollback", RuntimeError("connection is closed"))

        with pytest.raises(FatalDeliveryError) as exc_info:
            try_execute_task(db, transport, clock=clock)

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert exc_info.value.issue_id == str(issue.id)
        assert exc_info.value.recipient_email == "ada@example.com"

    def test_fatal_task_is_parked_in_a_separate_transaction(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        issue = db.add_issue(["ada@example.com"])
        db.broken_issues.add(issue.id)
        cfg = DeliveryConfig(fatal_error_park_seconds=120.0)

        with pytest.raises(FatalDeliveryError) as exc_info:
            try_execute_task(db, transport, clock=clock, config=cfg)

        assert exc_info.value.parked
        failed, park = db.units
        assert failed.rolled_back and failed.closed and not failed.committed
        assert park.committed and park.closed
        assert db.tasks[0].next_attempt_at == NOW + timedelta(seconds=120)
        assert db.tasks[0].attempt_count == 0

    def test_park_storage_failure_leaves_task_unparked(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        issue = db.add_issue(["ada@example.com"])
        db.broken_issues.add(issue.id)

        def refuse_second_begin(*, nowait: bool = False) -> MemoryUnitOfWork:
            if db.units:
                raise StorageError("begin", RuntimeError("database is locked"))
            return MemoryQueueDb.begin(db, nowait=nowait)

        db.begin = refuse_second_begin  # type: ignore[method-assign]

        with pytest.raises(FatalDeliveryError) as exc_info:
            try_execute_task(db, transport, clock=clock)

        assert not exc_info.value.parked
        assert db.tasks[0].next_attempt_at == NOW

    def test_rescheduled_task_waits_for_backoff(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.add_issue(["bad@example.com"])
        transport.failing_recipients.add("bad@example.com")
        cfg = DeliveryConfig(max_attempts=2, retry_backoff_seconds=(60.0,))

        try_execute_task(db, transport, clock=clock, config=cfg)

        assert db.tasks[0].attempt_count == 1
        assert try_execute_task(db, transport, clock=clock, config=cfg) is (
            ExecutionOutcome.EMPTY_QUEUE
        )
        clock.advance(seconds=60)
        try_execute_task(db, transport, clock=clock, config=cfg)
        assert db.tasks == []
        assert transport.attempts == ["bad@example.com", "bad@example.com"]


# --- run_worker_iteration ---


class TestRunWorkerIteration:
    def test_delay_after_task_is_zero(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.add_issue(["ada@example.com"])

        assert run_worker_iteration(db, transport, clock=clock) == 0.0

    def test_delay_on_empty_queue(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        cfg = DeliveryConfig(empty_queue_sleep_seconds=7.5)

        assert run_worker_iteration(db, transport, clock=clock, config=cfg) == 7.5

    def test_delay_on_transient_error(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.begin_error = StorageError("begin")

        assert run_worker_iteration(db, transport, clock=clock) == 1.0

    def test_fatal_error_does_not_raise(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        issue = db.add_issue(["ada@example.com"])
        db.broken_issues.add(issue.id)

        assert run_worker_iteration(db, transport, clock=clock) == 0.0

    def test_unparked_fatal_error_pauses(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.dequeue_error = ValueError("bad row")
        cfg = DeliveryConfig(transient_error_sleep_seconds=2.5)

        assert run_worker_iteration(db, transport, clock=clock, config=cfg) == 2.5

    def test_cleanup_failures_keep_transient_delay(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        db.add_issue(["ada@example.com"])
        db.dequeue_error = StorageError("delivery_queue.dequeue", RuntimeError("connection lost"))
        db.rollback_error = StorageError("rollback", RuntimeError("connection is closed"))
        db.close_error = StorageError("close", RuntimeError("connection is closed"))

        assert run_worker_iteration(db, transport, clock=clock) == 1.0

    def test_poison_task_does_not_starve_the_queue(
        self, db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
    ) -> None:
        broken = db.add_issue(["ada@example.com"])
        db.broken_issues.add(broken.id)
        db.add_issue(["bob@example.com"])
        cfg = DeliveryConfig(empty_queue_sleep_seconds=10.0, fatal_error_park_seconds=300.0)

        delays = [run_worker_iteration(db, transport, clock=clock, config=cfg) for _ in range(3)]

        assert delays == [0.0, 0.0, 10.0]
        assert transport.attempts == ["bob@example.com"]
        assert [(t.recipient_email, t.next_attempt_at) for t in db.tasks] == [
            ("ada@example.com", NOW + timedelta(seconds=300))
        ]

    def test_malformed_row_is_logged_and_parked_by_raw_key(
        self,
        db: MemoryQueueDb,
        transport: DevEmailAdapter,
        clock: FrozenClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        db.malformed.append(("not-a-uuid", "ghost@example.com", NOW))
        db.add_issue(["ada@example.com"])

        with caplog.at_level(logging.ERROR):
            first = run_worker_iteration(db, transport, clock=clock)
        second = run_worker_iteration(db, transport, clock=clock)

        assert (first, second) == (0.0, 0.0)
        assert "not-a-uuid / ghost@example.com" in caplog.text
        assert transport.attempts == ["ada@example.com"]
        assert db.malformed == [
            ("not-a-uuid", "ghost@example.com", NOW + timedelta(seconds=300))
        ]


# --- drain_queue ---


def test_drain_queue_processes_every_task(
    db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
) -> None:
    db.add_issue(["a@example.com", "b@example.com", "c@example.com"])
    transport.failing_recipients.add("b@example.com")

    processed = drain_queue(db, transport, clock=clock)

    assert processed == 3
    assert db.tasks == []
    assert sorted(e.recipient for e in transport.sent_emails) == [
        "a@example.com",
        "c@example.com",
    ]


def test_drain_queue_respects_max_iterations(
    db: MemoryQueueDb, transport: DevEmailAdapter, clock: FrozenClock
) -> None:
    db.add_issue(["a@example.com", "b@example.com"])

    assert drain_queue(db, transport, clock=clock, max_iterations=1) == 1
    assert len(db.tasks) == 1
