"""
Database adapter interfaces.

Protocol-based interfaces for the publishing pipeline's storage.
Implementations: SQLite (dev/test), PostgreSQL (production).

Every pipeline write happens inside a unit of work, which is the
transaction scope. The idempotency claim, the issue insert and the
delivery enqueue share one; a task dequeue and its deletion share another.
All mutual exclusion is delegated to the database: a unique-key conflict
for ledger claims and a skip-locked row lock for task dequeue.
"""

from __future__ import annotations

from datetime import datetime
from types import TracebackType
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

from src.core.entities import DeliveryTask, IdempotencyRecord, NewsletterIssue

if TYPE_CHECKING:
    from src.components.newsletter.ports import SubscriberRepoPort


# --- Error Types ---


class StorageError(Exception):
    """
    A database operation failed.

    Covers connection loss, lock timeouts and constraint violations.
    Background workers treat it as transient; the synchronous publish path
    surfaces it as a server error (safe to retry with the same key).
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage operation '{operation}' failed{detail}")


class MalformedTaskError(Exception):
    """
    A queued row could not be mapped to a DeliveryTask.

    Carries the raw key columns so the row can still be addressed.
    """

    def __init__(self, issue_id: str, recipient_email: str, cause: BaseException) -> None:
        self.issue_id = issue_id
        self.recipient_email = recipient_email
        self.cause = cause
        super().__init__(f"Malformed delivery task {issue_id} / {recipient_email}: {cause}")


# -----------------------------------------------------------------------------
# Idempotency ledger
# -----------------------------------------------------------------------------


class IdempotencyRepoPort(Protocol):
    """
    Repository for idempotency ledger rows.

    Invariants:
    - (caller_id, idempotency_key) unique
    - response columns written only together with status "completed"
    """

    def insert_if_absent(self, caller_id: str, key: str, now: datetime) -> bool:
        """Insert a claimed row. False when the key already exists."""
        ...

    def get(self, caller_id: str, key: str) -> IdempotencyRecord | None:
        """Read a ledger row."""
        ...

    def reclaim(
        self,
        caller_id: str,
        key: str,
        observed_claimed_at: datetime,
        now: datetime,
    ) -> bool:
        """
        Compare-and-swap re-claim of an abandoned row.

        Succeeds only if the row is still "claimed" with the observed
        claimed_at, so at most one retry can take over a stale claim.
        """
        ...

    def save_response(
        self,
        caller_id: str,
        key: str,
        status_code: int,
        headers: bytes,
        body: bytes,
        now: datetime,
    ) -> None:
        """Write the serialized response and mark the row completed."""
        ...

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete rows created before cutoff. Returns number deleted."""
        ...


# -----------------------------------------------------------------------------
# Newsletter issues
# -----------------------------------------------------------------------------


class IssueRepoPort(Protocol):
    """Repository for newsletter issues (insert-only)."""

    def insert(self, issue: NewsletterIssue) -> NewsletterIssue:
        ...

    def get(self, issue_id: UUID) -> NewsletterIssue | None:
        ...


# -----------------------------------------------------------------------------
# Delivery queue
# -----------------------------------------------------------------------------


class DeliveryQueueRepoPort(Protocol):
    """
    Repository for pending delivery tasks.

    Invariants:
    - (issue_id, recipient_email) unique
    - dequeue never returns a row locked by another open unit of work
    """

    def enqueue_confirmed(self, issue_id: UUID, now: datetime) -> int:
        """
        Enqueue one task per currently confirmed subscriber.

        Single set-based insert: the audience is a snapshot taken at this
        instant. Returns the number of tasks written.
        """
        ...

    def dequeue(self, now: datetime) -> DeliveryTask | None:
        """
        Lock and return one eligible task, skipping locked rows.

        Raises MalformedTaskError when the locked row cannot be mapped.
        """
        ...

    def delete(self, task: DeliveryTask) -> None:
        ...

    def reschedule(self, task: DeliveryTask, next_attempt_at: datetime) -> None:
        """Increment attempt_count and push next_attempt_at forward."""
        ...

    def defer(self, issue_id: str, recipient_email: str, next_attempt_at: datetime) -> None:
        """Push next_attempt_at forward by raw key, leaving attempt_count alone."""
        ...

    def count_pending(self, issue_id: UUID | None = None) -> int:
        ...


# -----------------------------------------------------------------------------
# Unit of Work
# -----------------------------------------------------------------------------


class UnitOfWorkPort(Protocol):
    """
    One database transaction and the repositories bound to it.

    Nothing is visible to other units of work until commit(). Closing
    without commit rolls back.
    """

    @property
    def idempotency(self) -> IdempotencyRepoPort:
        ...

    @property
    def issues(self) -> IssueRepoPort:
        ...

    @property
    def delivery_queue(self) -> DeliveryQueueRepoPort:
        ...

    @property
    def subscribers(self) -> SubscriberRepoPort:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> UnitOfWorkPort:
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        ...


class DatabasePort(Protocol):
    """Factory for units of work over one backing store."""

    def begin(self, *, nowait: bool = False) -> UnitOfWorkPort:
        """
        Open a write transaction.

        Args:
            nowait: Give up quickly instead of queueing behind other
                writers (used by delivery dequeue). Raises StorageError
                when the store cannot be locked.
        """
        ...
