"""
Delivery worker models.

Outcomes, per-task dispositions and errors for draining the delivery
queue one task at a time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from uuid import UUID


class ExecutionOutcome(Enum):
    """Result of one try_execute_task call."""

    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


class TaskDisposition(Enum):
    """What happened to a dequeued task."""

    DELIVERED = "delivered"
    FAILED = "failed"  # Transport failure, no attempts left
    RESCHEDULED = "rescheduled"  # Transport failure, retry later
    INVALID_RECIPIENT = "invalid_recipient"
    MISSING_ISSUE = "missing_issue"


# --- Configuration ---


@dataclass(frozen=True)
class DeliveryConfig:
    """
    Delivery worker configuration.

    max_attempts=1 means a failed send is never retried. A task that hits
    an unexpected error is parked for fatal_error_park_seconds so the rest
    of the queue keeps moving.
    """

    empty_queue_sleep_seconds: float = 10.0
    transient_error_sleep_seconds: float = 1.0
    max_attempts: int = 1
    retry_backoff_seconds: tuple[float, ...] = (60.0, 300.0, 900.0)
    fatal_error_park_seconds: float = 300.0

    def backoff_after(self, attempt_count: int) -> timedelta:
        """Delay before the retry that follows attempt number attempt_count."""
        if not self.retry_backoff_seconds:
            return timedelta(0)
        index = min(attempt_count, len(self.retry_backoff_seconds) - 1)
        return timedelta(seconds=self.retry_backoff_seconds[index])


# --- Error Types ---


class DeliveryError(Exception):
    """Base delivery worker error."""

    pass


class TransientDeliveryError(DeliveryError):
    """Storage trouble (connection, lock timeout). Retry after a short pause."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Transient delivery error: {cause}")


class FatalDeliveryError(DeliveryError):
    """
    Unexpected failure while processing a task.

    issue_id is the raw key column when the row could not be mapped.
    parked is True once the task was pushed back in its own transaction.
    """

    def __init__(
        self,
        cause: BaseException,
        issue_id: UUID | str | None = None,
        recipient_email: str | None = None,
        parked: bool = False,
    ) -> None:
        self.cause = cause
        self.issue_id = issue_id
        self.recipient_email = recipient_email
        self.parked = parked
        super().__init__(
            f"Failed to process delivery of issue {issue_id} to {recipient_email}: {cause}"
        )
