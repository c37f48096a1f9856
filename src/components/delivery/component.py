"""
Delivery worker component.

Drains the delivery queue one task per transaction:

    begin → dequeue (skip locked) → validate recipient → send → delete → commit

The task row stays locked for the whole send, so no other worker can pick
it up. A crash before commit rolls the delete back and the task is sent
again later (at-least-once). A transport failure is terminal unless
retries are configured, in which case the task is rescheduled.

Iteration delays:
- task processed: 0
- queue empty: empty_queue_sleep_seconds
- storage error: transient_error_sleep_seconds
- unexpected error: 0 once the task is parked, otherwise
  transient_error_sleep_seconds (logged, loop continues)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from src.components.delivery.models import (
    DeliveryConfig,
    ExecutionOutcome,
    FatalDeliveryError,
    TaskDisposition,
    TransientDeliveryError,
)
from src.components.delivery.ports import (
    DeliveryDatabasePort,
    EmailTransportPort,
    TimePort,
    UnitOfWorkPort,
)
from src.components.newsletter import validate_email
from src.core.entities import DeliveryTask
from src.core.ports.db import MalformedTaskError, StorageError
from src.core.ports.email import EmailResult

logger = logging.getLogger(__name__)


def _send(
    transport: EmailTransportPort,
    task: DeliveryTask,
    subject: str,
    html_body: str,
    text_body: str,
) -> EmailResult:
    try:
        return transport.send_email(task.recipient_email, subject, html_body, text_body)
    except Exception as e:
        # Transports should report failures in EmailResult; treat a raise the same way
        logger.exception("Email transport raised for %s", task.recipient_email)
        return EmailResult.failed(task.recipient_email, str(e))


def process_task(
    uow: UnitOfWorkPort,
    task: DeliveryTask,
    transport: EmailTransportPort,
    *,
    now: datetime,
    config: DeliveryConfig,
) -> TaskDisposition:
    """
    Deliver one dequeued task and remove (or reschedule) it.

    Runs inside the transaction that locked the task; the caller commits.
    """
    queue = uow.delivery_queue

    validation = validate_email(task.recipient_email)
    if not validation.is_valid:
        logger.error(
            "Skipping a confirmed subscriber: stored contact details are invalid (%s)",
            task.recipient_email,
        )
        queue.delete(task)
        return TaskDisposition.INVALID_RECIPIENT

    issue = uow.issues.get(task.issue_id)
    if issue is None:
        logger.error(
            "Dropping delivery to %s: issue %s does not exist",
            task.recipient_email,
            task.issue_id,
        )
        queue.delete(task)
        return TaskDisposition.MISSING_ISSUE

    result = _send(transport, task, issue.title, issue.html_body, issue.text_body)
    if result.ok:
        queue.delete(task)
        logger.info("Delivered issue %s to %s", task.issue_id, task.recipient_email)
        return TaskDisposition.DELIVERED

    attempts = task.attempt_count + 1
    if attempts < config.max_attempts:
        next_attempt_at = now + config.backoff_after(task.attempt_count)
        queue.reschedule(task, next_attempt_at)
        logger.warning(
            "Failed to deliver issue %s to %s (attempt %d/%d), retrying at %s: %s",
            task.issue_id,
            task.recipient_email,
            attempts,
            config.max_attempts,
            next_attempt_at.isoformat(),
            result.error,
        )
        return TaskDisposition.RESCHEDULED

    queue.delete(task)
    logger.error(
        "Failed to deliver issue %s to a confirmed subscriber %s. Skipping: %s",
        task.issue_id,
        task.recipient_email,
        result.error,
    )
    return TaskDisposition.FAILED


def _rollback_quietly(uow: UnitOfWorkPort) -> None:
    try:
        uow.rollback()
    except StorageError as e:
        logger.warning("Delivery rollback failed: %s", e)


def _close_quietly(uow: UnitOfWorkPort) -> None:
    try:
        uow.close()
    except StorageError as e:
        logger.warning("Delivery unit of work did not close cleanly: %s", e)


def _park_task(
    db: DeliveryDatabasePort,
    issue_id: str,
    recipient_email: str,
    until: datetime,
) -> bool:
    """
    Push a failing task's next_attempt_at forward in a fresh transaction.

    Addresses the row by its raw key columns, so it works for rows that
    could not be mapped. Returns False when storage refused the update.
    """
    try:
        uow = db.begin()
    except StorageError as e:
        logger.warning(
            "Could not park delivery of issue %s to %s: %s", issue_id, recipient_email, e
        )
        return False
    try:
        uow.delivery_queue.defer(issue_id, recipient_email, until)
        uow.commit()
    except StorageError as e:
        _rollback_quietly(uow)
        logger.warning(
            "Could not park delivery of issue %s to %s: %s", issue_id, recipient_email, e
        )
        return False
    finally:
        _close_quietly(uow)
    logger.warning(
        "Parked delivery of issue %s to %s until %s", issue_id, recipient_email, until.isoformat()
    )
    return True


def try_execute_task(
    db: DeliveryDatabasePort,
    transport: EmailTransportPort,
    *,
    clock: TimePort,
    config: DeliveryConfig | None = None,
) -> ExecutionOutcome:
    """
    Dequeue and process at most one delivery task.

    Rollback and close failures on the error path are logged, never raised,
    so the original error keeps its classification. After an unexpected
    error the task is parked for fatal_error_park_seconds in a separate
    transaction.

    Raises:
        TransientDeliveryError: storage failure (transaction rolled back)
        FatalDeliveryError: anything else (transaction rolled back, task parked
            when its key is known)
    """
    cfg = config or DeliveryConfig()
    now = clock.now_utc()

    try:
        uow = db.begin(nowait=True)
    except StorageError as e:
        raise TransientDeliveryError(e) from e

    # Raw (issue_id, recipient_email) of the locked row, once known
    key: tuple[str, str] | None = None
    try:
        try:
            task = uow.delivery_queue.dequeue(now)
        except MalformedTaskError as e:
            key = (e.issue_id, e.recipient_email)
            raise
        if task is None:
            return ExecutionOutcome.EMPTY_QUEUE
        key = (str(task.issue_id), task.recipient_email)

        process_task(uow, task, transport, now=now, config=cfg)
        uow.commit()
        return ExecutionOutcome.TASK_COMPLETED
    except StorageError as e:
        _rollback_quietly(uow)
        raise TransientDeliveryError(e) from e
    except Exception as e:
        _rollback_quietly(uow)
        # Release the row lock before the park transaction starts
        _close_quietly(uow)
        parked = False
        if key is not None:
            parked = _park_task(
                db, *key, now + timedelta(seconds=cfg.fatal_error_park_seconds)
            )
        raise FatalDeliveryError(
            e,
            issue_id=key[0] if key else None,
            recipient_email=key[1] if key else None,
            parked=parked,
        ) from e
    finally:
        _close_quietly(uow)


def run_worker_iteration(
    db: DeliveryDatabasePort,
    transport: EmailTransportPort,
    *,
    clock: TimePort,
    config: DeliveryConfig | None = None,
) -> float:
    """
    One worker loop step. Returns seconds to wait before the next one.

    Never raises; every failure is logged and mapped to a delay.
    """
    cfg = config or DeliveryConfig()
    try:
        outcome = try_execute_task(db, transport, clock=clock, config=cfg)
    except TransientDeliveryError as e:
        logger.warning("Delivery worker hit a storage error: %s", e.cause)
        return cfg.transient_error_sleep_seconds
    except FatalDeliveryError as e:
        logger.error(
            "Delivery worker failed on issue %s / %s: %s",
            e.issue_id,
            e.recipient_email,
            e.cause,
            exc_info=e,
        )
        # An unparked task is still eligible; pause so it cannot spin the loop
        return 0.0 if e.parked else cfg.transient_error_sleep_seconds

    if outcome is ExecutionOutcome.EMPTY_QUEUE:
        return cfg.empty_queue_sleep_seconds
    return 0.0


def drain_queue(
    db: DeliveryDatabasePort,
    transport: EmailTransportPort,
    *,
    clock: TimePort,
    config: DeliveryConfig | None = None,
    max_iterations: int = 10_000,
) -> int:
    """
    Process tasks until the queue reports empty.

    Returns:
        Number of tasks processed

    Raises:
        TransientDeliveryError / FatalDeliveryError from try_execute_task
    """
    processed = 0
    for _ in range(max_iterations):
        outcome = try_execute_task(db, transport, clock=clock, config=config)
        if outcome is ExecutionOutcome.EMPTY_QUEUE:
            break
        processed += 1
    return processed
