"""
SQLite Database Adapter.

Implements the pipeline DB ports using SQLite (dev/test backend).
Uses standard SQL so the schema maps one-to-one onto the Postgres one.

Transactions:
- every unit of work opens its own connection and runs BEGIN IMMEDIATE,
  which takes the database write lock up front
- writers are serialized by SQLite; the busy timeout decides how long a
  unit of work waits for the lock before failing with StorageError
- nowait units of work (delivery dequeue) use a very short timeout, so a
  busy database surfaces as a transient error instead of a stall

Timestamps are stored as UTC ISO-8601 strings with microseconds, which
keeps lexicographic order equal to time order in SQL comparisons.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from src.components.newsletter.models import NewsletterSubscriber, SubscriberStatus
from src.core.entities import DeliveryTask, IdempotencyRecord, NewsletterIssue
from src.core.ports.db import MalformedTaskError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0
DEFAULT_NOWAIT_TIMEOUT_SECONDS = 0.05

# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row to dictionary."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def format_dt(dt: datetime) -> str:
    """Serialize a datetime as sortable UTC ISO text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_dt(s: str | None) -> datetime | None:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s) if s else None


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate sqlite3 errors into StorageError."""
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(operation, e) from e


# -----------------------------------------------------------------------------
# Base SQLite Repository
# -----------------------------------------------------------------------------


class SQLiteRepoBase:
    """Base class for repositories bound to a unit of work's connection."""

    def __init__(self, connection: sqlite3.Connection):
        self._conn = connection


# -----------------------------------------------------------------------------
# Idempotency ledger
# -----------------------------------------------------------------------------


class SQLiteIdempotencyRepo(SQLiteRepoBase):
    """SQLite implementation of IdempotencyRepoPort."""

    def insert_if_absent(self, caller_id: str, key: str, now: datetime) -> bool:
        with storage_errors("idempotency.insert"):
            cur = self._conn.execute(
                """
                INSERT INTO idempotency (
                    caller_id, idempotency_key, status, created_at, claimed_at
                ) VALUES (?, ?, 'claimed', ?, ?)
                ON CONFLICT (caller_id, idempotency_key) DO NOTHING
                """,
                (caller_id, key, format_dt(now), format_dt(now)),
            )
            return cur.rowcount == 1

    def get(self, caller_id: str, key: str) -> IdempotencyRecord | None:
        with storage_errors("idempotency.get"):
            row = self._conn.execute(
                "SELECT * FROM idempotency WHERE caller_id = ? AND idempotency_key = ?",
                (caller_id, key),
            ).fetchone()
        return self._map_row(row) if row else None

    def reclaim(
        self,
        caller_id: str,
        key: str,
        observed_claimed_at: datetime,
        now: datetime,
    ) -> bool:
        with storage_errors("idempotency.reclaim"):
            cur = self._conn.execute(
                """
                UPDATE idempotency SET claimed_at = ?
                WHERE caller_id = ? AND idempotency_key = ?
                  AND status = 'claimed' AND claimed_at = ?
                """,
                (format_dt(now), caller_id, key, format_dt(observed_claimed_at)),
            )
            return cur.rowcount == 1

    def save_response(
        self,
        caller_id: str,
        key: str,
        status_code: int,
        headers: bytes,
        body: bytes,
        now: datetime,
    ) -> None:
        with storage_errors("idempotency.save_response"):
            cur = self._conn.execute(
                """
                UPDATE idempotency SET
                    status = 'completed',
                    response_status_code = ?,
                    response_headers = ?,
                    response_body = ?,
                    completed_at = ?
                WHERE caller_id = ? AND idempotency_key = ? AND status = 'claimed'
                """,
                (status_code, headers, body, format_dt(now), caller_id, key),
            )
        if cur.rowcount != 1:
            raise StorageError("idempotency.save_response")

    def delete_older_than(self, cutoff: datetime) -> int:
        with storage_errors("idempotency.delete_older_than"):
            cur = self._conn.execute(
                "DELETE FROM idempotency WHERE created_at < ?", (format_dt(cutoff),)
            )
            return cur.rowcount

    def _map_row(self, row: dict[str, Any]) -> IdempotencyRecord:
        headers = row["response_headers"]
        body = row["response_body"]
        return IdempotencyRecord(
            caller_id=row["caller_id"],
            idempotency_key=row["idempotency_key"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            claimed_at=datetime.fromisoformat(row["claimed_at"]),
            response_status_code=row["response_status_code"],
            response_headers=bytes(headers) if headers is not None else None,
            response_body=bytes(body) if body is not None else None,
            completed_at=parse_dt(row["completed_at"]),
        )


# -----------------------------------------------------------------------------
# Newsletter issues
# -----------------------------------------------------------------------------


class SQLiteIssueRepo(SQLiteRepoBase):
    """SQLite implementation of IssueRepoPort."""

    def insert(self, issue: NewsletterIssue) -> NewsletterIssue:
        with storage_errors("issues.insert"):
            self._conn.execute(
                """
                INSERT INTO newsletter_issues (
                    newsletter_issue_id, title, text_content, html_content, published_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    str(issue.id),
                    issue.title,
                    issue.text_body,
                    issue.html_body,
                    format_dt(issue.published_at),
                ),
            )
        return issue

    def get(self, issue_id: UUID) -> NewsletterIssue | None:
        with storage_errors("issues.get"):
            row = self._conn.execute(
                "SELECT * FROM newsletter_issues WHERE newsletter_issue_id = ?",
                (str(issue_id),),
            ).fetchone()
        if not row:
            return None
        return NewsletterIssue(
            id=UUID(row["newsletter_issue_id"]),
            title=row["title"],
            html_body=row["html_content"],
            text_body=row["text_content"],
            published_at=datetime.fromisoformat(row["published_at"]),
        )


# -----------------------------------------------------------------------------
# Delivery queue
# -----------------------------------------------------------------------------


class SQLiteDeliveryQueueRepo(SQLiteRepoBase):
    """
    SQLite implementation of DeliveryQueueRepoPort.

    SQLite has no row locks; the BEGIN IMMEDIATE write lock held by the
    unit of work makes dequeue exclusive for the whole transaction.
    """

    def enqueue_confirmed(self, issue_id: UUID, now: datetime) -> int:
        with storage_errors("delivery_queue.enqueue"):
            cur = self._conn.execute(
                """
                INSERT INTO issue_delivery_queue (
                    newsletter_issue_id, subscriber_email,
                    attempt_count, next_attempt_at, enqueued_at
                )
                SELECT ?, email, 0, ?, ?
                FROM subscriptions
                WHERE status = 'confirmed'
                """,
                (str(issue_id), format_dt(now), format_dt(now)),
            )
            return cur.rowcount

    def dequeue(self, now: datetime) -> DeliveryTask | None:
        with storage_errors("delivery_queue.dequeue"):
            row = self._conn.execute(
                """
                SELECT * FROM issue_delivery_queue
                WHERE next_attempt_at <= ?
                ORDER BY next_attempt_at
                LIMIT 1
                """,
                (format_dt(now),),
            ).fetchone()
        return self._map_row(row) if row else None

    def delete(self, task: DeliveryTask) -> None:
        with storage_errors("delivery_queue.delete"):
            self._conn.execute(
                """
                DELETE FROM issue_delivery_queue
                WHERE newsletter_issue_id = ? AND subscriber_email = ?
                """,
                (str(task.issue_id), task.recipient_email),
            )

    def reschedule(self, task: DeliveryTask, next_attempt_at: datetime) -> None:
        with storage_errors("delivery_queue.reschedule"):
            self._conn.execute(
                """
                UPDATE issue_delivery_queue
                SET attempt_count = attempt_count + 1, next_attempt_at = ?
                WHERE newsletter_issue_id = ? AND subscriber_email = ?
                """,
                (format_dt(next_attempt_at), str(task.issue_id), task.recipient_email),
            )

    def defer(self, issue_id: str, recipient_email: str, next_attempt_at: datetime) -> None:
        with storage_errors("delivery_queue.defer"):
            self._conn.execute(
                """
                UPDATE issue_delivery_queue
                SET next_attempt_at = ?
                WHERE newsletter_issue_id = ? AND subscriber_email = ?
                """,
                (format_dt(next_attempt_at), issue_id, recipient_email),
            )

    def count_pending(self, issue_id: UUID | None = None) -> int:
        with storage_errors("delivery_queue.count"):
            if issue_id is None:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM issue_delivery_queue"
                ).fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM issue_delivery_queue WHERE newsletter_issue_id = ?",
                    (str(issue_id),),
                ).fetchone()
        return int(row["n"])

    def _map_row(self, row: dict[str, Any]) -> DeliveryTask:
        try:
            return DeliveryTask(
                issue_id=UUID(row["newsletter_issue_id"]),
                recipient_email=row["subscriber_email"],
                attempt_count=row["attempt_count"],
                next_attempt_at=parse_dt(row["next_attempt_at"]),
            )
        except (TypeError, ValueError) as e:
            raise MalformedTaskError(
                str(row["newsletter_issue_id"]), str(row["subscriber_email"]), e
            ) from e


# -----------------------------------------------------------------------------
# Subscribers
# -----------------------------------------------------------------------------


class SQLiteSubscriberRepo(SQLiteRepoBase):
    """SQLite implementation of SubscriberRepoPort."""

    def save(self, subscriber: NewsletterSubscriber) -> NewsletterSubscriber:
        with storage_errors("subscribers.save"):
            self._conn.execute(
                """
                INSERT INTO subscriptions (
                    id, email, status, created_at, confirmed_at, unsubscribed_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    status=excluded.status,
                    confirmed_at=excluded.confirmed_at,
                    unsubscribed_at=excluded.unsubscribed_at
                """,
                (
                    str(subscriber.id),
                    subscriber.email,
                    subscriber.status.value,
                    format_dt(subscriber.created_at),
                    format_dt(subscriber.confirmed_at) if subscriber.confirmed_at else None,
                    format_dt(subscriber.unsubscribed_at) if subscriber.unsubscribed_at else None,
                ),
            )
        return subscriber

    def get_by_email(self, email: str) -> NewsletterSubscriber | None:
        with storage_errors("subscribers.get_by_email"):
            row = self._conn.execute(
                "SELECT * FROM subscriptions WHERE email = ?", (email,)
            ).fetchone()
        if not row:
            return None
        return NewsletterSubscriber(
            id=UUID(row["id"]),
            email=row["email"],
            status=SubscriberStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            confirmed_at=parse_dt(row["confirmed_at"]),
            unsubscribed_at=parse_dt(row["unsubscribed_at"]),
        )


# -----------------------------------------------------------------------------
# Unit of Work
# -----------------------------------------------------------------------------


class SQLiteUnitOfWork:
    """
    SQLite Unit of Work implementation.

    Owns one connection and one write transaction. All repositories share
    the connection. Closing without commit rolls back.
    """

    def __init__(self, db_path: str, timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        self._conn: sqlite3.Connection | None = None

        # Lazy-initialized repositories
        self._idempotency: SQLiteIdempotencyRepo | None = None
        self._issues: SQLiteIssueRepo | None = None
        self._delivery_queue: SQLiteDeliveryQueueRepo | None = None
        self._subscribers: SQLiteSubscriberRepo | None = None

    def open(self) -> SQLiteUnitOfWork:
        """Connect and take the write lock."""
        if self._conn is not None:
            return self
        with storage_errors("begin"):
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
            try:
                conn.row_factory = dict_factory
                conn.execute("PRAGMA foreign_keys = ON;")
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                conn.close()
                raise
        self._conn = conn
        return self

    def __enter__(self) -> SQLiteUnitOfWork:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("connection", RuntimeError("unit of work is not open"))
        return self._conn

    def commit(self) -> None:
        if self._conn is None:
            return
        with storage_errors("commit"):
            if self._conn.in_transaction:
                self._conn.execute("COMMIT")

    def rollback(self) -> None:
        if self._conn is None:
            return
        with storage_errors("rollback"):
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self.rollback()
        finally:
            conn, self._conn = self._conn, None
            self._idempotency = None
            self._issues = None
            self._delivery_queue = None
            self._subscribers = None
            with storage_errors("close"):
                conn.close()

    @property
    def idempotency(self) -> SQLiteIdempotencyRepo:
        if self._idempotency is None:
            self._idempotency = SQLiteIdempotencyRepo(self.connection)
        return self._idempotency

    @property
    def issues(self) -> SQLiteIssueRepo:
        if self._issues is None:
            self._issues = SQLiteIssueRepo(self.connection)
        return self._issues

    @property
    def delivery_queue(self) -> SQLiteDeliveryQueueRepo:
        if self._delivery_queue is None:
            self._delivery_queue = SQLiteDeliveryQueueRepo(self.connection)
        return self._delivery_queue

    @property
    def subscribers(self) -> SQLiteSubscriberRepo:
        if self._subscribers is None:
            self._subscribers = SQLiteSubscriberRepo(self.connection)
        return self._subscribers


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


class SQLiteDatabase:
    """DatabasePort over a SQLite file."""

    def __init__(
        self,
        db_path: str,
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
        nowait_timeout_seconds: float = DEFAULT_NOWAIT_TIMEOUT_SECONDS,
    ):
        self.db_path = db_path
        self.busy_timeout_seconds = busy_timeout_seconds
        self.nowait_timeout_seconds = nowait_timeout_seconds

    def begin(self, *, nowait: bool = False) -> SQLiteUnitOfWork:
        timeout = self.nowait_timeout_seconds if nowait else self.busy_timeout_seconds
        return SQLiteUnitOfWork(self.db_path, timeout_seconds=timeout).open()

    def __repr__(self) -> str:
        return f"SQLiteDatabase({self.db_path!r})"
