"""
PostgreSQL Database Adapter.

Production backend for the pipeline DB ports, on psycopg 3.

Transactions:
- one connection per unit of work, autocommit off, READ COMMITTED
- a duplicate idempotency claim blocks on the unique index until the
  first transaction finishes, then sees its completed row
- dequeue uses FOR UPDATE SKIP LOCKED so concurrent workers never pick
  the same task and never wait on each other
- nowait units of work set a short lock_timeout for the transaction

Schema lives in migrations/postgres/ and is applied by PostgresMigrator.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from src.components.newsletter.models import NewsletterSubscriber, SubscriberStatus
from src.core.entities import DeliveryTask, IdempotencyRecord, NewsletterIssue
from src.core.ports.db import MalformedTaskError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_NOWAIT_LOCK_TIMEOUT_MS = 100

Connect = Callable[..., Any]


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate psycopg errors into StorageError."""
    try:
        yield
    except psycopg.Error as e:
        raise StorageError(operation, e) from e


class PostgresRepoBase:
    """Base class for repositories bound to a unit of work's connection."""

    def __init__(self, connection: Any):
        self._conn = connection


# -----------------------------------------------------------------------------
# Idempotency ledger
# -----------------------------------------------------------------------------


class PostgresIdempotencyRepo(PostgresRepoBase):
    """Postgres implementation of IdempotencyRepoPort."""

    def insert_if_absent(self, caller_id: str, key: str, now: datetime) -> bool:
        with storage_errors("idempotency.insert"):
            cur = self._conn.execute(
                """
                INSERT INTO idempotency (
                    caller_id, idempotency_key, status, created_at, claimed_at
                ) VALUES (%s, %s, 'claimed', %s, %s)
                ON CONFLICT (caller_id, idempotency_key) DO NOTHING
                """,
                (caller_id, key, now, now),
            )
            return cur.rowcount == 1

    def get(self, caller_id: str, key: str) -> IdempotencyRecord | None:
        with storage_errors("idempotency.get"):
            row = self._conn.execute(
                """
                SELECT * FROM idempotency
                WHERE caller_id = %s AND idempotency_key = %s
                """,
                (caller_id, key),
            ).fetchone()
        if not row:
            return None
        headers = row["response_headers"]
        body = row["response_body"]
        return IdempotencyRecord(
            caller_id=row["caller_id"],
            idempotency_key=row["idempotency_key"],
            status=row["status"],
            created_at=row["created_at"],
            claimed_at=row["claimed_at"],
            response_status_code=row["response_status_code"],
            response_headers=bytes(headers) if headers is not None else None,
            response_body=bytes(body) if body is not None else None,
            completed_at=row["completed_at"],
        )

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
                UPDATE idempotency SET claimed_at = %s
                WHERE caller_id = %s AND idempotency_key = %s
                  AND status = 'claimed' AND claimed_at = %s
                """,
                (now, caller_id, key, observed_claimed_at),
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
                    response_status_code = %s,
                    response_headers = %s,
                    response_body = %s,
                    completed_at = %s
                WHERE caller_id = %s AND idempotency_key = %s AND status = 'claimed'
                """,
                (status_code, headers, body, now, caller_id, key),
            )
        if cur.rowcount != 1:
            raise StorageError("idempotency.save_response")

    def delete_older_than(self, cutoff: datetime) -> int:
        with storage_errors("idempotency.delete_older_than"):
            cur = self._conn.execute(
                "DELETE FROM idempotency WHERE created_at < %s", (cutoff,)
            )
            return cur.rowcount


# -----------------------------------------------------------------------------
# Newsletter issues
# -----------------------------------------------------------------------------


class PostgresIssueRepo(PostgresRepoBase):
    """Postgres implementation of IssueRepoPort."""

    def insert(self, issue: NewsletterIssue) -> NewsletterIssue:
        with storage_errors("issues.insert"):
            self._conn.execute(
                """
                INSERT INTO newsletter_issues (
                    newsletter_issue_id, title, text_content, html_content, published_at
                ) VALUES (%s, %s, %s, %s, %s)
                """,
                (issue.id, issue.title, issue.text_body, issue.html_body, issue.published_at),
            )
        return issue

    def get(self, issue_id: UUID) -> NewsletterIssue | None:
        with storage_errors("issues.get"):
            row = self._conn.execute(
                "SELECT * FROM newsletter_issues WHERE newsletter_issue_id = %s",
                (issue_id,),
            ).fetchone()
        if not row:
            return None
        return NewsletterIssue(
            id=row["newsletter_issue_id"],
            title=row["title"],
            html_body=row["html_content"],
            text_body=row["text_content"],
            published_at=row["published_at"],
        )


# -----------------------------------------------------------------------------
# Delivery queue
# -----------------------------------------------------------------------------


class PostgresDeliveryQueueRepo(PostgresRepoBase):
    """Postgres implementation of DeliveryQueueRepoPort."""

    def enqueue_confirmed(self, issue_id: UUID, now: datetime) -> int:
        with storage_errors("delivery_queue.enqueue"):
            cur = self._conn.execute(
                """
                INSERT INTO issue_delivery_queue (
                    newsletter_issue_id, subscriber_email,
                    attempt_count, next_attempt_at, enqueued_at
                )
                SELECT %s, email, 0, %s, %s
                FROM subscriptions
                WHERE status = 'confirmed'
                """,
                (issue_id, now, now),
            )
            return cur.rowcount

    def dequeue(self, now: datetime) -> DeliveryTask | None:
        with storage_errors("delivery_queue.dequeue"):
            row = self._conn.execute(
                """
                SELECT newsletter_issue_id, subscriber_email, attempt_count, next_attempt_at
                FROM issue_delivery_queue
                WHERE next_attempt_at <= %s
                ORDER BY next_attempt_at
                FOR UPDATE SKIP LOCKED
                LIMIT 1
                """,
                (now,),
            ).fetchone()
        return self._map_row(row) if row else None

    def delete(self, task: DeliveryTask) -> None:
        with storage_errors("delivery_queue.delete"):
            self._conn.execute(
                """
                DELETE FROM issue_delivery_queue
                WHERE newsletter_issue_id = %s AND subscriber_email = %s
                """,
                (task.issue_id, task.recipient_email),
            )

    def reschedule(self, task: DeliveryTask, next_attempt_at: datetime) -> None:
        with storage_errors("delivery_queue.reschedule"):
            self._conn.execute(
                """
                UPDATE issue_delivery_queue
                SET attempt_count = attempt_count + 1, next_attempt_at = %s
                WHERE newsletter_issue_id = %s AND subscriber_email = %s
                """,
                (next_attempt_at, task.issue_id, task.recipient_email),
            )

    def defer(self, issue_id: str, recipient_email: str, next_attempt_at: datetime) -> None:
        with storage_errors("delivery_queue.defer"):
            self._conn.execute(
                """
                UPDATE issue_delivery_queue
                SET next_attempt_at = %s
                WHERE newsletter_issue_id::text = %s AND subscriber_email = %s
                """,
                (next_attempt_at, issue_id, recipient_email),
            )

    def count_pending(self, issue_id: UUID | None = None) -> int:
        with storage_errors("delivery_queue.count"):
            if issue_id is None:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM issue_delivery_queue"
                ).fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM issue_delivery_queue"
                    " WHERE newsletter_issue_id = %s",
                    (issue_id,),
                ).fetchone()
        return int(row["n"])

    def _map_row(self, row: dict[str, Any]) -> DeliveryTask:
        try:
            return DeliveryTask(
                issue_id=UUID(str(row["newsletter_issue_id"])),
                recipient_email=row["subscriber_email"],
                attempt_count=row["attempt_count"],
                next_attempt_at=row["next_attempt_at"],
            )
        except (TypeError, ValueError) as e:
            raise MalformedTaskError(
                str(row["newsletter_issue_id"]), str(row["subscriber_email"]), e
            ) from e


# -----------------------------------------------------------------------------
# Subscribers
# -----------------------------------------------------------------------------


class PostgresSubscriberRepo(PostgresRepoBase):
    """Postgres implementation of SubscriberRepoPort."""

    def save(self, subscriber: NewsletterSubscriber) -> NewsletterSubscriber:
        with storage_errors("subscribers.save"):
            self._conn.execute(
                """
                INSERT INTO subscriptions (
                    id, email, status, created_at, confirmed_at, unsubscribed_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE SET
                    status = EXCLUDED.status,
                    confirmed_at = EXCLUDED.confirmed_at,
                    unsubscribed_at = EXCLUDED.unsubscribed_at
                """,
                (
                    subscriber.id,
                    subscriber.email,
                    subscriber.status.value,
                    subscriber.created_at,
                    subscriber.confirmed_at,
                    subscriber.unsubscribed_at,
                ),
            )
        return subscriber

    def get_by_email(self, email: str) -> NewsletterSubscriber | None:
        with storage_errors("subscribers.get_by_email"):
            row = self._conn.execute(
                "SELECT * FROM subscriptions WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return NewsletterSubscriber(
            id=row["id"],
            email=row["email"],
            status=SubscriberStatus(row["status"]),
            created_at=row["created_at"],
            confirmed_at=row["confirmed_at"],
            unsubscribed_at=row["unsubscribed_at"],
        )


# -----------------------------------------------------------------------------
# Unit of Work
# -----------------------------------------------------------------------------


class PostgresUnitOfWork:
    """
    Postgres Unit of Work implementation.

    psycopg opens the transaction implicitly on the first statement;
    commit/rollback end it. Closing without commit rolls back.
    """

    def __init__(self, connection: Any):
        self._conn: Any | None = connection
        self._idempotency: PostgresIdempotencyRepo | None = None
        self._issues: PostgresIssueRepo | None = None
        self._delivery_queue: PostgresDeliveryQueueRepo | None = None
        self._subscribers: PostgresSubscriberRepo | None = None

    def __enter__(self) -> PostgresUnitOfWork:
        return self

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
    def connection(self) -> Any:
        if self._conn is None:
            raise StorageError("connection", RuntimeError("unit of work is closed"))
        return self._conn

    def commit(self) -> None:
        if self._conn is not None:
            with storage_errors("commit"):
                self._conn.commit()

    def rollback(self) -> None:
        if self._conn is not None:
            with storage_errors("rollback"):
                self._conn.rollback()

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
    def idempotency(self) -> PostgresIdempotencyRepo:
        if self._idempotency is None:
            self._idempotency = PostgresIdempotencyRepo(self.connection)
        return self._idempotency

    @property
    def issues(self) -> PostgresIssueRepo:
        if self._issues is None:
            self._issues = PostgresIssueRepo(self.connection)
        return self._issues

    @property
    def delivery_queue(self) -> PostgresDeliveryQueueRepo:
        if self._delivery_queue is None:
            self._delivery_queue = PostgresDeliveryQueueRepo(self.connection)
        return self._delivery_queue

    @property
    def subscribers(self) -> PostgresSubscriberRepo:
        if self._subscribers is None:
            self._subscribers = PostgresSubscriberRepo(self.connection)
        return self._subscribers


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


class PostgresDatabase:
    """DatabasePort over a PostgreSQL DSN."""

    def __init__(
        self,
        dsn: str,
        nowait_lock_timeout_ms: int = DEFAULT_NOWAIT_LOCK_TIMEOUT_MS,
        connect: Connect | None = None,
    ):
        if not dsn.strip():
            raise ValueError("A PostgreSQL DSN is required")
        self._dsn = dsn.strip()
        self.nowait_lock_timeout_ms = nowait_lock_timeout_ms
        self._connect = connect or psycopg.connect

    def begin(self, *, nowait: bool = False) -> PostgresUnitOfWork:
        with storage_errors("begin"):
            conn = self._connect(self._dsn, row_factory=dict_row)
            if nowait:
                try:
                    conn.execute(
                        "SELECT set_config('lock_timeout', %s, true)",
                        (f"{self.nowait_lock_timeout_ms}ms",),
                    )
                except psycopg.Error:
                    conn.close()
                    raise
        return PostgresUnitOfWork(conn)

    def __repr__(self) -> str:
        return "PostgresDatabase(<dsn>)"


class PostgresMigrator:
    """Applies migrations/postgres/*.sql in filename order, once each."""

    def __init__(self, dsn: str, migrations_dir: str, connect: Connect | None = None):
        self._dsn = dsn
        self.migrations_dir = migrations_dir
        self._connect = connect or psycopg.connect

    def _read_up_script(self, filename: str) -> str:
        with open(os.path.join(self.migrations_dir, filename)) as f:
            content = f.read()
        if "-- Down" in content:
            return content.split("-- Down")[0]
        return content

    def run_migrations(self) -> list[str]:
        """Apply all pending migrations. Returns the filenames applied."""
        files = sorted(f for f in os.listdir(self.migrations_dir) if f.endswith(".sql"))
        applied_now: list[str] = []
        with storage_errors("migrate"):
            conn = self._connect(self._dsn)
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS _migrations (
                        id SERIAL PRIMARY KEY,
                        filename TEXT UNIQUE NOT NULL,
                        applied_at TIMESTAMPTZ DEFAULT now()
                    )
                    """
                )
                conn.commit()
                rows = conn.execute("SELECT filename FROM _migrations").fetchall()
                applied = {r[0] for r in rows}
                for filename in files:
                    if filename in applied:
                        continue
                    logger.info("Applying migration: %s", filename)
                    conn.execute(self._read_up_script(filename))
                    conn.execute("INSERT INTO _migrations (filename) VALUES (%s)", (filename,))
                    conn.commit()
                    applied_now.append(filename)
            except psycopg.Error:
                conn.rollback()
                raise
            finally:
                conn.close()
        logger.info("All migrations applied (%d new)", len(applied_now))
        return applied_now
