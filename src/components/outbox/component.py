"""
Outbox writer component.

Turns one publish request into, atomically:
- a NewsletterIssue row
- one delivery task per subscriber confirmed at this instant
- the completed idempotency ledger row holding the response

Either all three commit or none do. A retry with the same key replays the
stored response without writing anything.
"""

from __future__ import annotations

import json
import logging

from src.components.idempotency import (
    AlreadyCompleted,
    IdempotencyKey,
    SavedResponse,
    abandon,
    claim,
    complete,
)
from src.components.outbox.models import (
    ACCEPTED_MESSAGE,
    HTTP_SEE_OTHER,
    IssueContent,
    IssueValidationError,
    PublishConfig,
    PublishReceipt,
)
from src.components.outbox.ports import OutboxDatabasePort, TimePort
from src.core.entities import NewsletterIssue

logger = logging.getLogger(__name__)


# --- Pure Functions (Functional Core) ---


def validate_issue(content: IssueContent, config: PublishConfig) -> None:
    """
    Check issue content before anything touches storage.

    Raises:
        IssueValidationError: a field is empty or the title is too long
    """
    if not content.title.strip():
        raise IssueValidationError("title", "must not be empty")
    if len(content.title) > config.max_title_length:
        raise IssueValidationError(
            "title", f"must be at most {config.max_title_length} characters"
        )
    if not content.html_body.strip():
        raise IssueValidationError("html_body", "must not be empty")
    if not content.text_body.strip():
        raise IssueValidationError("text_body", "must not be empty")


def build_accepted_response(
    issue: NewsletterIssue, enqueued: int, config: PublishConfig
) -> SavedResponse:
    """303 redirect to the admin page with a JSON receipt as body."""
    body = json.dumps(
        {
            "issue_id": str(issue.id),
            "enqueued": enqueued,
            "message": ACCEPTED_MESSAGE,
        }
    ).encode("utf-8")
    return SavedResponse(
        status_code=HTTP_SEE_OTHER,
        headers=(
            ("location", config.redirect_to.encode("utf-8")),
            ("content-type", b"application/json"),
        ),
        body=body,
    )


def parse_receipt(response: SavedResponse) -> PublishReceipt:
    """Decode the JSON receipt of a publish response."""
    data = json.loads(response.body)
    return PublishReceipt(
        issue_id=data["issue_id"],
        enqueued=data["enqueued"],
        message=data.get("message", ACCEPTED_MESSAGE),
    )


# --- Run Handler ---


def publish(
    db: OutboxDatabasePort,
    caller_id: str,
    key: str,
    content: IssueContent,
    *,
    clock: TimePort,
    config: PublishConfig | None = None,
) -> SavedResponse:
    """
    Publish a newsletter issue exactly once per (caller_id, key).

    Returns:
        The response to send: fresh on first success, replayed afterwards

    Raises:
        IdempotencyKeyError / IssueValidationError: bad input, nothing stored
        RequestInFlightError: the same key is being processed right now
        StorageError: database failure, nothing committed (safe to retry)
    """
    cfg = config or PublishConfig()

    idempotency_key = IdempotencyKey.parse(key, cfg.max_key_length)
    validate_issue(content, cfg)

    now = clock.now_utc()
    outcome = claim(
        db, caller_id, idempotency_key, now=now, grace_seconds=cfg.claim_grace_seconds
    )
    if isinstance(outcome, AlreadyCompleted):
        return outcome.response

    try:
        issue = NewsletterIssue(
            title=content.title,
            html_body=content.html_body,
            text_body=content.text_body,
            published_at=now,
        )
        outcome.uow.issues.insert(issue)
        enqueued = outcome.uow.delivery_queue.enqueue_confirmed(issue.id, now)
        response = build_accepted_response(issue, enqueued, cfg)
    except BaseException:
        abandon(outcome)
        raise

    complete(outcome, response, now=now)
    logger.info(
        "Published issue %s for caller %s: %d deliveries enqueued",
        issue.id,
        caller_id,
        enqueued,
    )
    return response
