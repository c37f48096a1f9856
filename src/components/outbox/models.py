"""
Outbox writer models.

Issue content accepted by the publish endpoint and the settings that
shape the replayable response.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.components.idempotency.models import DEFAULT_MAX_KEY_LENGTH

ACCEPTED_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly!"
DEFAULT_REDIRECT_TO = "/admin/newsletters"
HTTP_SEE_OTHER = 303


# --- Input Models ---


@dataclass(frozen=True)
class IssueContent:
    """Newsletter issue as submitted by the admin."""

    title: str
    html_body: str
    text_body: str


# --- Output Models ---


@dataclass(frozen=True)
class PublishReceipt:
    """Decoded body of the publish response."""

    issue_id: str
    enqueued: int
    message: str = ACCEPTED_MESSAGE


# --- Configuration ---


@dataclass(frozen=True)
class PublishConfig:
    """Outbox writer configuration."""

    redirect_to: str = DEFAULT_REDIRECT_TO
    max_title_length: int = 200
    max_key_length: int = DEFAULT_MAX_KEY_LENGTH
    claim_grace_seconds: int = 300


# --- Error Types ---


class OutboxError(Exception):
    """Base outbox writer error."""

    pass


class IssueValidationError(OutboxError):
    """Submitted issue content is unusable (client error)."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")
