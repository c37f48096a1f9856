"""
Newsletter component ports.

Subscriber persistence as seen by the signup tooling and the publishing
pipeline. The outbox reads the confirmed set with a set-based query inside
its own transaction.
"""

from __future__ import annotations

from typing import Protocol

from src.components.newsletter.models import NewsletterSubscriber


class SubscriberRepoPort(Protocol):
    """Repository interface for subscriber storage."""

    def save(self, subscriber: NewsletterSubscriber) -> NewsletterSubscriber:
        """Insert or update a subscriber (keyed by email)."""
        ...

    def get_by_email(self, email: str) -> NewsletterSubscriber | None:
        """Get subscriber by normalized email."""
        ...
