"""
Outbox writer component.

Atomic issue insert + audience snapshot enqueue under an idempotency claim.
"""

from src.components.outbox.component import (
    build_accepted_response,
    parse_receipt,
    publish,
    validate_issue,
)
from src.components.outbox.models import (
    ACCEPTED_MESSAGE,
    DEFAULT_REDIRECT_TO,
    HTTP_SEE_OTHER,
    IssueContent,
    IssueValidationError,
    OutboxError,
    PublishConfig,
    PublishReceipt,
)
from src.components.outbox.ports import OutboxDatabasePort

__all__ = [
    # Component
    "build_accepted_response",
    "parse_receipt",
    "publish",
    "validate_issue",
    # Models
    "ACCEPTED_MESSAGE",
    "DEFAULT_REDIRECT_TO",
    "HTTP_SEE_OTHER",
    "IssueContent",
    "PublishConfig",
    "PublishReceipt",
    # Errors
    "IssueValidationError",
    "OutboxError",
    # Ports
    "OutboxDatabasePort",
]
