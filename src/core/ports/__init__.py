# newsletter-pipeline - Ports (Protocol Interfaces)
# Abstract interfaces for adapters; no implementations here

from src.core.ports.db import (
    DatabasePort,
    DeliveryQueueRepoPort,
    IdempotencyRepoPort,
    IssueRepoPort,
    StorageError,
    UnitOfWorkPort,
)
from src.core.ports.email import (
    EmailError,
    EmailResult,
    EmailSendError,
    EmailStatus,
    EmailTransportPort,
)
from src.core.ports.time import TimePort

__all__ = [
    # Storage
    "DatabasePort",
    "DeliveryQueueRepoPort",
    "IdempotencyRepoPort",
    "IssueRepoPort",
    "StorageError",
    "UnitOfWorkPort",
    # Email
    "EmailError",
    "EmailResult",
    "EmailSendError",
    "EmailStatus",
    "EmailTransportPort",
    # Time
    "TimePort",
]
