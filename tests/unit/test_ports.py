from typing import Protocol

from src.components.delivery.ports import DeliveryDatabasePort
from src.components.idempotency.ports import LedgerDatabasePort
from src.components.newsletter.ports import SubscriberRepoPort
from src.components.outbox.ports import OutboxDatabasePort
from src.core.ports import (
    DatabasePort,
    DeliveryQueueRepoPort,
    EmailTransportPort,
    IdempotencyRepoPort,
    IssueRepoPort,
    StorageError,
    TimePort,
    UnitOfWorkPort,
)


def test_ports_are_protocols():
    """Verify all defined ports inherit from Protocol."""
    assert issubclass(DatabasePort, Protocol)
    assert issubclass(UnitOfWorkPort, Protocol)
    assert issubclass(IdempotencyRepoPort, Protocol)
    assert issubclass(IssueRepoPort, Protocol)
    assert issubclass(DeliveryQueueRepoPort, Protocol)
    assert issubclass(EmailTransportPort, Protocol)
    assert issubclass(TimePort, Protocol)
    assert issubclass(SubscriberRepoPort, Protocol)


def test_component_database_ports_are_protocols():
    assert issubclass(LedgerDatabasePort, Protocol)
    assert issubclass(OutboxDatabasePort, Protocol)
    assert issubclass(DeliveryDatabasePort, Protocol)


def test_storage_error_message():
    cause = RuntimeError("database is locked")
    err = StorageError("dequeue", cause)

    assert err.operation == "dequeue"
    assert err.cause is cause
    assert str(err) == "Storage operation 'dequeue' failed: database is locked"


def test_storage_error_without_cause():
    assert str(StorageError("commit")) == "Storage operation 'commit' failed"
