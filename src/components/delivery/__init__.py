"""
Delivery worker component.

Skip-locked dequeue, send, delete. At-least-once, at most one attempt by
default.
"""

from src.components.delivery.component import (
    drain_queue,
    process_task,
    run_worker_iteration,
    try_execute_task,
)
from src.components.delivery.models import (
    DeliveryConfig,
    DeliveryError,
    ExecutionOutcome,
    FatalDeliveryError,
    TaskDisposition,
    TransientDeliveryError,
)
from src.components.delivery.ports import DeliveryDatabasePort

__all__ = [
    # Component
    "drain_queue",
    "process_task",
    "run_worker_iteration",
    "try_execute_task",
    # Models
    "DeliveryConfig",
    "ExecutionOutcome",
    "TaskDisposition",
    # Errors
    "DeliveryError",
    "FatalDeliveryError",
    "TransientDeliveryError",
    # Ports
    "DeliveryDatabasePort",
]
