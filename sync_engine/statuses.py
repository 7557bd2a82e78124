"""Per-module status enums and the terminal-state capability."""
from enum import Enum
from typing import Dict, Type


class ServiceStatus(str, Enum):
    OPEN = "open"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    WAITING_PARTS = "waiting_parts"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ServiceStatus.COMPLETED, ServiceStatus.CANCELLED)


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)


class TaskStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class InspectionStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InspectionStatus.COMPLETED,
            InspectionStatus.APPROVED,
            InspectionStatus.FAILED,
        )


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)


# Keyed by SourceModule value; external imports have no status vocabulary
STATUS_TYPES: Dict[str, Type[Enum]] = {
    "service": ServiceStatus,
    "delivery": DeliveryStatus,
    "task": TaskStatus,
    "pdi": InspectionStatus,
    "resource-booking": BookingStatus,
}


def is_terminal_status(module: str, status: str) -> bool:
    """
    Check whether a status string is a terminal state for its module.

    Args:
        module: SourceModule value of the owning module
        status: Free-form status string carried by the event

    Returns:
        True if the status is terminal, False for non-terminal or unknown values
    """
    status_type = STATUS_TYPES.get(str(getattr(module, "value", module)))
    if status_type is None or not status:
        return False
    try:
        return status_type(status).is_terminal
    except ValueError:
        return False
