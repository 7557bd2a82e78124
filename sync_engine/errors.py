"""Error types raised and reported by the calendar sync engine."""
from dataclasses import dataclass, field
from typing import Any, List


class SyncEngineError(Exception):
    """Base exception for calendar sync engine errors."""


class ValidationError(SyncEngineError):
    """Malformed input rejected before any state change."""


class NotFoundError(SyncEngineError):
    """Requested conflict does not exist in the session."""

    def __init__(self, conflict_id: str):
        super().__init__(f"Conflict not found: {conflict_id}")
        self.conflict_id = conflict_id


class ProviderError(SyncEngineError):
    """External calendar provider call failed."""


class PersistenceFailure(SyncEngineError):
    """Durable store read or write did not complete."""


@dataclass
class ItemFailure:
    """Failure of one item inside a batch operation."""
    item_id: str
    error: str


@dataclass
class BatchOutcome:
    """Per-item result of a batch operation (bulk resolve, multi-export)."""
    succeeded: List[Any] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failures)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failures) and bool(self.succeeded)

    def summary(self) -> str:
        return f"{len(self.succeeded)} of {self.total} succeeded"
