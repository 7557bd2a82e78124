"""Data models for the calendar sync engine."""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List, Optional, Tuple, Union

from sync_engine.errors import ValidationError
from sync_engine.statuses import is_terminal_status


class SourceModule(str, Enum):
    SERVICE = "service"
    DELIVERY = "delivery"
    TASK = "task"
    PDI = "pdi"
    EXTERNAL_IMPORT = "external-import"
    RESOURCE_BOOKING = "resource-booking"


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EndType(str, Enum):
    NEVER = "never"
    AFTER = "after"
    ON = "on"


class ConflictType(str, Enum):
    TIME_OVERLAP = "time_overlap"
    DATA_MISMATCH = "data_mismatch"
    DELETION_CONFLICT = "deletion_conflict"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ResolutionStrategy(str, Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_EXTERNAL = "keep_external"
    MERGE = "merge"
    IGNORE = "ignore"


class SyncAction(str, Enum):
    EXPORT = "export"
    IMPORT = "import"
    CONFLICT_RESOLVED = "conflict_resolved"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"


@dataclass
class RecurrencePattern:
    """How a base event repeats."""
    type: RecurrenceType
    interval: int = 1
    end_type: EndType = EndType.NEVER
    days_of_week: Optional[List[int]] = None  # 0 = Sunday .. 6 = Saturday
    end_after: Optional[int] = None
    end_on: Optional[date] = None
    exceptions: List[date] = field(default_factory=list)


@dataclass(frozen=True)
class RecurrenceLink:
    """Ties an event to its recurring series."""
    parent_event_id: Optional[str]
    instance_number: Optional[int]
    pattern: Optional[RecurrencePattern] = None


@dataclass(frozen=True)
class ImportLink:
    """Ties an event to its counterpart in an external calendar."""
    source: str
    external_event_id: str
    imported_at: Optional[datetime] = None


@dataclass(frozen=True)
class BookingLink:
    """Resources and attendees reserved by a booking event."""
    resource_ids: Tuple[str, ...]
    attendees: Tuple[str, ...] = ()
    notes: str = ""


EventLink = Union[None, RecurrenceLink, ImportLink, BookingLink]


def new_id() -> str:
    """Short random identifier for conflicts and history entries."""
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class Event:
    """A scheduled calendar event. Updates produce new values via replace()."""
    id: str
    title: str
    start: datetime
    end: datetime
    source_module: SourceModule
    source_id: str
    status: str = "scheduled"
    priority: str = "medium"
    description: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[str] = None
    link: EventLink = None

    def __post_init__(self):
        if self.start >= self.end:
            raise ValidationError(
                f"Event '{self.id}' must start before it ends "
                f"({self.start.isoformat()} >= {self.end.isoformat()})"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def external_event_id(self) -> Optional[str]:
        if isinstance(self.link, ImportLink):
            return self.link.external_event_id
        return None

    @property
    def is_recurring(self) -> bool:
        return isinstance(self.link, RecurrenceLink)

    @property
    def parent_event_id(self) -> Optional[str]:
        if isinstance(self.link, RecurrenceLink):
            return self.link.parent_event_id
        return None

    @property
    def instance_number(self) -> Optional[int]:
        if isinstance(self.link, RecurrenceLink):
            return self.link.instance_number
        return None

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.source_module, self.status)


@dataclass
class EventConflict:
    """Disagreement between a local event and its external counterpart."""
    id: str
    event_id: str
    conflict_type: ConflictType
    local_event: Event
    external_event: Optional[Event]
    conflict_fields: List[str]
    detected_at: datetime
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: Optional[ResolutionStrategy] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ConflictStatus.PENDING


@dataclass(frozen=True)
class SyncHistoryEntry:
    """Append-only audit record of a sync action."""
    id: str
    timestamp: datetime
    action: SyncAction
    details: str
    success: bool = True
    event_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ResolutionOutcome:
    """Result of resolving one conflict."""
    conflict: EventConflict
    accepted_event: Optional[Event]
    history_entry: SyncHistoryEntry
