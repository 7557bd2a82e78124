"""Conversion between engine models and JSON-compatible dictionaries."""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse

from sync_engine.errors import ValidationError
from sync_engine.models import (
    BookingLink,
    ConflictStatus,
    ConflictType,
    EndType,
    Event,
    EventConflict,
    EventLink,
    ImportLink,
    RecurrenceLink,
    RecurrencePattern,
    RecurrenceType,
    ResolutionStrategy,
    SourceModule,
    SyncAction,
    SyncHistoryEntry,
)

logger = logging.getLogger(__name__)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into naive local time.

    Values carrying a UTC offset (or a trailing Z) are converted to the
    host's local time and the offset is dropped.

    Raises:
        ValueError: If the value is not an ISO 8601 timestamp
    """
    moment = isoparse(value)
    if moment.tzinfo is not None:
        moment = moment.astimezone().replace(tzinfo=None)
    return moment


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


def _iso_or_none(value) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: str) -> date:
    # Accept full timestamps too; only the calendar date matters
    return parse_timestamp(value).date() if 'T' in value else date.fromisoformat(value)


def pattern_to_dict(pattern: RecurrencePattern) -> Dict[str, Any]:
    return {
        'type': pattern.type.value,
        'interval': pattern.interval,
        'end_type': pattern.end_type.value,
        'days_of_week': list(pattern.days_of_week) if pattern.days_of_week is not None else None,
        'end_after': pattern.end_after,
        'end_on': _iso_or_none(pattern.end_on),
        'exceptions': [d.isoformat() for d in pattern.exceptions],
    }


def pattern_from_dict(data: Dict[str, Any]) -> RecurrencePattern:
    """
    Build a RecurrencePattern from a dictionary.

    Args:
        data: Dictionary with type, interval, end_type and optional fields

    Returns:
        RecurrencePattern (not yet validated against its invariants)

    Raises:
        ValidationError: If a field is missing or has the wrong format
    """
    try:
        return RecurrencePattern(
            type=RecurrenceType(data['type']),
            interval=int(data.get('interval', 1)),
            end_type=EndType(data.get('end_type', EndType.NEVER.value)),
            days_of_week=[int(d) for d in data['days_of_week']] if data.get('days_of_week') is not None else None,
            end_after=int(data['end_after']) if data.get('end_after') is not None else None,
            end_on=_parse_date(data['end_on']) if data.get('end_on') else None,
            exceptions=[_parse_date(d) for d in data.get('exceptions') or []]
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed recurrence pattern: {e}")


def link_to_dict(link: EventLink) -> Optional[Dict[str, Any]]:
    if isinstance(link, RecurrenceLink):
        return {
            'kind': 'recurrence',
            'parent_event_id': link.parent_event_id,
            'instance_number': link.instance_number,
            'pattern': pattern_to_dict(link.pattern) if link.pattern else None,
        }
    if isinstance(link, ImportLink):
        return {
            'kind': 'import',
            'source': link.source,
            'external_event_id': link.external_event_id,
            'imported_at': _iso_or_none(link.imported_at),
        }
    if isinstance(link, BookingLink):
        return {
            'kind': 'booking',
            'resource_ids': list(link.resource_ids),
            'attendees': list(link.attendees),
            'notes': link.notes,
        }
    return None


def link_from_dict(data: Optional[Dict[str, Any]]) -> EventLink:
    if not data:
        return None
    kind = data.get('kind')
    if kind == 'recurrence':
        return RecurrenceLink(
            parent_event_id=data.get('parent_event_id'),
            instance_number=data.get('instance_number'),
            pattern=pattern_from_dict(data['pattern']) if data.get('pattern') else None
        )
    if kind == 'import':
        return ImportLink(
            source=data['source'],
            external_event_id=data['external_event_id'],
            imported_at=_datetime_or_none(data.get('imported_at'))
        )
    if kind == 'booking':
        return BookingLink(
            resource_ids=tuple(data.get('resource_ids') or ()),
            attendees=tuple(data.get('attendees') or ()),
            notes=data.get('notes', '')
        )
    raise ValueError(f"unknown link kind {kind!r}")


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        'id': event.id,
        'title': event.title,
        'start': event.start.isoformat(),
        'end': event.end.isoformat(),
        'source_module': event.source_module.value,
        'source_id': event.source_id,
        'status': event.status,
        'priority': event.priority,
        'description': event.description,
        'location': event.location,
        'assigned_to': event.assigned_to,
        'link': link_to_dict(event.link),
    }


def event_from_dict(data: Dict[str, Any]) -> Event:
    """
    Build an Event from a dictionary, rehydrating its timestamps.

    Args:
        data: Dictionary as produced by event_to_dict or sent by a caller

    Returns:
        Event object

    Raises:
        ValidationError: If required fields are missing or malformed
    """
    try:
        return Event(
            id=data['id'],
            title=data['title'],
            start=parse_timestamp(data['start']),
            end=parse_timestamp(data['end']),
            source_module=SourceModule(data.get('source_module', SourceModule.TASK.value)),
            source_id=data.get('source_id') or data['id'],
            status=data.get('status') or 'scheduled',
            priority=data.get('priority') or 'medium',
            description=data.get('description'),
            location=data.get('location'),
            assigned_to=data.get('assigned_to'),
            link=link_from_dict(data.get('link'))
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed event {data.get('id', '<unknown>')}: {e}")


def conflict_to_dict(conflict: EventConflict) -> Dict[str, Any]:
    return {
        'id': conflict.id,
        'event_id': conflict.event_id,
        'conflict_type': conflict.conflict_type.value,
        'local_event': event_to_dict(conflict.local_event),
        'external_event': event_to_dict(conflict.external_event) if conflict.external_event else None,
        'conflict_fields': list(conflict.conflict_fields),
        'detected_at': conflict.detected_at.isoformat(),
        'status': conflict.status.value,
        'resolution': conflict.resolution.value if conflict.resolution else None,
        'resolved_at': _iso_or_none(conflict.resolved_at),
    }


def conflict_from_dict(data: Dict[str, Any]) -> EventConflict:
    try:
        return EventConflict(
            id=data['id'],
            event_id=data['event_id'],
            conflict_type=ConflictType(data['conflict_type']),
            local_event=event_from_dict(data['local_event']),
            external_event=event_from_dict(data['external_event']) if data.get('external_event') else None,
            conflict_fields=list(data.get('conflict_fields') or []),
            detected_at=parse_timestamp(data['detected_at']),
            status=ConflictStatus(data.get('status', ConflictStatus.PENDING.value)),
            resolution=ResolutionStrategy(data['resolution']) if data.get('resolution') else None,
            resolved_at=_datetime_or_none(data.get('resolved_at'))
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed conflict {data.get('id', '<unknown>')}: {e}")


def history_entry_to_dict(entry: SyncHistoryEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'timestamp': entry.timestamp.isoformat(),
        'action': entry.action.value,
        'details': entry.details,
        'success': entry.success,
        'event_id': entry.event_id,
        'error': entry.error,
    }


def history_entry_from_dict(data: Dict[str, Any]) -> SyncHistoryEntry:
    try:
        return SyncHistoryEntry(
            id=data['id'],
            timestamp=parse_timestamp(data['timestamp']),
            action=SyncAction(data['action']),
            details=data.get('details', ''),
            success=bool(data.get('success', True)),
            event_id=data.get('event_id'),
            error=data.get('error')
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed history entry {data.get('id', '<unknown>')}: {e}")


def _load_items(items: List[Dict[str, Any]], loader, label: str) -> list:
    loaded = []
    for item in items or []:
        try:
            loaded.append(loader(item))
        except ValidationError as e:
            logger.warning(f"Dropping persisted {label}: {e}")
    return loaded


def session_state_to_dict(
    is_active: bool,
    last_sync: Optional[datetime],
    next_sync: Optional[datetime],
    conflicts: List[EventConflict],
    history: List[SyncHistoryEntry]
) -> Dict[str, Any]:
    """Serialize session state for the persistence store."""
    return {
        'is_active': is_active,
        'last_sync': _iso_or_none(last_sync),
        'next_sync': _iso_or_none(next_sync),
        'conflicts': [conflict_to_dict(c) for c in conflicts],
        'history': [history_entry_to_dict(h) for h in history],
    }


def session_state_from_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rehydrate persisted session state.

    Every embedded timestamp is converted back into a datetime. Conflicts and
    history entries that cannot be parsed are dropped with a warning.

    Args:
        data: Dictionary as produced by session_state_to_dict

    Returns:
        Dictionary with is_active, last_sync, next_sync, conflicts, history
    """
    return {
        'is_active': bool(data.get('is_active', False)),
        'last_sync': _datetime_or_none(data.get('last_sync')),
        'next_sync': _datetime_or_none(data.get('next_sync')),
        'conflicts': _load_items(data.get('conflicts'), conflict_from_dict, 'conflict'),
        'history': _load_items(data.get('history'), history_entry_from_dict, 'history entry'),
    }
