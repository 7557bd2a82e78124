"""AWS Lambda handler for the calendar sync engine."""
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from providers.external_calendar import ExternalCalendarClient
from storage.dynamodb_store import DynamoDBSessionStore
from sync_engine.bookings import ResourceBookingRequest
from sync_engine.errors import NotFoundError, ProviderError, ValidationError
from sync_engine.filters import parse_list, parse_modules, select_events_for_sync
from sync_engine.models import Event, SourceModule
from sync_engine.recurrence import expand_recurrence, validate_pattern
from sync_engine.serialization import (
    conflict_to_dict,
    event_from_dict,
    event_to_dict,
    history_entry_to_dict,
    parse_timestamp,
    pattern_from_dict,
)
from sync_engine.session import SyncSession

logger = logging.getLogger(__name__)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    """Handler configuration read from environment variables."""
    table_name: str
    log_level: str
    sync_interval_minutes: int
    provider_url: str
    calendar_type: str
    timeout_seconds: int
    max_retries: int
    conflict_policy: str
    sync_modules: List[SourceModule]
    exclude_completed: bool
    assigned_to: Optional[str]
    priorities: List[str]
    statuses: List[str]

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            table_name=os.environ.get('TABLE_NAME', 'calendar-sync-state'),
            log_level=os.environ.get('LOG_LEVEL', 'INFO'),
            sync_interval_minutes=int(os.environ.get('SYNC_INTERVAL_MINUTES', '15')),
            provider_url=os.environ.get('PROVIDER_URL', ''),
            calendar_type=os.environ.get('CALENDAR_TYPE', 'google'),
            timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
            max_retries=int(os.environ.get('MAX_RETRIES', '3')),
            conflict_policy=os.environ.get('CONFLICT_POLICY', 'manual'),
            sync_modules=parse_modules(
                os.environ.get('SYNC_MODULES', 'service,delivery,task,pdi')
            ),
            exclude_completed=os.environ.get('EXCLUDE_COMPLETED', 'true').lower() == 'true',
            assigned_to=os.environ.get('SYNC_ASSIGNED_TO') or None,
            priorities=parse_list(os.environ.get('SYNC_PRIORITIES', '')),
            statuses=parse_list(os.environ.get('SYNC_STATUSES', ''))
        )


def _require(payload: Dict[str, Any], key: str) -> Any:
    if payload.get(key) is None:
        raise ValidationError(f"Missing required field: {key}")
    return payload[key]


def _events(payload: Dict[str, Any], key: str) -> List[Event]:
    return [event_from_dict(item) for item in payload.get(key) or []]


def _provider(settings: Settings) -> ExternalCalendarClient:
    if not settings.provider_url:
        raise ValidationError("PROVIDER_URL is not configured")
    return ExternalCalendarClient(
        base_url=settings.provider_url,
        calendar_type=settings.calendar_type,
        timeout=settings.timeout_seconds,
        max_retries=settings.max_retries
    )


def _sync_candidates(payload: Dict[str, Any], settings: Settings) -> List[Event]:
    return select_events_for_sync(
        _events(payload, 'local_events'),
        enabled_modules=settings.sync_modules,
        exclude_completed=settings.exclude_completed,
        assigned_to=settings.assigned_to,
        priorities=settings.priorities,
        statuses=settings.statuses
    )


def handle_expand_recurrence(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    base = event_from_dict(_require(payload, 'event'))
    pattern = pattern_from_dict(_require(payload, 'pattern'))
    validate_pattern(pattern)
    instances = expand_recurrence(base, pattern)
    return {
        'message': f"Generated {len(instances)} instances",
        'instances': [event_to_dict(e) for e in instances]
    }


def handle_create_recurring_event(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    base = event_from_dict(_require(payload, 'event'))
    pattern = pattern_from_dict(_require(payload, 'pattern'))
    events = session.create_recurring_event(base, pattern)
    return {
        'message': f"Created recurring {pattern.type.value} event",
        'events': [event_to_dict(e) for e in events]
    }


def handle_create_resource_booking(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    data = _require(payload, 'booking')
    try:
        request = ResourceBookingRequest(
            title=data.get('title', ''),
            start=parse_timestamp(data['start']),
            end=parse_timestamp(data['end']),
            resource_ids=list(data.get('resource_ids') or []),
            description=data.get('description'),
            location=data.get('location'),
            attendees=list(data.get('attendees') or []),
            notes=data.get('notes', '')
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed booking: {e}")

    event = session.create_resource_booking(request)
    return {
        'message': f"Booked {len(request.resource_ids)} resource(s)",
        'event': event_to_dict(event)
    }


def handle_detect_conflicts(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    conflicts = session.detect_conflicts(
        _events(payload, 'local_events'),
        _events(payload, 'external_events')
    )
    return {
        'message': f"Detected {len(conflicts)} conflicts",
        'conflicts': [conflict_to_dict(c) for c in conflicts]
    }


def handle_resolve_conflict(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    outcome = session.resolve_conflict(
        _require(payload, 'conflict_id'),
        _require(payload, 'strategy')
    )
    accepted = outcome.accepted_event
    return {
        'message': outcome.history_entry.details,
        'conflict': conflict_to_dict(outcome.conflict),
        'accepted_event': event_to_dict(accepted) if accepted else None
    }


def handle_resolve_all_conflicts(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    outcome = session.resolve_all_conflicts(_require(payload, 'strategy'))
    return {
        'message': f"Resolved conflicts: {outcome.summary()}",
        'resolved': [o.conflict.id for o in outcome.succeeded],
        'accepted_events': [
            event_to_dict(o.accepted_event) for o in outcome.succeeded if o.accepted_event
        ],
        'failures': [{'conflict_id': f.item_id, 'error': f.error} for f in outcome.failures]
    }


def handle_start_sync(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    entry = session.start_sync()
    return {
        'message': 'Two-way synchronization is now active' if entry else 'Sync already active',
        'statistics': session.get_statistics().to_dict()
    }


def handle_stop_sync(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    entry = session.stop_sync()
    return {
        'message': 'Two-way synchronization has been disabled' if entry else 'Sync was not active',
        'statistics': session.get_statistics().to_dict()
    }


def handle_export_events(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    events = _sync_candidates(payload, settings)
    outcome = session.export_events(events, _provider(settings), settings.calendar_type)
    return {
        'message': f"Exported events: {outcome.summary()}",
        'exported': outcome.succeeded,
        'failures': [{'event_id': f.item_id, 'error': f.error} for f in outcome.failures]
    }


def handle_import_events(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    since = payload.get('since')
    try:
        since = parse_timestamp(since) if since else None
    except ValueError as e:
        raise ValidationError(f"Malformed since timestamp: {e}")

    events = session.import_events(_provider(settings), settings.calendar_type, since=since)
    return {
        'message': f"Imported {len(events)} events from {settings.calendar_type}",
        'events': [event_to_dict(e) for e in events]
    }


def handle_sync(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scheduled sync pass, normally triggered by EventBridge.

    The engine does not own the local modules' events: the caller passes
    them as 'local_events', typically through the EventBridge rule's input
    transformer. Without them the pass only imports the external feed and
    cannot detect any conflict.
    """
    if not session.is_active:
        return {'message': 'Sync is not active, skipping', 'conflicts': []}

    local_events = _sync_candidates(payload, settings)
    if not local_events:
        logger.warning(
            "Sync pass has no local events to reconcile; only the external feed "
            "will be imported"
        )

    conflicts = session.run_sync_pass(
        local_events,
        _provider(settings),
        settings.calendar_type
    )

    body = {
        'message': f"Sync pass detected {len(conflicts)} conflicts",
        'conflicts': [conflict_to_dict(c) for c in conflicts]
    }
    if settings.conflict_policy != 'manual' and session.pending_conflicts():
        outcome = session.resolve_all_conflicts(settings.conflict_policy)
        body['auto_resolved'] = len(outcome.succeeded)
        body['accepted_events'] = [
            event_to_dict(o.accepted_event) for o in outcome.succeeded if o.accepted_event
        ]
    return body


def handle_statistics(session: SyncSession, settings: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'message': 'Sync statistics',
        'statistics': session.get_statistics().to_dict(),
        'pending_conflicts': [conflict_to_dict(c) for c in session.pending_conflicts()],
        'history': [history_entry_to_dict(h) for h in session.history]
    }


ACTIONS: Dict[str, Callable[[SyncSession, Settings, Dict[str, Any]], Dict[str, Any]]] = {
    'expand_recurrence': handle_expand_recurrence,
    'create_recurring_event': handle_create_recurring_event,
    'create_resource_booking': handle_create_resource_booking,
    'detect_conflicts': handle_detect_conflicts,
    'resolve_conflict': handle_resolve_conflict,
    'resolve_all_conflicts': handle_resolve_all_conflicts,
    'start_sync': handle_start_sync,
    'stop_sync': handle_stop_sync,
    'export_events': handle_export_events,
    'import_events': handle_import_events,
    'sync': handle_sync,
    'statistics': handle_statistics,
}


def _error_response(status_code: int, message: str, error: Exception, start_time: float) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps({
            'message': message,
            'error': str(error),
            'error_type': type(error).__name__,
            'duration_seconds': round(time.time() - start_time, 2)
        })
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the calendar sync engine.

    Args:
        event: Direct invocation payload with an 'action' key, or an
            EventBridge scheduled event (treated as a sync pass)
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    settings = Settings.from_env()

    setup_logging(settings.log_level)

    start_time = time.time()
    action = event.get('action', 'sync')
    logger.info(
        f"Lambda execution started",
        extra={
            'action': action,
            'table_name': settings.table_name,
            'calendar_type': settings.calendar_type
        }
    )

    handler = ACTIONS.get(action)
    if handler is None:
        logger.warning(f"Unknown action requested: {action}")
        return _error_response(
            400, 'Unknown action', ValidationError(f"Unknown action: {action}"), start_time
        )

    try:
        store = DynamoDBSessionStore(table_name=settings.table_name)
        session = SyncSession.load(
            store, sync_interval=timedelta(minutes=settings.sync_interval_minutes)
        )

        logger.info(f"Running action: {action}")
        body = handler(session, settings, event)
        session.shutdown()

        body['duration_seconds'] = round(time.time() - start_time, 2)
        if session.persistence_error:
            body['persistence_error'] = session.persistence_error

        logger.info(
            f"Lambda execution completed successfully",
            extra={'action': action, 'duration_seconds': body['duration_seconds']}
        )
        return {'statusCode': 200, 'body': json.dumps(body)}

    except ValidationError as e:
        logger.warning(f"Rejected {action} request: {e}")
        return _error_response(400, 'Invalid request', e, start_time)

    except NotFoundError as e:
        logger.warning(f"{action} failed: {e}")
        return _error_response(404, 'Conflict not found', e, start_time)

    except ProviderError as e:
        logger.error(
            f"External calendar call failed: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(502, 'External calendar request failed', e, start_time)

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(500, 'Sync failed', e, start_time)
