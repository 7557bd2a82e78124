"""Integration tests for Lambda handler."""
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest

from lambda_function import JsonFormatter, Settings, handle_sync, lambda_handler, setup_logging
from sync_engine.errors import PersistenceFailure, ProviderError
from sync_engine.models import SourceModule
from sync_engine.serialization import event_from_dict
from sync_engine.session import SyncSession


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'TABLE_NAME': 'test-calendar-sync',
        'LOG_LEVEL': 'INFO',
        'SYNC_INTERVAL_MINUTES': '15',
        'PROVIDER_URL': 'https://calendar.example.com/api',
        'CALENDAR_TYPE': 'google',
        'TIMEOUT_SECONDS': '30',
        'CONFLICT_POLICY': 'manual'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def store(memory_store):
    """In-memory session store patched into the handler."""
    with patch('lambda_function.DynamoDBSessionStore', return_value=memory_store):
        yield memory_store


@pytest.fixture
def mock_provider():
    """External calendar client patched into the handler."""
    provider = Mock()
    with patch('lambda_function.ExternalCalendarClient', return_value=provider) as client_cls:
        provider.client_cls = client_cls
        yield provider


def event_dict(event_id, title, start='2024-06-04T09:00:00', end='2024-06-04T10:00:00', **fields):
    data = {'id': event_id, 'title': title, 'start': start, 'end': end}
    data.update(fields)
    return data


def import_link(external_id):
    return {'kind': 'import', 'source': 'google', 'external_event_id': external_id}


def external_event(external_id, title, **fields):
    """Imported event as the provider client would return it."""
    return event_from_dict(event_dict(
        f'imported-{external_id}', title,
        source_module='external-import',
        source_id=external_id,
        link=import_link(external_id),
        **fields
    ))


def invoke(event, context):
    response = lambda_handler(event, context)
    return response['statusCode'], json.loads(response['body'])


class TestLambdaHandler:
    """Test cases for lambda_handler function."""

    def test_unknown_action(self, mock_env, mock_context, store):
        """Test an unknown action is rejected."""
        status, body = invoke({'action': 'teleport'}, mock_context)

        assert status == 400
        assert body['message'] == 'Unknown action'
        assert 'teleport' in body['error']

    def test_expand_recurrence(self, mock_env, mock_context, store):
        """Test instance generation for a weekly inspection."""
        status, body = invoke({
            'action': 'expand_recurrence',
            'event': event_dict('insp-1', 'Inspection', start='2024-03-04T09:00:00',
                                end='2024-03-04T10:00:00', source_module='pdi'),
            'pattern': {'type': 'weekly', 'days_of_week': [1], 'end_type': 'after', 'end_after': 3}
        }, mock_context)

        assert status == 200
        assert [i['start'] for i in body['instances']] == [
            '2024-03-11T09:00:00',
            '2024-03-18T09:00:00',
            '2024-03-25T09:00:00',
        ]
        assert body['instances'][0]['link']['parent_event_id'] == 'insp-1'
        assert 'duration_seconds' in body

    def test_invalid_pattern(self, mock_env, mock_context, store):
        """Test a malformed pattern returns 400."""
        status, body = invoke({
            'action': 'expand_recurrence',
            'event': event_dict('insp-1', 'Inspection'),
            'pattern': {'type': 'daily', 'end_type': 'after'}
        }, mock_context)

        assert status == 400
        assert body['message'] == 'Invalid request'
        assert body['error_type'] == 'ValidationError'

    def test_missing_field(self, mock_env, mock_context, store):
        """Test a request without its payload returns 400."""
        status, body = invoke({'action': 'resolve_conflict', 'strategy': 'merge'}, mock_context)

        assert status == 400
        assert 'conflict_id' in body['error']

    def test_create_recurring_event_persists_history(self, mock_env, mock_context, store):
        """Test the creation is recorded in the stored session."""
        status, body = invoke({
            'action': 'create_recurring_event',
            'event': event_dict('task-1', 'Lot walk', source_module='task'),
            'pattern': {'type': 'daily', 'end_type': 'after', 'end_after': 2}
        }, mock_context)

        assert status == 200
        assert [e['id'] for e in body['events']] == ['task-1', 'task-1-1', 'task-1-2']
        saved = store.data['calendar_sync_status']
        assert 'Created recurring daily event with 2 instances' in saved

    def test_create_resource_booking(self, mock_env, mock_context, store):
        """Test a valid booking."""
        status, body = invoke({
            'action': 'create_resource_booking',
            'booking': {
                'title': 'Customer walkthrough',
                'start': '2024-06-04T10:00:00',
                'end': '2024-06-04T11:00:00',
                'resource_ids': ['room-1']
            }
        }, mock_context)

        assert status == 200
        assert body['event']['source_module'] == 'resource-booking'
        assert body['event']['link']['resource_ids'] == ['room-1']

    def test_create_resource_booking_bad_times(self, mock_env, mock_context, store):
        """Test a booking ending before it starts."""
        status, body = invoke({
            'action': 'create_resource_booking',
            'booking': {
                'title': 'Customer walkthrough',
                'start': '2024-06-04T11:00:00',
                'end': '2024-06-04T10:00:00',
                'resource_ids': ['room-1']
            }
        }, mock_context)

        assert status == 400
        assert body['error'] == 'End time must be after start time'

    def test_detect_and_resolve_conflict(self, mock_env, mock_context, store):
        """Test a conflict survives between invocations and resolves."""
        status, body = invoke({
            'action': 'detect_conflicts',
            'local_events': [event_dict('local-1', 'A', source_module='service',
                                        link=import_link('ext-1'))],
            'external_events': [event_dict('imported-ext-1', 'B',
                                           source_module='external-import',
                                           link=import_link('ext-1'))]
        }, mock_context)
        assert status == 200
        conflict_id = body['conflicts'][0]['id']

        status, body = invoke({
            'action': 'resolve_conflict',
            'conflict_id': conflict_id,
            'strategy': 'keep_external'
        }, mock_context)

        assert status == 200
        assert body['accepted_event']['title'] == 'B'
        assert body['conflict']['status'] == 'resolved'
        assert body['message'] == 'Conflict resolved using keep external strategy'

    def test_resolve_unknown_conflict(self, mock_env, mock_context, store):
        """Test an unknown conflict id returns 404."""
        status, body = invoke({
            'action': 'resolve_conflict',
            'conflict_id': 'missing',
            'strategy': 'keep_local'
        }, mock_context)

        assert status == 404
        assert body['error'] == 'Conflict not found: missing'

    def test_start_and_stop_sync(self, mock_env, mock_context, store):
        """Test activation state is carried across invocations."""
        status, body = invoke({'action': 'start_sync'}, mock_context)
        assert status == 200
        assert body['statistics']['is_active'] is True

        status, body = invoke({'action': 'start_sync'}, mock_context)
        assert body['message'] == 'Sync already active'

        status, body = invoke({'action': 'stop_sync'}, mock_context)
        assert body['statistics']['is_active'] is False
        assert body['statistics']['total_syncs'] == 2

    def test_scheduled_sync_when_inactive(self, mock_env, mock_context, store, mock_provider):
        """Test an EventBridge trigger is skipped while sync is off."""
        status, body = invoke({'source': 'aws.events'}, mock_context)

        assert status == 200
        assert body['message'] == 'Sync is not active, skipping'
        mock_provider.import_events.assert_not_called()

    def test_scheduled_sync_auto_resolves(self, mock_env, mock_context, store, mock_provider):
        """Test a sync pass with an automatic conflict policy."""
        invoke({'action': 'start_sync'}, mock_context)
        mock_provider.import_events.return_value = [external_event('ext-1', 'B')]

        with patch.dict(os.environ, {'CONFLICT_POLICY': 'keep_external'}):
            status, body = invoke({
                'action': 'sync',
                'local_events': [
                    event_dict('local-1', 'A', source_module='service', link=import_link('ext-1')),
                    event_dict('done-1', 'Finished', source_module='task', status='completed',
                               start='2024-06-04T09:30:00', end='2024-06-04T10:30:00')
                ]
            }, mock_context)

        assert status == 200
        assert len(body['conflicts']) == 1
        assert body['auto_resolved'] == 1
        assert body['accepted_events'][0]['title'] == 'B'
        mock_provider.client_cls.assert_called_with(
            base_url='https://calendar.example.com/api',
            calendar_type='google',
            timeout=30,
            max_retries=3
        )

    def test_scheduled_sync_applies_priority_filter(self, mock_env, mock_context, store, mock_provider):
        """Test SYNC_PRIORITIES keeps other local events out of the pass."""
        invoke({'action': 'start_sync'}, mock_context)
        mock_provider.import_events.return_value = [
            external_event('ext-1', 'B'),
            external_event('ext-2', 'D', start='2024-06-05T09:00:00', end='2024-06-05T10:00:00'),
        ]
        local_events = [
            event_dict('local-1', 'A', source_module='service', priority='medium',
                       link=import_link('ext-1')),
            event_dict('local-2', 'C', source_module='service', priority='urgent',
                       start='2024-06-05T09:00:00', end='2024-06-05T10:00:00',
                       link=import_link('ext-2')),
        ]

        with patch.dict(os.environ, {'SYNC_PRIORITIES': 'high,urgent'}):
            status, body = invoke({'action': 'sync', 'local_events': local_events}, mock_context)

        assert status == 200
        assert [c['event_id'] for c in body['conflicts']] == ['local-2']

    def test_repeated_sync_does_not_duplicate_conflicts(self, mock_env, mock_context, store,
                                                        mock_provider):
        """Test scheduled passes over an unchanged mismatch report it once."""
        invoke({'action': 'start_sync'}, mock_context)
        mock_provider.import_events.return_value = [external_event('ext-1', 'B')]
        payload = {
            'action': 'sync',
            'local_events': [
                event_dict('local-1', 'A', source_module='service', link=import_link('ext-1'))
            ]
        }

        counts = [len(invoke(payload, mock_context)[1]['conflicts']) for _ in range(5)]
        status, body = invoke({'action': 'statistics'}, mock_context)

        assert counts == [1, 0, 0, 0, 0]
        assert len(body['pending_conflicts']) == 1

    def test_max_retries_below_one_rejected(self, mock_env, mock_context, store):
        """Test MAX_RETRIES=0 is a configuration error, not a silent no-op."""
        with patch.dict(os.environ, {'MAX_RETRIES': '0'}):
            status, body = invoke({'action': 'import_events'}, mock_context)

        assert status == 400
        assert body['error'] == 'max_retries must be at least 1, got 0'

    def test_export_partial_failure(self, mock_env, mock_context, store, mock_provider):
        """Test per-event export failures are reported as data."""
        def export(event):
            if event.id == 'svc-2':
                raise ProviderError('503 Service Unavailable')
            return f'g-{event.id}'

        mock_provider.export_event.side_effect = export

        status, body = invoke({
            'action': 'export_events',
            'local_events': [
                event_dict('svc-1', 'Oil change', source_module='service'),
                event_dict('svc-2', 'Brakes', source_module='service'),
                event_dict('svc-3', 'Tires', source_module='service', status='cancelled')
            ]
        }, mock_context)

        assert status == 200
        assert body['exported'] == ['svc-1']
        assert body['failures'] == [{'event_id': 'svc-2', 'error': '503 Service Unavailable'}]
        assert body['message'] == 'Exported events: 1 of 2 succeeded'

    def test_import_provider_failure(self, mock_env, mock_context, store, mock_provider):
        """Test a failed import returns 502 and is recorded."""
        mock_provider.import_events.side_effect = ProviderError('401 Unauthorized')

        status, body = invoke({'action': 'import_events'}, mock_context)

        assert status == 502
        assert body['message'] == 'External calendar request failed'
        assert 'Failed to import from google' in store.data['calendar_sync_status']

    def test_missing_provider_url(self, mock_context, store):
        """Test provider actions need PROVIDER_URL."""
        with patch.dict(os.environ, {'PROVIDER_URL': ''}):
            status, body = invoke({'action': 'import_events'}, mock_context)

        assert status == 400
        assert body['error'] == 'PROVIDER_URL is not configured'

    def test_statistics(self, mock_env, mock_context, store):
        """Test the statistics action."""
        invoke({'action': 'start_sync'}, mock_context)

        status, body = invoke({'action': 'statistics'}, mock_context)

        assert status == 200
        assert body['statistics']['total_syncs'] == 1
        assert body['statistics']['successful_syncs'] == 1
        assert body['history'][0]['action'] == 'sync_started'
        assert body['pending_conflicts'] == []

    def test_store_failure_reported(self, mock_env, mock_context):
        """Test a failing store does not fail the invocation."""
        failing = Mock()
        failing.load.return_value = None
        failing.save.side_effect = PersistenceFailure('throttled')

        with patch('lambda_function.DynamoDBSessionStore', return_value=failing):
            status, body = invoke({'action': 'start_sync'}, mock_context)

        assert status == 200
        assert body['persistence_error'] == 'throttled'

    def test_unexpected_error(self, mock_env, mock_context):
        """Test unexpected errors return 500."""
        with patch('lambda_function.DynamoDBSessionStore', side_effect=RuntimeError('boom')):
            status, body = invoke({'action': 'statistics'}, mock_context)

        assert status == 500
        assert body['message'] == 'Sync failed'
        assert body['error'] == 'boom'

    def test_logging_configuration(self, mock_env, mock_context, store):
        """Test that logging is configured from LOG_LEVEL."""
        with patch('lambda_function.setup_logging') as mock_setup_logging:
            lambda_handler({'action': 'statistics'}, mock_context)

        mock_setup_logging.assert_called_once_with('INFO')


class TestHandleSync:
    """Test cases for the scheduled sync handler."""

    def test_no_local_events_warns(self, mock_env, memory_store, mock_provider, caplog):
        """Test a pass without local events logs a warning and still imports."""
        session = SyncSession(memory_store)
        session.start_sync()
        mock_provider.import_events.return_value = [external_event('ext-1', 'B')]

        with caplog.at_level(logging.WARNING, logger='lambda_function'):
            body = handle_sync(session, Settings.from_env(), {})

        assert body['conflicts'] == []
        mock_provider.import_events.assert_called_once()
        assert 'no local events to reconcile' in caplog.text

    def test_local_events_do_not_warn(self, mock_env, memory_store, mock_provider, caplog):
        """Test no warning when the caller supplies local events."""
        session = SyncSession(memory_store)
        session.start_sync()
        mock_provider.import_events.return_value = []
        payload = {'local_events': [event_dict('local-1', 'A', source_module='service')]}

        with caplog.at_level(logging.WARNING, logger='lambda_function'):
            handle_sync(session, Settings.from_env(), payload)

        assert 'no local events to reconcile' not in caplog.text


class TestSettings:
    """Test cases for environment configuration."""

    def test_defaults(self):
        """Test defaults when nothing is set."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        assert settings.table_name == 'calendar-sync-state'
        assert settings.sync_interval_minutes == 15
        assert settings.conflict_policy == 'manual'
        assert settings.sync_modules == [
            SourceModule.SERVICE,
            SourceModule.DELIVERY,
            SourceModule.TASK,
            SourceModule.PDI,
        ]
        assert settings.exclude_completed is True
        assert settings.assigned_to is None
        assert settings.priorities == []
        assert settings.statuses == []

    def test_overrides(self):
        """Test values read from the environment."""
        with patch.dict(os.environ, {
            'SYNC_MODULES': 'pdi, delivery',
            'EXCLUDE_COMPLETED': 'false',
            'MAX_RETRIES': '5',
            'SYNC_ASSIGNED_TO': 'tech-1',
            'SYNC_PRIORITIES': 'high, urgent',
            'SYNC_STATUSES': 'scheduled,in_progress'
        }, clear=True):
            settings = Settings.from_env()

        assert settings.sync_modules == [SourceModule.PDI, SourceModule.DELIVERY]
        assert settings.exclude_completed is False
        assert settings.max_retries == 5
        assert settings.assigned_to == 'tech-1'
        assert settings.priorities == ['high', 'urgent']
        assert settings.statuses == ['scheduled', 'in_progress']


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default level."""
        setup_logging()

        root_logger = logging.getLogger()
        assert root_logger.level == logging.INFO
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JsonFormatter)

    def test_setup_logging_custom_level(self):
        """Test logging setup with custom level."""
        setup_logging('DEBUG')

        assert logging.getLogger().level == logging.DEBUG

    def test_json_formatter(self):
        """Test records are rendered as JSON."""
        record = logging.LogRecord('sync', logging.WARNING, __file__, 1, 'Sync %s', ('skipped',), None)

        data = json.loads(JsonFormatter().format(record))

        assert data['level'] == 'WARNING'
        assert data['message'] == 'Sync skipped'
        assert data['logger'] == 'sync'
