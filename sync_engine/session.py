"""Sync session state: activation, conflicts and operation history."""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import sync_engine.conflicts as conflict_rules
from sync_engine.bookings import ResourceBookingRequest, build_booking_event, validate_booking
from sync_engine.errors import (
    BatchOutcome,
    ItemFailure,
    NotFoundError,
    PersistenceFailure,
    ProviderError,
    SyncEngineError,
)
from sync_engine.models import (
    Event,
    EventConflict,
    RecurrenceLink,
    RecurrencePattern,
    ResolutionOutcome,
    SyncAction,
    SyncHistoryEntry,
    new_id,
)
from sync_engine.recurrence import expand_recurrence, validate_pattern
from sync_engine.serialization import session_state_from_dict, session_state_to_dict
from sync_engine.statistics import SyncStatistics, compute_statistics

logger = logging.getLogger(__name__)


class SyncSession:
    """
    Bookkeeping for calendar sync activity.

    Owns the activation flag, sync timestamps, detected conflicts and a
    bounded newest-first history. Every state change is written to the
    persistence store; a failed write is logged and leaves the in-memory
    state as it is.

    The store must provide load(key, default) and save(key, value). The
    provider passed to export/import calls must provide export_event(event)
    and import_events(since), raising ProviderError on failure.
    """

    SESSION_KEY = 'calendar_sync_status'
    MAX_HISTORY = 50
    DEFAULT_SYNC_INTERVAL = timedelta(minutes=15)

    def __init__(
        self,
        store,
        sync_interval: timedelta = DEFAULT_SYNC_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
        session_key: str = SESSION_KEY
    ):
        """
        Initialize a fresh, inactive session.

        Args:
            store: Persistence collaborator
            sync_interval: Delay between scheduled sync passes
            clock: Source of the current local time
            session_key: Key the session is stored under
        """
        self.store = store
        self.sync_interval = sync_interval
        self.clock = clock
        self.session_key = session_key

        now = clock()
        self.is_active = False
        self.last_sync: Optional[datetime] = now
        self.next_sync: Optional[datetime] = now + sync_interval
        self.conflicts: List[EventConflict] = []
        self.history: List[SyncHistoryEntry] = []
        self.persistence_error: Optional[str] = None

    @classmethod
    def load(
        cls,
        store,
        sync_interval: timedelta = DEFAULT_SYNC_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
        session_key: str = SESSION_KEY
    ) -> 'SyncSession':
        """
        Create a session rehydrated from the persistence store.

        A missing or unreadable record yields a fresh session.

        Args:
            store: Persistence collaborator
            sync_interval: Delay between scheduled sync passes
            clock: Source of the current local time
            session_key: Key the session is stored under

        Returns:
            SyncSession with persisted state applied
        """
        session = cls(store, sync_interval=sync_interval, clock=clock, session_key=session_key)

        try:
            saved = store.load(session_key, None)
        except PersistenceFailure as e:
            logger.error(f"Failed to load sync session, starting fresh: {e}")
            session.persistence_error = str(e)
            return session

        if not saved:
            logger.info("No persisted sync session found, starting fresh")
            return session

        state = session_state_from_dict(saved)
        session.is_active = state['is_active']
        session.last_sync = state['last_sync'] or session.last_sync
        session.next_sync = state['next_sync'] or session.next_sync
        session.conflicts = state['conflicts']
        session.history = state['history'][:cls.MAX_HISTORY]

        logger.info(
            f"Loaded sync session: active={session.is_active}, "
            f"{len(session.conflicts)} conflicts, {len(session.history)} history entries"
        )
        return session

    def shutdown(self) -> None:
        """Write the final session state."""
        self._persist()
        logger.info("Sync session shut down")

    # Lifecycle

    def start_sync(self) -> Optional[SyncHistoryEntry]:
        """
        Activate two-way sync and schedule the next pass.

        Returns:
            The sync_started history entry, or None if already active
        """
        if self.is_active:
            logger.info("Two-way sync already active")
            return None

        now = self.clock()
        self.is_active = True
        self.last_sync = now
        self.next_sync = now + self.sync_interval
        entry = self._record(SyncAction.SYNC_STARTED, 'Two-way synchronization started')
        logger.info(f"Two-way sync started, next sync at {self.next_sync.isoformat()}")
        return entry

    def stop_sync(self) -> Optional[SyncHistoryEntry]:
        """
        Deactivate two-way sync.

        Returns:
            The sync_completed history entry, or None if not active
        """
        if not self.is_active:
            logger.info("Two-way sync is not active")
            return None

        self.is_active = False
        entry = self._record(SyncAction.SYNC_COMPLETED, 'Two-way synchronization stopped')
        logger.info("Two-way sync stopped")
        return entry

    # Export / import

    def record_export(
        self,
        event: Event,
        target: str,
        success: bool = True,
        error: Optional[str] = None
    ) -> SyncHistoryEntry:
        """Record the outcome of exporting one event to an external calendar."""
        if success:
            self.last_sync = self.clock()
            details = f'Exported "{event.title}" to {target}'
        else:
            details = f'Failed to export "{event.title}" to {target}'
        return self._record(
            SyncAction.EXPORT, details, success=success, event_id=event.id, error=error
        )

    def record_import(self, events: List[Event], source: str) -> List[Event]:
        """
        Record one import batch.

        The session does not own the local event collection; the caller
        merges the returned batch into its own store.

        Args:
            events: Events received from the external calendar
            source: Name of the external calendar

        Returns:
            The same batch, unchanged
        """
        self.last_sync = self.clock()
        self._record(SyncAction.IMPORT, f"Imported {len(events)} events from {source}")
        return events

    def export_event(self, event: Event, provider, target: str) -> str:
        """
        Export one event and record the outcome.

        Returns:
            External id assigned by the provider

        Raises:
            ProviderError: If the export failed (the failure is recorded first)
        """
        try:
            external_id = provider.export_event(event)
        except ProviderError as e:
            logger.error(f"Export of '{event.id}' to {target} failed: {e}")
            self.record_export(event, target, success=False, error=str(e))
            raise
        self.record_export(event, target)
        return external_id

    def export_events(self, events: List[Event], provider, target: str) -> BatchOutcome:
        """
        Export several events, recording each outcome separately.

        Failures do not stop the batch and nothing is rolled back.

        Returns:
            BatchOutcome with exported event ids and per-item failures
        """
        outcome = BatchOutcome()
        for event in events:
            try:
                provider.export_event(event)
            except ProviderError as e:
                logger.warning(f"Export of '{event.id}' to {target} failed: {e}")
                self.record_export(event, target, success=False, error=str(e))
                outcome.failures.append(ItemFailure(item_id=event.id, error=str(e)))
                continue
            self.record_export(event, target)
            outcome.succeeded.append(event.id)

        logger.info(f"Export to {target}: {outcome.summary()}")
        return outcome

    def import_events(self, provider, source: str, since: Optional[datetime] = None) -> List[Event]:
        """
        Fetch events from an external calendar and record the batch.

        Raises:
            ProviderError: If the import failed (the failure is recorded first)
        """
        try:
            events = provider.import_events(since)
        except ProviderError as e:
            logger.error(f"Import from {source} failed: {e}")
            self._record(
                SyncAction.IMPORT,
                f"Failed to import from {source}",
                success=False,
                error=str(e)
            )
            raise
        return self.record_import(events, source)

    # Conflicts

    def merge_conflicts(self, new_conflicts: List[EventConflict]) -> List[EventConflict]:
        """
        Append newly detected conflicts to the session.

        Detections that repeat a pending conflict are skipped.

        Returns:
            The conflicts actually added
        """
        added = conflict_rules.drop_known_conflicts(new_conflicts, self.conflicts)
        if not added:
            return added
        self.conflicts.extend(added)
        self._persist()
        logger.info(f"Added {len(added)} conflicts ({len(self.conflicts)} total)")
        return added

    def detect_conflicts(self, local_events: List[Event], external_events: List[Event]) -> List[EventConflict]:
        """Detect field mismatches and add the new ones to the session."""
        detected = conflict_rules.detect_conflicts(
            local_events, external_events, detected_at=self.clock()
        )
        return self.merge_conflicts(detected)

    def run_sync_pass(self, local_events: List[Event], provider, source: str) -> List[EventConflict]:
        """
        Run one sync cycle against an external calendar.

        Imports the full external feed, reconciles it with the local events,
        stores the resulting conflicts and schedules the next pass.

        Args:
            local_events: Events owned by the local modules
            provider: External calendar provider
            source: Name of the external calendar

        Returns:
            Conflicts added by this pass; repeats of pending conflicts are
            not added again
        """
        external_events = self.import_events(provider, source)
        detected = conflict_rules.reconcile_events(
            local_events, external_events, source=source, detected_at=self.clock()
        )
        self.next_sync = self.clock() + self.sync_interval
        added = self.merge_conflicts(detected)
        self._persist()
        return added

    def get_conflict(self, conflict_id: str) -> EventConflict:
        for conflict in self.conflicts:
            if conflict.id == conflict_id:
                return conflict
        raise NotFoundError(conflict_id)

    def pending_conflicts(self) -> List[EventConflict]:
        return [c for c in self.conflicts if c.is_pending]

    def resolve_conflict(self, conflict_id: str, strategy) -> ResolutionOutcome:
        """
        Resolve one conflict by id.

        Args:
            conflict_id: Id of a conflict held by the session
            strategy: keep_local, keep_external, merge or ignore

        Returns:
            ResolutionOutcome whose accepted event the caller applies to
            its own store

        Raises:
            NotFoundError: If no conflict has this id
            ValidationError: If the strategy or conflict state is invalid
        """
        conflict = self.get_conflict(conflict_id)
        outcome = conflict_rules.resolve_conflict(conflict, strategy, resolved_at=self.clock())
        self._append_history(outcome.history_entry)
        self._persist()
        return outcome

    def resolve_all_conflicts(self, strategy) -> BatchOutcome:
        """
        Apply one strategy to every pending conflict.

        Each conflict is handled on its own: failures are recorded as failed
        history entries and do not undo earlier resolutions.

        Returns:
            BatchOutcome with ResolutionOutcomes and per-conflict failures

        Raises:
            ValidationError: If the strategy is not recognised
        """
        strategy = conflict_rules.parse_strategy(strategy)
        outcome = BatchOutcome()

        for conflict in self.pending_conflicts():
            try:
                resolved = conflict_rules.resolve_conflict(
                    conflict, strategy, resolved_at=self.clock()
                )
            except SyncEngineError as e:
                logger.warning(f"Failed to resolve conflict {conflict.id}: {e}")
                self._append_history(SyncHistoryEntry(
                    id=new_id(),
                    timestamp=self.clock(),
                    action=SyncAction.CONFLICT_RESOLVED,
                    event_id=conflict.event_id,
                    details=f"Failed to resolve conflict: {e}",
                    success=False,
                    error=str(e)
                ))
                outcome.failures.append(ItemFailure(item_id=conflict.id, error=str(e)))
                continue
            self._append_history(resolved.history_entry)
            outcome.succeeded.append(resolved)

        self._persist()
        logger.info(f"Bulk resolution with {strategy.value}: {outcome.summary()}")
        return outcome

    # Event creation

    def create_recurring_event(self, base: Event, pattern: RecurrencePattern) -> List[Event]:
        """
        Validate a recurrence, expand it and record the export.

        Args:
            base: First occurrence of the series
            pattern: Recurrence pattern supplied by the caller

        Returns:
            The base event followed by its generated instances

        Raises:
            ValidationError: If the pattern is malformed
        """
        validate_pattern(pattern)
        base = replace(
            base,
            link=RecurrenceLink(parent_event_id=None, instance_number=None, pattern=pattern)
        )
        instances = expand_recurrence(base, pattern)
        self._record(
            SyncAction.EXPORT,
            f"Created recurring {pattern.type.value} event with {len(instances)} instances",
            event_id=base.id
        )
        return [base] + instances

    def create_resource_booking(self, request: ResourceBookingRequest) -> Event:
        """
        Validate a booking, build its event and record the export.

        Raises:
            ValidationError: If the booking request is malformed
        """
        validate_booking(request)
        event = build_booking_event(request)
        self._record(
            SyncAction.EXPORT,
            f"Created resource booking for {len(request.resource_ids)} resource(s)",
            event_id=event.id
        )
        return event

    def get_statistics(self) -> SyncStatistics:
        return compute_statistics(
            history=self.history,
            conflicts=self.conflicts,
            last_sync=self.last_sync,
            next_sync=self.next_sync,
            is_active=self.is_active,
            now=self.clock()
        )

    # Internals

    def _record(
        self,
        action: SyncAction,
        details: str,
        success: bool = True,
        event_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> SyncHistoryEntry:
        entry = SyncHistoryEntry(
            id=new_id(),
            timestamp=self.clock(),
            action=action,
            details=details,
            success=success,
            event_id=event_id,
            error=error
        )
        self._append_history(entry)
        self._persist()
        return entry

    def _append_history(self, entry: SyncHistoryEntry) -> None:
        # Newest first; the oldest entries fall off the end
        self.history.insert(0, entry)
        del self.history[self.MAX_HISTORY:]

    def _persist(self) -> None:
        state = session_state_to_dict(
            is_active=self.is_active,
            last_sync=self.last_sync,
            next_sync=self.next_sync,
            conflicts=self.conflicts,
            history=self.history
        )
        try:
            self.store.save(self.session_key, state)
            self.persistence_error = None
        except PersistenceFailure as e:
            logger.error(f"Failed to persist sync session: {e}")
            self.persistence_error = str(e)
