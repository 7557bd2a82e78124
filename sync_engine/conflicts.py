"""Conflict detection and resolution between local and external events."""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from sync_engine.errors import ValidationError
from sync_engine.models import (
    ConflictStatus,
    ConflictType,
    Event,
    EventConflict,
    ResolutionOutcome,
    ResolutionStrategy,
    SyncAction,
    SyncHistoryEntry,
    new_id,
)

logger = logging.getLogger(__name__)

MATCH_TOLERANCE = timedelta(seconds=60)

# Fixed check order for conflict_fields
COMPARED_FIELDS = ('title', 'start', 'end', 'description', 'location')
TIME_FIELDS = ('start', 'end')

# Fields merge takes from the external version; everything else stays local
MERGE_EXTERNAL_FIELDS = ('description', 'location')


def events_match(local: Event, external: Event) -> bool:
    """
    Check whether two events refer to the same logical event.

    Args:
        local: Locally-owned event
        external: Externally-sourced event

    Returns:
        True if they share an external id, or have the same title and
        start less than a minute apart
    """
    if local.external_event_id and local.external_event_id == external.external_event_id:
        return True
    return (
        local.title == external.title and
        abs(local.start - external.start) < MATCH_TOLERANCE
    )


def find_external_match(local: Event, external_events: List[Event]) -> Optional[Event]:
    """Return the first external event matching the local one."""
    for candidate in external_events:
        if events_match(local, candidate):
            return candidate
    return None


def differing_fields(local: Event, external: Event) -> List[str]:
    """
    List the compared fields whose values disagree.

    Time fields only count as different when more than a minute apart.
    """
    fields = []
    for name in COMPARED_FIELDS:
        local_value = getattr(local, name)
        external_value = getattr(external, name)
        if name in TIME_FIELDS:
            if abs(local_value - external_value) > MATCH_TOLERANCE:
                fields.append(name)
        elif local_value != external_value:
            fields.append(name)
    return fields


def detect_conflicts(
    local_events: List[Event],
    external_events: List[Event],
    detected_at: Optional[datetime] = None
) -> List[EventConflict]:
    """
    Pair local events with external counterparts and report field mismatches.

    Args:
        local_events: Events owned by the local modules
        external_events: Events fetched from the external calendar
        detected_at: Detection timestamp (defaults to now)

    Returns:
        One pending data_mismatch conflict per matched pair that differs
    """
    detected_at = detected_at or datetime.now()
    conflicts = []

    for local in local_events:
        external = find_external_match(local, external_events)
        if external is None:
            continue

        fields = differing_fields(local, external)
        if not fields:
            continue

        conflicts.append(EventConflict(
            id=new_id(),
            event_id=local.id,
            conflict_type=ConflictType.DATA_MISMATCH,
            local_event=local,
            external_event=external,
            conflict_fields=fields,
            detected_at=detected_at
        ))

    logger.info(
        f"Detected {len(conflicts)} conflicts between {len(local_events)} local "
        f"and {len(external_events)} external events"
    )
    return conflicts


def reconcile_events(
    local_events: List[Event],
    external_events: List[Event],
    source: Optional[str] = None,
    detected_at: Optional[datetime] = None
) -> List[EventConflict]:
    """
    Full reconciliation pass over a local collection and an external feed.

    On top of pairwise field mismatches this reports:
      - time_overlap: an external event with no local counterpart that
        overlaps a local event
      - deletion_conflict: a local event linked to the feed whose external
        id no longer appears in it

    Args:
        local_events: Events owned by the local modules
        external_events: Events fetched from the external calendar
        source: Only local events imported from this source are checked for
            deletion (None checks every linked event)
        detected_at: Detection timestamp (defaults to now)

    Returns:
        Conflicts in order: data mismatches, overlaps, deletions
    """
    detected_at = detected_at or datetime.now()
    conflicts = detect_conflicts(local_events, external_events, detected_at)

    for external in external_events:
        if any(events_match(local, external) for local in local_events):
            continue
        for local in local_events:
            if external.start < local.end and local.start < external.end:
                conflicts.append(EventConflict(
                    id=new_id(),
                    event_id=local.id,
                    conflict_type=ConflictType.TIME_OVERLAP,
                    local_event=local,
                    external_event=external,
                    conflict_fields=list(TIME_FIELDS),
                    detected_at=detected_at
                ))
                break

    feed_ids = {
        event.external_event_id for event in external_events
        if event.external_event_id
    }
    for local in local_events:
        if not local.external_event_id or local.external_event_id in feed_ids:
            continue
        if source is not None and local.link.source != source:
            continue
        conflicts.append(EventConflict(
            id=new_id(),
            event_id=local.id,
            conflict_type=ConflictType.DELETION_CONFLICT,
            local_event=local,
            external_event=None,
            conflict_fields=[],
            detected_at=detected_at
        ))

    return conflicts


def conflict_key(conflict: EventConflict) -> Tuple[str, ConflictType, Optional[str]]:
    """Identity of a conflict: local event, conflict type and external counterpart."""
    external = conflict.external_event
    external_id = (external.external_event_id or external.id) if external else None
    return (conflict.event_id, conflict.conflict_type, external_id)


def drop_known_conflicts(
    detected: List[EventConflict],
    existing: List[EventConflict]
) -> List[EventConflict]:
    """
    Filter out detections that repeat a pending conflict.

    A detection with the same local event, conflict type and external
    counterpart as a pending conflict is dropped. Resolved conflicts do not
    suppress a new detection.

    Args:
        detected: Conflicts from the latest detection pass
        existing: Conflicts already held by the session

    Returns:
        Detected conflicts with no pending counterpart, first occurrence kept
    """
    seen = {conflict_key(c) for c in existing if c.is_pending}
    fresh = []
    for conflict in detected:
        key = conflict_key(conflict)
        if key in seen:
            continue
        seen.add(key)
        fresh.append(conflict)

    if len(fresh) < len(detected):
        logger.info(f"Skipped {len(detected) - len(fresh)} already pending conflicts")
    return fresh


def parse_strategy(strategy: Union[str, ResolutionStrategy]) -> ResolutionStrategy:
    """
    Convert a caller-supplied strategy into a ResolutionStrategy.

    Raises:
        ValidationError: If the strategy is not recognised
    """
    if isinstance(strategy, ResolutionStrategy):
        return strategy
    try:
        return ResolutionStrategy(strategy)
    except ValueError:
        raise ValidationError(f"Unknown resolution strategy: {strategy}")


def merge_events(conflict: EventConflict) -> Event:
    """Local event with external description/location where they differ."""
    if conflict.external_event is None:
        raise ValidationError(
            f"Cannot merge conflict {conflict.id}: external version was deleted"
        )
    changes = {
        name: getattr(conflict.external_event, name)
        for name in conflict.conflict_fields
        if name in MERGE_EXTERNAL_FIELDS
    }
    return replace(conflict.local_event, **changes)


def resolve_conflict(
    conflict: EventConflict,
    strategy: Union[str, ResolutionStrategy],
    resolved_at: Optional[datetime] = None
) -> ResolutionOutcome:
    """
    Apply a resolution strategy to a pending conflict.

    The conflict's status becomes resolved; local and external versions are
    kept as they were for audit.

    Args:
        conflict: Pending conflict
        strategy: keep_local, keep_external, merge or ignore
        resolved_at: Resolution timestamp (defaults to now)

    Returns:
        ResolutionOutcome with the accepted event (None for ignore, or for
        keep_external on a deletion) and the history entry to record

    Raises:
        ValidationError: Unknown strategy, conflict not pending, or merge
            of a deletion conflict
    """
    strategy = parse_strategy(strategy)
    if not conflict.is_pending:
        raise ValidationError(
            f"Conflict {conflict.id} is already {conflict.status.value}"
        )

    if strategy == ResolutionStrategy.KEEP_LOCAL:
        accepted = conflict.local_event
    elif strategy == ResolutionStrategy.KEEP_EXTERNAL:
        accepted = conflict.external_event
    elif strategy == ResolutionStrategy.MERGE:
        accepted = merge_events(conflict)
    else:
        accepted = None

    resolved_at = resolved_at or datetime.now()
    conflict.status = ConflictStatus.RESOLVED
    conflict.resolution = strategy
    conflict.resolved_at = resolved_at

    entry = SyncHistoryEntry(
        id=new_id(),
        timestamp=resolved_at,
        action=SyncAction.CONFLICT_RESOLVED,
        event_id=conflict.event_id,
        details=f"Conflict resolved using {strategy.value.replace('_', ' ')} strategy",
        success=True
    )

    logger.info(
        f"Resolved {conflict.conflict_type.value} conflict {conflict.id} "
        f"for event '{conflict.event_id}' with {strategy.value}"
    )
    return ResolutionOutcome(
        conflict=conflict,
        accepted_event=accepted,
        history_entry=entry
    )
