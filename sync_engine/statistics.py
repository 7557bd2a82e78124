"""Derived sync statistics."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sync_engine.models import ConflictStatus, EventConflict, SyncHistoryEntry


@dataclass
class SyncStatistics:
    """Read-only summary computed from session state."""
    total_syncs: int
    syncs_last_24_hours: int
    successful_syncs: int
    failed_syncs: int
    pending_conflicts: int
    resolved_conflicts: int
    last_sync_time: Optional[datetime]
    next_sync_time: Optional[datetime]
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_syncs': self.total_syncs,
            'syncs_last_24_hours': self.syncs_last_24_hours,
            'successful_syncs': self.successful_syncs,
            'failed_syncs': self.failed_syncs,
            'pending_conflicts': self.pending_conflicts,
            'resolved_conflicts': self.resolved_conflicts,
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
            'next_sync_time': self.next_sync_time.isoformat() if self.next_sync_time else None,
            'is_active': self.is_active,
        }


def compute_statistics(
    history: List[SyncHistoryEntry],
    conflicts: List[EventConflict],
    last_sync: Optional[datetime],
    next_sync: Optional[datetime],
    is_active: bool,
    now: datetime
) -> SyncStatistics:
    """
    Compute statistics from session state.

    Args:
        history: Session history, newest first
        conflicts: All conflicts held by the session
        last_sync: Time of the last sync activity
        next_sync: Scheduled time of the next sync
        is_active: Whether two-way sync is active
        now: Reference time for the 24 hour window

    Returns:
        SyncStatistics snapshot
    """
    window_start = now - timedelta(hours=24)
    successful = sum(1 for entry in history if entry.success)

    return SyncStatistics(
        total_syncs=len(history),
        syncs_last_24_hours=sum(1 for entry in history if entry.timestamp > window_start),
        successful_syncs=successful,
        failed_syncs=len(history) - successful,
        pending_conflicts=sum(1 for c in conflicts if c.status == ConflictStatus.PENDING),
        resolved_conflicts=sum(1 for c in conflicts if c.status == ConflictStatus.RESOLVED),
        last_sync_time=last_sync,
        next_sync_time=next_sync,
        is_active=is_active
    )
