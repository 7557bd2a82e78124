"""Selection of local events eligible for external sync."""
import logging
from typing import Iterable, List, Optional

from sync_engine.models import Event, SourceModule

logger = logging.getLogger(__name__)

DEFAULT_SYNC_MODULES = (
    SourceModule.SERVICE,
    SourceModule.DELIVERY,
    SourceModule.TASK,
    SourceModule.PDI,
)

# Not governed by the per-module toggles
ALWAYS_SYNCED = (SourceModule.EXTERNAL_IMPORT, SourceModule.RESOURCE_BOOKING)


def parse_modules(value: str) -> List[SourceModule]:
    """
    Parse a comma-separated module list such as "service,task".

    Unknown names are logged and ignored.
    """
    modules = []
    for name in value.split(','):
        name = name.strip()
        if not name:
            continue
        try:
            modules.append(SourceModule(name))
        except ValueError:
            logger.warning(f"Ignoring unknown sync module: {name}")
    return modules


def parse_list(value: str) -> List[str]:
    """Split a comma-separated setting such as "high,urgent" into values."""
    return [item.strip() for item in value.split(',') if item.strip()]


def select_events_for_sync(
    events: List[Event],
    enabled_modules: Iterable[SourceModule] = DEFAULT_SYNC_MODULES,
    exclude_completed: bool = True,
    assigned_to: Optional[str] = None,
    priorities: Optional[Iterable[str]] = None,
    statuses: Optional[Iterable[str]] = None
) -> List[Event]:
    """
    Filter local events down to the ones that should be synced.

    Module toggles, assignee, priority and status filters apply to module
    events only; external imports and bookings always pass them. Completed
    events are dropped from every module when exclude_completed is set.

    Args:
        events: Local events from the module adapters
        enabled_modules: Modules whose events take part in sync
        exclude_completed: Drop events whose status is terminal
        assigned_to: Keep only events assigned to this user (None for all)
        priorities: Keep only these priorities (empty or None for all)
        statuses: Keep only these statuses (empty or None for all)

    Returns:
        Events to sync, in their original order
    """
    enabled = set(enabled_modules)
    priorities = set(priorities or ())
    statuses = set(statuses or ())

    def wanted(event: Event) -> bool:
        if exclude_completed and event.is_terminal:
            return False
        if event.source_module in ALWAYS_SYNCED:
            return True
        if event.source_module not in enabled:
            return False
        if assigned_to and event.assigned_to != assigned_to:
            return False
        if priorities and event.priority not in priorities:
            return False
        return not statuses or event.status in statuses

    selected = [event for event in events if wanted(event)]
    logger.debug(f"Selected {len(selected)} of {len(events)} events for sync")
    return selected
