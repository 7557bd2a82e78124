"""Recurrence validation and expansion into concrete event instances."""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from sync_engine.errors import ValidationError
from sync_engine.models import (
    EndType,
    Event,
    RecurrenceLink,
    RecurrencePattern,
    RecurrenceType,
)

logger = logging.getLogger(__name__)

# Cap for patterns that never end (one year of weekly instances)
NEVER_INSTANCE_CAP = 52


def validate_pattern(pattern: RecurrencePattern) -> None:
    """
    Reject malformed recurrence patterns before they reach the expander.

    Args:
        pattern: Pattern supplied by the caller

    Raises:
        ValidationError: If the pattern violates an invariant
    """
    if not isinstance(pattern.type, RecurrenceType):
        raise ValidationError(f"Unknown recurrence type: {pattern.type}")

    if not isinstance(pattern.interval, int) or pattern.interval < 1:
        raise ValidationError(
            f"Recurrence interval must be a positive integer, got {pattern.interval}"
        )

    if pattern.end_type == EndType.AFTER:
        if not pattern.end_after or pattern.end_after < 1:
            raise ValidationError("Please specify how many occurrences")
    elif pattern.end_type == EndType.ON:
        if pattern.end_on is None:
            raise ValidationError("Please specify end date")
    elif pattern.end_type != EndType.NEVER:
        raise ValidationError(f"Unknown end type: {pattern.end_type}")

    for day in pattern.days_of_week or []:
        if not isinstance(day, int) or not 0 <= day <= 6:
            raise ValidationError(f"Invalid day of week: {day}")


def weekday_index(moment: datetime) -> int:
    """Weekday with 0 = Sunday .. 6 = Saturday."""
    return moment.isoweekday() % 7


def expand_recurrence(base: Event, pattern: RecurrencePattern) -> List[Event]:
    """
    Generate the instances of a recurring event.

    The base event itself is not included; instances start strictly after
    it and keep its duration. Assumes the pattern has been validated.

    Args:
        base: First occurrence of the series
        pattern: Validated recurrence pattern

    Returns:
        Instances ordered by start time
    """
    duration = base.end - base.start
    exceptions = set(pattern.exceptions or [])

    if pattern.end_type == EndType.AFTER:
        max_instances = pattern.end_after
    elif pattern.end_type == EndType.NEVER:
        max_instances = NEVER_INSTANCE_CAP
    else:
        max_instances = None

    instances = []
    cursor = base.start

    while max_instances is None or len(instances) < max_instances:
        cursor = _next_occurrence(cursor, pattern)
        if cursor is None:
            logger.warning(
                f"No matching weekday within {7 * pattern.interval} days for "
                f"event '{base.id}', stopping expansion"
            )
            break

        if pattern.end_type == EndType.ON and cursor.date() > pattern.end_on:
            break

        if cursor.date() in exceptions:
            logger.debug(f"Skipping exception date {cursor.date()} for '{base.id}'")
            continue

        number = len(instances) + 1
        instances.append(replace(
            base,
            id=f"{base.id}-{number}",
            start=cursor,
            end=cursor + duration,
            link=RecurrenceLink(
                parent_event_id=base.id,
                instance_number=number,
                pattern=pattern
            )
        ))

    logger.info(
        f"Expanded {pattern.type.value} recurrence of '{base.id}' "
        f"into {len(instances)} instances"
    )
    return instances


def _next_occurrence(cursor: datetime, pattern: RecurrencePattern) -> Optional[datetime]:
    if pattern.type == RecurrenceType.DAILY:
        return cursor + timedelta(days=pattern.interval)

    if pattern.type == RecurrenceType.WEEKLY:
        if not pattern.days_of_week:
            return cursor + timedelta(days=7 * pattern.interval)
        for offset in range(1, 7 * pattern.interval + 1):
            candidate = cursor + timedelta(days=offset)
            if weekday_index(candidate) in pattern.days_of_week:
                return candidate
        return None

    if pattern.type == RecurrenceType.MONTHLY:
        return cursor + relativedelta(months=pattern.interval)

    return cursor + relativedelta(years=pattern.interval)
