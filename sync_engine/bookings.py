"""Resource bookings expressed as calendar events."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sync_engine.errors import ValidationError
from sync_engine.models import BookingLink, Event, SourceModule, new_id


@dataclass
class ResourceBookingRequest:
    """Booking of one or more resources (rooms, vehicles, equipment, people)."""
    title: str
    start: datetime
    end: datetime
    resource_ids: List[str]
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = field(default_factory=list)
    notes: str = ""


def validate_booking(request: ResourceBookingRequest) -> None:
    """
    Validate a booking request.

    Raises:
        ValidationError: Missing title, bad time range or no resources
    """
    if not request.title or not request.title.strip():
        raise ValidationError("Please fill in all required fields")
    if request.start >= request.end:
        raise ValidationError("End time must be after start time")
    if not request.resource_ids:
        raise ValidationError("Please select at least one resource")


def build_booking_event(request: ResourceBookingRequest, event_id: Optional[str] = None) -> Event:
    """Create the calendar event that represents a validated booking."""
    booking_id = event_id or new_id()
    return Event(
        id=booking_id,
        title=request.title,
        start=request.start,
        end=request.end,
        source_module=SourceModule.RESOURCE_BOOKING,
        source_id=booking_id,
        description=request.description,
        location=request.location,
        link=BookingLink(
            resource_ids=tuple(request.resource_ids),
            attendees=tuple(request.attendees),
            notes=request.notes
        )
    )
