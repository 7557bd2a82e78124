"""HTTP client for an external calendar provider (Google/Outlook-style)."""
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from sync_engine.errors import ProviderError, ValidationError
from sync_engine.models import Event, ImportLink, SourceModule
from sync_engine.serialization import parse_timestamp

logger = logging.getLogger(__name__)


class ExternalCalendarClient:
    """Client for exporting events to and importing events from a provider."""

    def __init__(
        self,
        base_url: str,
        calendar_type: str = 'google',
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1
    ):
        """
        Initialize the provider client.

        Args:
            base_url: Root URL of the provider's calendar API
            calendar_type: Provider name recorded on imported events
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per request before giving up (default: 3)
            base_delay: First backoff delay in seconds, doubled per retry

        Raises:
            ValidationError: If max_retries is below 1
        """
        if max_retries < 1:
            raise ValidationError(f"max_retries must be at least 1, got {max_retries}")

        self.base_url = base_url.rstrip('/')
        self.calendar_type = calendar_type
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    def export_event(self, event: Event) -> str:
        """
        Create or update an event in the external calendar.

        Args:
            event: Local event to export

        Returns:
            External event id assigned by the provider

        Raises:
            ProviderError: If every attempt fails or the response has no id
        """
        logger.info(f"Exporting event '{event.id}' to {self.calendar_type}")
        response = self._request('POST', '/events', json=self._event_to_payload(event))

        try:
            external_id = response.json()['id']
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Provider returned no event id for '{event.id}': {e}")

        logger.info(f"Exported event '{event.id}' as {external_id}")
        return str(external_id)

    def import_events(self, since: Optional[datetime] = None) -> List[Event]:
        """
        Fetch events from the external calendar.

        Args:
            since: Only fetch events changed after this time (None for all)

        Returns:
            List of Event objects linked to their external ids
        """
        params = {'since': since.isoformat()} if since else None
        logger.info(f"Importing events from {self.calendar_type}")
        response = self._request('GET', '/events', params=params)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned invalid JSON: {e}")

        items = payload.get('items', []) if isinstance(payload, dict) else payload
        imported_at = datetime.now()
        events = []

        for item in items:
            try:
                events.append(self._item_to_event(item, imported_at))
            except Exception as e:
                logger.warning(f"Failed to parse external event: {e}")
                continue

        logger.info(f"Successfully imported {len(events)} events")
        return events

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send a request with retry logic and exponential backoff.

        Raises:
            ProviderError: If all retry attempts fail
        """
        url = f"{self.base_url}{path}"

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"{method} {url} (attempt {attempt + 1}/{self.max_retries})")
                response = requests.request(method, url, timeout=self.timeout, **kwargs)
                response.raise_for_status()
                return response

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise ProviderError(
                        f"{method} {url} failed after {self.max_retries} attempts: {e}"
                    ) from e

    def _event_to_payload(self, event: Event) -> Dict[str, Any]:
        payload = {
            'title': event.title,
            'start': event.start.isoformat(),
            'end': event.end.isoformat(),
            'description': event.description,
            'location': event.location,
            'source_id': event.id,
        }
        if event.external_event_id:
            payload['id'] = event.external_event_id
        return payload

    def _item_to_event(self, item: Dict[str, Any], imported_at: datetime) -> Event:
        """
        Convert a provider item into an Event.

        Args:
            item: Event dictionary from the provider
            imported_at: Time of this import

        Returns:
            Event owned by the external-import module
        """
        external_id = str(item['id'])
        return Event(
            id=f"imported-{external_id}",
            title=item.get('title') or '',
            start=parse_timestamp(item['start']),
            end=parse_timestamp(item['end']),
            source_module=SourceModule.EXTERNAL_IMPORT,
            source_id=external_id,
            description=item.get('description'),
            location=item.get('location'),
            link=ImportLink(
                source=self.calendar_type,
                external_event_id=external_id,
                imported_at=imported_at
            )
        )
