"""Google Calendar connector: pages of events starting in a time window."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from dateutil import parser as date_parser
from googleapiclient.discovery import build

from schemas.events import EventPage, ProviderEvent
from tools.connectors import call_provider, default_retry_policy, load_credentials, page_size
from tools.retry import RetryPolicy

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]


def event_start(event: Dict[str, Any]) -> Optional[datetime]:
    """Start of a calendar event; all-day events start at midnight UTC."""
    start = event.get("start", {}) or {}
    raw = start.get("dateTime") or start.get("date")
    if not raw:
        return None
    parsed = date_parser.isoparse(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calendar_event_to_event(event: Dict[str, Any], calendar_id: str) -> ProviderEvent:
    occurred_at = event_start(event) or datetime.now(timezone.utc)
    return ProviderEvent(
        source_id=event.get("id"),
        occurred_at=occurred_at,
        payload=event,
        source_meta={
            "calendar_id": calendar_id,
            "status": event.get("status"),
            "summary": event.get("summary"),
            "attendee_count": len(event.get("attendees", []) or []),
            "fetched_at": datetime.now(timezone.utc).isoformat(),
        },
    )


class CalendarConnector:
    provider = "calendar"

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        max_results: Optional[int] = None,
        calendar_id: str = "primary",
    ):
        self.retry_policy = retry_policy or default_retry_policy()
        self.max_results = max_results or page_size()
        self.calendar_id = calendar_id

    def _service(self, user_id: UUID):
        creds = load_credentials(user_id, SCOPES)
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    def _fetch_page_sync(
        self,
        user_id: UUID,
        since: Optional[datetime],
        until: datetime,
        cursor: Optional[str],
    ) -> EventPage:
        service = self._service(user_id)
        params: Dict[str, Any] = {
            "calendarId": self.calendar_id,
            "timeMax": until.isoformat(),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": self.max_results,
        }
        if since is not None:
            params["timeMin"] = since.isoformat()
        if cursor:
            params["pageToken"] = cursor
        result = service.events().list(**params).execute()
        events = [
            calendar_event_to_event(item, self.calendar_id)
            for item in result.get("items", []) or []
            if item.get("status") != "cancelled"
        ]
        logger.info("Fetched %d calendar events for user %s", len(events), user_id)
        return EventPage(events=events, next_cursor=result.get("nextPageToken"))

    async def fetch_page(
        self,
        user_id: UUID,
        since: Optional[datetime],
        until: datetime,
        cursor: Optional[str] = None,
    ) -> EventPage:
        return await call_provider(
            self._fetch_page_sync,
            user_id, since, until, cursor,
            retry_policy=self.retry_policy,
            label="calendar.fetch_page",
        )
