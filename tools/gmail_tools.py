"""Gmail connector: pages of messages received or sent in a time window."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from schemas.events import EventPage, ProviderEvent
from tools.connectors import call_provider, default_retry_policy, http_status, load_credentials, page_size
from tools.retry import RetryPolicy

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def build_query(since: Optional[datetime], until: datetime) -> str:
    """Gmail search query bounding messages to [since, until].

    Uses epoch seconds so the bound keeps second resolution rather than
    Gmail's day-resolution date syntax.
    """
    parts = []
    if since is not None:
        parts.append(f"after:{int(since.timestamp())}")
    parts.append(f"before:{int(until.timestamp()) + 1}")
    return " ".join(parts)


def _headers(message: Dict[str, Any]) -> Dict[str, str]:
    headers = message.get("payload", {}).get("headers", []) or []
    return {h.get("name", "").lower(): h.get("value", "") for h in headers}


def message_to_event(message: Dict[str, Any], query: str) -> ProviderEvent:
    """Map a Gmail message (format=full) to a provider event.

    The message document is kept whole as the payload; occurred_at comes
    from internalDate (epoch milliseconds).
    """
    internal_ms = int(message.get("internalDate") or 0)
    if internal_ms:
        occurred_at = datetime.fromtimestamp(internal_ms / 1000, tz=timezone.utc)
    else:
        occurred_at = datetime.now(timezone.utc)
    headers = _headers(message)
    return ProviderEvent(
        source_id=message.get("id"),
        occurred_at=occurred_at,
        payload=message,
        source_meta={
            "thread_id": message.get("threadId"),
            "label_ids": message.get("labelIds", []),
            "from": headers.get("from"),
            "subject": headers.get("subject"),
            "matched_query": query,
            "fetched_at": datetime.now(timezone.utc).isoformat(),
        },
    )


class GmailConnector:
    provider = "gmail"

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, max_results: Optional[int] = None):
        self.retry_policy = retry_policy or default_retry_policy()
        self.max_results = max_results or page_size()

    def _service(self, user_id: UUID):
        creds = load_credentials(user_id, SCOPES)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _fetch_page_sync(
        self,
        user_id: UUID,
        since: Optional[datetime],
        until: datetime,
        cursor: Optional[str],
    ) -> EventPage:
        service = self._service(user_id)
        query = build_query(since, until)
        listing = (
            service.users()
            .messages()
            .list(userId="me", q=query, maxResults=self.max_results, pageToken=cursor)
            .execute()
        )
        events: List[ProviderEvent] = []
        for ref in listing.get("messages", []) or []:
            try:
                message = (
                    service.users()
                    .messages()
                    .get(userId="me", id=ref["id"], format="full")
                    .execute()
                )
            except HttpError as exc:
                if http_status(exc) != 404:
                    raise
                # Deleted between list and get.
                logger.warning("Gmail message %s disappeared before fetch; skipping", ref["id"])
                continue
            events.append(message_to_event(message, query))
        logger.info("Fetched %d Gmail messages for user %s", len(events), user_id)
        return EventPage(events=events, next_cursor=listing.get("nextPageToken"))

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
            label="gmail.fetch_page",
        )
