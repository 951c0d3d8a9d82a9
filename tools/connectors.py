"""Provider connector registry and shared Google API plumbing.

A connector fetches one page of provider events for a user and a time
window. Both Google connectors load the user's stored OAuth token from
GOOGLE_TOKENS_DIR/<user_id>.json, refresh it when expired, and run the
blocking API client in a worker thread under the shared retry policy.

Usage:
    from tools.connectors import get_connector
    page = await get_connector("gmail").fetch_page(user_id, since, until, cursor)
"""
import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, TypeVar
from uuid import UUID

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from pipeline.errors import ConnectorError, NotConnectedError
from schemas.events import EventPage
from tools.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_HTTP_STATUSES = {408, 429, 500, 502, 503, 504}
UNAUTHORIZED_HTTP_STATUSES = {401, 403}


class Connector(Protocol):
    provider: str

    async def fetch_page(
        self,
        user_id: UUID,
        since: Optional[datetime],
        until: datetime,
        cursor: Optional[str] = None,
    ) -> EventPage:
        ...


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(os.environ.get("CONNECTOR_MAX_ATTEMPTS", "3")),
        base_delay=float(os.environ.get("CONNECTOR_RETRY_BASE_SECONDS", "1")),
        max_delay=float(os.environ.get("CONNECTOR_RETRY_MAX_SECONDS", "30")),
    )


def page_size() -> int:
    return int(os.environ.get("CONNECTOR_PAGE_SIZE", "100"))


def _tokens_dir() -> Path:
    return Path(os.environ.get("GOOGLE_TOKENS_DIR", "tokens"))


def load_credentials(user_id: UUID, scopes: list[str]) -> Credentials:
    """Load and, if needed, refresh a user's authorized Google credentials.

    Raises NotConnectedError when no token is stored or the refresh token
    has been revoked or expired.
    """
    path = _tokens_dir() / f"{user_id}.json"
    if not path.exists():
        raise NotConnectedError(f"No Google authorization stored for user {user_id}")

    creds = Credentials.from_authorized_user_file(str(path), scopes)
    if creds.valid:
        return creds
    if not creds.refresh_token:
        raise NotConnectedError(f"Google authorization for user {user_id} cannot be refreshed")

    try:
        creds.refresh(Request())
    except RefreshError as exc:
        raise NotConnectedError(f"Google authorization for user {user_id} was revoked") from exc
    path.write_text(creds.to_json())
    logger.info("Refreshed Google credentials for user %s", user_id)
    return creds


def http_status(exc: HttpError) -> int:
    return int(getattr(exc.resp, "status", 0) or 0)


def is_transient(exc: BaseException) -> bool:
    """True for provider errors worth another attempt."""
    if isinstance(exc, HttpError):
        return http_status(exc) in TRANSIENT_HTTP_STATUSES
    return isinstance(exc, (TransportError, TimeoutError, ConnectionError))


async def call_provider(
    func: Callable[..., T],
    *args: Any,
    retry_policy: RetryPolicy,
    label: str,
) -> T:
    """Run a blocking provider call in a thread with retry and error mapping.

    HTTP 401/403 becomes NotConnectedError; any other provider failure that
    survives the retry policy becomes ConnectorError.
    """
    try:
        return await retry_policy.run(
            lambda: asyncio.to_thread(func, *args),
            is_retryable=is_transient,
            label=label,
        )
    except HttpError as exc:
        status = http_status(exc)
        if status in UNAUTHORIZED_HTTP_STATUSES:
            raise NotConnectedError(f"{label}: provider rejected authorization (HTTP {status})") from exc
        raise ConnectorError(f"{label}: provider returned HTTP {status}") from exc
    except RefreshError as exc:
        raise NotConnectedError(f"{label}: authorization refresh failed") from exc
    except (TransportError, TimeoutError, ConnectionError) as exc:
        raise ConnectorError(f"{label}: {exc}") from exc


def get_connector(provider: str, retry_policy: Optional[RetryPolicy] = None) -> Connector:
    """Return the connector for a provider name."""
    policy = retry_policy or default_retry_policy()
    if provider == "gmail":
        from tools.gmail_tools import GmailConnector
        return GmailConnector(retry_policy=policy)
    if provider == "calendar":
        from tools.calendar_tools import CalendarConnector
        return CalendarConnector(retry_policy=policy)
    raise ValueError(f"Unknown provider: {provider!r}")
