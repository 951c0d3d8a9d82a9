"""normalize stage: raw provider events → interactions.

Every raw event of the batch gets exactly one interaction. Provider
documents that lack the usual fields still produce a minimal row so the
stage always drains its batch.
"""
import base64
import binascii
import logging
import os
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Job, RawEvent
from db.repositories import interactions as interactions_repo
from db.repositories import jobs as jobs_repo
from db.repositories import raw_events as raw_events_repo
from tools.calendar_tools import event_start

logger = logging.getLogger(__name__)


def _chunk_size() -> int:
    return int(os.environ.get("NORMALIZE_CHUNK_SIZE", "500"))


def decode_base64url(data: str) -> str:
    """Decode a Gmail base64url body part, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _plain_text(part: Dict[str, Any]) -> Optional[str]:
    """Depth-first search for the first text/plain body in a MIME tree."""
    if part.get("mimeType") == "text/plain":
        data = (part.get("body") or {}).get("data")
        if data:
            return decode_base64url(data)
    for child in part.get("parts", []) or []:
        text = _plain_text(child)
        if text:
            return text
    return None


def interaction_from_gmail(raw: RawEvent) -> Dict[str, Any]:
    message = raw.payload or {}
    body = message.get("payload", {}) or {}
    headers = {
        h.get("name", "").lower(): h.get("value", "")
        for h in body.get("headers", []) or []
    }
    text = _plain_text(body) or message.get("snippet") or None
    return {
        "type": "email",
        "subject": headers.get("subject") or None,
        "body_text": text,
        "body_raw": {
            "snippet": message.get("snippet"),
            "date": headers.get("date"),
        },
        "occurred_at": raw.occurred_at,
        "source": "gmail",
        "source_id": raw.source_id,
        "source_meta": {
            "from": headers.get("from"),
            "to": headers.get("to"),
            "cc": headers.get("cc"),
            "thread_id": message.get("threadId"),
            "label_ids": message.get("labelIds", []),
        },
    }


def interaction_from_calendar(raw: RawEvent) -> Dict[str, Any]:
    event = raw.payload or {}
    attendees = [
        {
            "email": a.get("email"),
            "display_name": a.get("displayName"),
            "self": bool(a.get("self")),
            "organizer": bool(a.get("organizer")),
            "response_status": a.get("responseStatus"),
        }
        for a in event.get("attendees", []) or []
    ]
    organizer = event.get("organizer") or {}
    return {
        "type": "meeting",
        "subject": event.get("summary") or None,
        "body_text": event.get("description") or None,
        "body_raw": {
            "start": event.get("start"),
            "end": event.get("end"),
            "location": event.get("location"),
        },
        "occurred_at": event_start(event) or raw.occurred_at,
        "source": "calendar",
        "source_id": raw.source_id,
        "source_meta": {
            "attendees": attendees,
            "organizer": {
                "email": organizer.get("email"),
                "self": bool(organizer.get("self")),
            },
            "status": event.get("status"),
            "html_link": event.get("htmlLink"),
        },
    }


BUILDERS = {
    "gmail": interaction_from_gmail,
    "calendar": interaction_from_calendar,
}


def build_interaction(raw: RawEvent) -> Dict[str, Any]:
    """Interaction row for a raw event, keyed back to it by raw_event_id."""
    builder = BUILDERS.get(raw.provider)
    if builder is None:
        row = {
            "type": "email",
            "subject": None,
            "body_text": None,
            "body_raw": None,
            "occurred_at": raw.occurred_at,
            "source": raw.provider,
            "source_id": raw.source_id,
            "source_meta": None,
        }
    else:
        row = builder(raw)
    row.update({
        "user_id": raw.user_id,
        "raw_event_id": raw.id,
        "batch_id": raw.batch_id,
    })
    return row


async def handle_normalize(session: AsyncSession, job: Job) -> dict:
    normalized = 0
    skipped = 0
    while True:
        raw_events = await raw_events_repo.get_unnormalized(
            session, job.user_id, job.batch_id, limit=_chunk_size()
        )
        if not raw_events:
            break
        rows = [build_interaction(raw) for raw in raw_events]
        inserted = await interactions_repo.insert_if_absent(session, rows)
        normalized += inserted
        skipped += len(rows) - inserted
        if inserted == 0:
            break

    await jobs_repo.ensure_stage_job(
        session, job.user_id, "extract_contacts", job.batch_id, job.payload or {}
    )
    logger.info(
        "normalize job %s: %d interactions created, %d skipped", job.id, normalized, skipped
    )
    return {"normalized": normalized, "skipped": skipped}