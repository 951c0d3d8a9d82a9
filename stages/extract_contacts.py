"""extract_contacts stage: link interactions to known contacts.

Candidate email identities come from the interaction's source_meta. Each
candidate is resolved first through recorded contact identities, then
through the contacts' primary email; the first match wins. Unresolved
interactions stay unlinked. No contacts are created here.
"""
import logging
from email.utils import getaddresses
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Interaction, Job
from db.repositories import contacts as contacts_repo
from db.repositories import interactions as interactions_repo
from db.repositories import jobs as jobs_repo
from db.repositories import raw_events as raw_events_repo

logger = logging.getLogger(__name__)

# (kind, value, provider)
Candidate = Tuple[str, str, str]


def _normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().lower()
    return value if "@" in value else None


def candidate_identities(
    source: Optional[str], source_meta: Optional[Dict[str, Any]]
) -> List[Candidate]:
    """Ordered, de-duplicated email identities an interaction mentions.

    Gmail: From, then To, then Cc header addresses.
    Calendar: attendees, then the organizer, skipping the user's own entry.
    """
    meta = source_meta or {}
    emails: List[str] = []
    if source == "gmail":
        fields = [meta.get(name) for name in ("from", "to", "cc")]
        emails = [addr for _, addr in getaddresses([f for f in fields if f])]
    elif source == "calendar":
        for attendee in meta.get("attendees", []) or []:
            if not attendee.get("self"):
                emails.append(attendee.get("email"))
        organizer = meta.get("organizer") or {}
        if not organizer.get("self"):
            emails.append(organizer.get("email"))

    candidates: List[Candidate] = []
    seen = set()
    for raw in emails:
        email = _normalize_email(raw)
        if email and email not in seen:
            seen.add(email)
            candidates.append(("email", email, source or ""))
    return candidates


async def resolve_contact(
    session: AsyncSession, user_id: UUID, candidates: List[Candidate]
) -> Tuple[Optional[UUID], Optional[Candidate]]:
    """Return (contact_id, matched candidate), or (None, None)."""
    for candidate in candidates:
        kind, value, provider = candidate
        contact_id = await contacts_repo.find_by_identity(session, user_id, kind, value, provider)
        if contact_id is not None:
            return contact_id, candidate
    for candidate in candidates:
        kind, value, _ = candidate
        if kind != "email":
            continue
        contact = await contacts_repo.get_by_email(session, user_id, value)
        if contact is not None:
            return contact.id, candidate
    return None, None


async def link_interaction(session: AsyncSession, interaction: Interaction) -> bool:
    candidates = candidate_identities(interaction.source, interaction.source_meta)
    if not candidates:
        return False
    contact_id, matched = await resolve_contact(session, interaction.user_id, candidates)
    if contact_id is None:
        return False

    linked = await interactions_repo.link_contact(session, interaction.id, contact_id)
    if not linked:
        return False
    await raw_events_repo.link_contact(session, interaction.raw_event_id, contact_id)
    kind, value, provider = matched
    await contacts_repo.add_identity(
        session, interaction.user_id, contact_id, kind, value, provider
    )
    return True


async def handle_extract_contacts(session: AsyncSession, job: Job) -> dict:
    interactions = await interactions_repo.get_unlinked(
        session, job.user_id, job.batch_id, limit=None
    )
    linked = 0
    for interaction in interactions:
        if await link_interaction(session, interaction):
            linked += 1

    await jobs_repo.ensure_stage_job(
        session, job.user_id, "embed", job.batch_id, job.payload or {}
    )
    logger.info(
        "extract_contacts job %s: %d interactions processed, %d linked",
        job.id, len(interactions), linked,
    )
    return {"processed": len(interactions), "linked": linked}
