"""Contact repository — identity resolution used by contact extraction."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Contact, ContactIdentity

logger = logging.getLogger(__name__)


async def get_by_email(
    session: AsyncSession, user_id: UUID, email: str
) -> Optional[Contact]:
    """Return the user's contact whose primary email matches, or None."""
    result = await session.execute(
        select(Contact)
        .where(Contact.user_id == user_id)
        .where(Contact.primary_email == email.lower().strip())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_by_identity(
    session: AsyncSession,
    user_id: UUID,
    kind: str,
    value: str,
    provider: str = "",
) -> Optional[UUID]:
    """Return the contact id a recorded identity resolves to, or None."""
    result = await session.execute(
        select(ContactIdentity.contact_id)
        .where(ContactIdentity.user_id == user_id)
        .where(ContactIdentity.kind == kind)
        .where(ContactIdentity.value == value)
        .where(ContactIdentity.provider == provider)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def add_identity(
    session: AsyncSession,
    user_id: UUID,
    contact_id: UUID,
    kind: str,
    value: str,
    provider: str = "",
) -> bool:
    """Record an identity for a contact. Idempotent.

    Returns True if a new row was written.
    """
    stmt = (
        pg_insert(ContactIdentity)
        .values(
            user_id=user_id,
            contact_id=contact_id,
            kind=kind,
            value=value,
            provider=provider,
        )
        .on_conflict_do_nothing(
            index_elements=["user_id", "kind", "value", "provider"]
        )
        .returning(ContactIdentity.id)
    )
    result = await session.execute(stmt)
    await session.flush()
    return result.scalar_one_or_none() is not None


async def create(session: AsyncSession, user_id: UUID, data: dict) -> Contact:
    """Create a contact.

    data dict keys: display_name, primary_email, primary_phone, source
    """
    email = data.get("primary_email")
    contact = Contact(
        user_id=user_id,
        display_name=data["display_name"],
        primary_email=email.lower().strip() if email else None,
        primary_phone=data.get("primary_phone"),
        source=data.get("source"),
    )
    session.add(contact)
    await session.flush()
    return contact
