"""SQLAlchemy 2.0 ORM models for the provider ingestion pipeline.

Covers 6 tables across 2 schemas:
  - crm: contacts, contact_identities, raw_events, interactions, embeddings
  - ops: jobs
"""

import os
import uuid
from datetime import datetime
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    UUID,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

EMBEDDING_DIM = int(os.environ.get("EMBEDDING_DIM", "1536"))


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerated values used in CHECK constraints
# ---------------------------------------------------------------------------

PROVIDERS = ("gmail", "calendar")

JOB_KINDS = ("normalize", "extract_contacts", "embed", "provider_sync")

JOB_STATUSES = ("queued", "processing", "done", "error", "reverted")

# Stage jobs enqueued for every ingestion batch, in pipeline order.
STAGE_KINDS = ("normalize", "extract_contacts", "embed")


def _in_check(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ===========================================================================
# Schema: crm
# ===========================================================================


class Contact(Base):
    """crm.contacts — people the user has a relationship with."""

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_user_email", "user_id", "primary_email"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    primary_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    primary_phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    identities: Mapped[list["ContactIdentity"]] = relationship(
        "ContactIdentity", back_populates="contact", cascade="all, delete-orphan"
    )


class ContactIdentity(Base):
    """crm.contact_identities — alternate addresses that resolve to a contact."""

    __tablename__ = "contact_identities"
    __table_args__ = (
        CheckConstraint("kind IN ('email', 'phone')", name="ck_identity_kind"),
        UniqueConstraint(
            "user_id", "kind", "value", "provider", name="uq_identity_user_kind_value"
        ),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.contacts.id", ondelete="CASCADE"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    contact: Mapped["Contact"] = relationship("Contact", back_populates="identities")


class RawEvent(Base):
    """crm.raw_events — provider artifacts exactly as fetched.

    (user_id, provider, source_id) is unique; rows without a source_id never
    conflict because PostgreSQL treats NULLs as distinct.
    """

    __tablename__ = "raw_events"
    __table_args__ = (
        CheckConstraint(_in_check("provider", PROVIDERS), name="ck_raw_event_provider"),
        UniqueConstraint(
            "user_id", "provider", "source_id", name="uq_raw_event_user_provider_source"
        ),
        Index("ix_raw_events_user_provider_occurred", "user_id", "provider", "occurred_at"),
        Index("ix_raw_events_batch", "batch_id"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_meta: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Interaction(Base):
    """crm.interactions — normalized, contact-linkable communication.

    One row per raw event; raw_event_id is unique so a retried normalize
    never duplicates work.
    """

    __tablename__ = "interactions"
    __table_args__ = (
        CheckConstraint("type IN ('email', 'meeting')", name="ck_interaction_type"),
        UniqueConstraint("raw_event_id", name="uq_interaction_raw_event"),
        Index("ix_interactions_batch", "batch_id"),
        Index("ix_interactions_contact_timeline", "contact_id", "occurred_at"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    raw_event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.raw_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body_raw: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_meta: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Embedding(Base):
    """crm.embeddings — vector representation of an interaction."""

    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", name="uq_embedding_owner"),
        Index("ix_embeddings_batch", "batch_id"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    owner_type: Mapped[str] = mapped_column(Text, nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIM), nullable=False)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ===========================================================================
# Schema: ops
# ===========================================================================


class Job(Base):
    """ops.jobs — durable work queue.

    seq orders claims FIFO; rows enqueued in one transaction share the same
    created_at.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint(_in_check("kind", JOB_KINDS), name="ck_job_kind"),
        CheckConstraint(_in_check("status", JOB_STATUSES), name="ck_job_status"),
        Index("ix_jobs_status_seq", "status", "seq"),
        Index("ix_jobs_batch", "batch_id"),
        Index("ix_jobs_user", "user_id"),
        {"schema": "ops"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    seq: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    run_after: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
