"""Initial schema: crm and ops tables.

Revision ID: 001
Revises:
Create Date: 2026-09-02

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS crm")
    op.execute("CREATE SCHEMA IF NOT EXISTS ops")
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # ─── CRM Schema ──────────────────────────────────────────────────────────

    op.create_table(
        "contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("display_name", sa.Text, nullable=False),
        sa.Column("primary_email", sa.Text, nullable=True),
        sa.Column("primary_phone", sa.Text, nullable=True),
        sa.Column("source", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        schema="crm",
    )
    op.create_index("ix_contacts_user_email", "contacts", ["user_id", "primary_email"], schema="crm")

    op.create_table(
        "contact_identities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("provider", sa.Text, nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("kind IN ('email', 'phone')", name="ck_identity_kind"),
        sa.UniqueConstraint("user_id", "kind", "value", "provider", name="uq_identity_user_kind_value"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm.contacts.id"], name="fk_identity_contact", ondelete="CASCADE"),
        schema="crm",
    )

    op.create_table(
        "raw_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source_id", sa.Text, nullable=True),
        sa.Column("source_meta", sa.JSON, nullable=True),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("provider IN ('gmail', 'calendar')", name="ck_raw_event_provider"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm.contacts.id"], name="fk_raw_event_contact", ondelete="SET NULL"),
        schema="crm",
    )
    op.create_index(
        "ix_raw_events_user_provider_occurred",
        "raw_events",
        ["user_id", "provider", "occurred_at"],
        schema="crm",
    )
    op.create_index("ix_raw_events_batch", "raw_events", ["batch_id"], schema="crm")

    op.create_table(
        "interactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("raw_event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("subject", sa.Text, nullable=True),
        sa.Column("body_text", sa.Text, nullable=True),
        sa.Column("body_raw", sa.JSON, nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.Text, nullable=True),
        sa.Column("source_id", sa.Text, nullable=True),
        sa.Column("source_meta", sa.JSON, nullable=True),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("type IN ('email', 'meeting')", name="ck_interaction_type"),
        sa.UniqueConstraint("raw_event_id", name="uq_interaction_raw_event"),
        sa.ForeignKeyConstraint(["raw_event_id"], ["crm.raw_events.id"], name="fk_interaction_raw_event", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm.contacts.id"], name="fk_interaction_contact", ondelete="SET NULL"),
        schema="crm",
    )
    op.create_index("ix_interactions_batch", "interactions", ["batch_id"], schema="crm")
    op.create_index(
        "ix_interactions_contact_timeline",
        "interactions",
        ["contact_id", "occurred_at"],
        schema="crm",
    )

    op.create_table(
        "embeddings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("owner_type", sa.Text, nullable=False),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("embedding", Vector(1536), nullable=False),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("owner_type", "owner_id", name="uq_embedding_owner"),
        schema="crm",
    )
    op.create_index("ix_embeddings_batch", "embeddings", ["batch_id"], schema="crm")

    # ─── OPS Schema ──────────────────────────────────────────────────────────

    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("seq", sa.BigInteger, sa.Identity(always=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "kind IN ('normalize', 'extract_contacts', 'embed', 'provider_sync')",
            name="ck_job_kind",
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'done', 'error')",
            name="ck_job_status",
        ),
        schema="ops",
    )
    op.create_index("ix_jobs_status_seq", "jobs", ["status", "seq"], schema="ops")
    op.create_index("ix_jobs_batch", "jobs", ["batch_id"], schema="ops")
    op.create_index("ix_jobs_user", "jobs", ["user_id"], schema="ops")


def downgrade() -> None:
    op.drop_table("jobs", schema="ops")
    op.drop_table("embeddings", schema="crm")
    op.drop_table("interactions", schema="crm")
    op.drop_table("raw_events", schema="crm")
    op.drop_table("contact_identities", schema="crm")
    op.drop_table("contacts", schema="crm")
