"""Add unique constraint on (user_id, provider, source_id) for raw event dedup.

Revision ID: 002
Revises: 001
Create Date: 2026-09-09
"""
from alembic import op

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_unique_constraint(
        "uq_raw_event_user_provider_source",
        "raw_events",
        ["user_id", "provider", "source_id"],
        schema="crm",
    )


def downgrade() -> None:
    op.drop_constraint("uq_raw_event_user_provider_source", "raw_events", schema="crm")
