"""Add 'reverted' job status, retry scheduling and handler results.

Undo used to mark jobs 'done'; it now uses a distinct 'reverted' terminal
state. run_after delays requeued jobs; result keeps handler annotations.

Revision ID: 003
Revises: 002
Create Date: 2026-09-23
"""
from alembic import op
import sqlalchemy as sa

revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.drop_constraint("ck_job_status", "jobs", schema="ops", type_="check")
    op.create_check_constraint(
        "ck_job_status",
        "jobs",
        "status IN ('queued', 'processing', 'done', 'error', 'reverted')",
        schema="ops",
    )
    op.add_column("jobs", sa.Column("run_after", sa.DateTime(timezone=True), nullable=True), schema="ops")
    op.add_column("jobs", sa.Column("result", sa.JSON, nullable=True), schema="ops")


def downgrade() -> None:
    op.drop_column("jobs", "result", schema="ops")
    op.drop_column("jobs", "run_after", schema="ops")
    op.execute("UPDATE ops.jobs SET status = 'done' WHERE status = 'reverted'")
    op.drop_constraint("ck_job_status", "jobs", schema="ops", type_="check")
    op.create_check_constraint(
        "ck_job_status",
        "jobs",
        "status IN ('queued', 'processing', 'done', 'error')",
        schema="ops",
    )
