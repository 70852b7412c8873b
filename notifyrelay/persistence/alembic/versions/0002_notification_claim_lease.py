"""notification queue claim lease

Revision ID: 0002_notification_claim_lease
Revises: 0001_notification_engine
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_notification_claim_lease"
down_revision = "0001_notification_engine"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Claim timestamp lets the worker reclaim processing rows whose owner never recorded an outcome.
    op.add_column("notification_queue", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "ix_notification_queue_status_claimed",
        "notification_queue",
        ["status", "claimed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_notification_queue_status_claimed", table_name="notification_queue")
    op.drop_column("notification_queue", "claimed_at")
