"""notification delivery engine tables

Revision ID: 0001_notification_engine
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_notification_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Per-user push endpoints; rows are deactivated, never deleted.
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False, server_default=sa.text("'web'")),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.Text(), nullable=True),
        sa.Column("auth", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_user_active", "subscriptions", ["user_id", "is_active"])

    # Channel-allowed flags; a missing row means every channel is allowed.
    op.create_table(
        "preferences",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("allow_push", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("allow_email", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("categories", sa.String(), nullable=False, server_default=sa.text("'all'")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Durable job queue polled by the delivery worker.
    op.create_table(
        "notification_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default=sa.text("'info'")),
        sa.Column("channel", sa.String(), nullable=False, server_default=sa.text("'push'")),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_notification_queue_status_next_attempt",
        "notification_queue",
        ["status", "next_attempt_at"],
    )
    op.create_index("ix_notification_queue_user_status", "notification_queue", ["user_id", "status"])

    # Append-only audit trail of delivery outcomes.
    op.create_table(
        "notification_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("response", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notification_logs_queue_id", "notification_logs", ["queue_id"])


def downgrade() -> None:
    op.drop_index("ix_notification_logs_queue_id", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_index("ix_notification_queue_user_status", table_name="notification_queue")
    op.drop_index("ix_notification_queue_status_next_attempt", table_name="notification_queue")
    op.drop_table("notification_queue")
    op.drop_table("preferences")
    op.drop_index("ix_subscriptions_user_active", table_name="subscriptions")
    op.drop_table("subscriptions")
