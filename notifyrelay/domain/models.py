from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_active", "user_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    # web subscriptions carry VAPID keys; android/ios rows store a device token as endpoint.
    platform: Mapped[str] = mapped_column(String, nullable=False, default="web", server_default=text("'web'"))
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh: Mapped[str | None] = mapped_column(Text, nullable=True)
    auth: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Only ever flipped true -> false; rows are never hard-deleted.
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Preference(Base):
    __tablename__ = "preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    allow_push: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    allow_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    # Stored for the settings collaborator; dispatch does not filter on categories.
    categories: Mapped[str] = mapped_column(String, nullable=False, default="all", server_default=text("'all'"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationJob(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        Index("ix_notification_queue_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_notification_queue_user_status", "user_id", "status"),
        Index("ix_notification_queue_status_claimed", "status", "claimed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False, default="info", server_default=text("'info'"))
    channel: Mapped[str] = mapped_column(String, nullable=False, default="push", server_default=text("'push'"))
    # Serialized JSON {title, body, url, icon}.
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending", server_default=text("'pending'"))
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # "<channel>:<outcome>", e.g. "push:retry_scheduled".
    status: Mapped[str] = mapped_column(String, nullable=False)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
