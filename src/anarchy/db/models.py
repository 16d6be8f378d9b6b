"""SQLAlchemy ORM models for the Anarchy & Associates database.

Tables: guild_configs, staff, cases, case_counters, audit_logs, reminders,
retainers, feedback.
Every table except guild_configs is scoped by guild_id.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class GuildConfigRow(Base):
    __tablename__ = "guild_configs"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # permission name -> list of Discord role IDs
    permissions: Mapped[dict] = mapped_column(JSON, default=dict)
    admin_roles: Mapped[list] = mapped_column(JSON, default=list)
    admin_users: Mapped[list] = mapped_column(JSON, default=list)
    case_review_category_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    case_archive_category_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)


class StaffRow(Base):
    __tablename__ = "staff"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    roblox_username: Mapped[str] = mapped_column(String(50), default="")
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")
    hired_by: Mapped[str] = mapped_column(String(32), nullable=False)
    hired_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    terminated_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    terminated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    promotion_history: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("guild_id", "user_id", name="uq_staff_guild_user"),
        Index("ix_staff_guild_role_status", "guild_id", "role", "status"),
    )


class CaseRow(Base):
    __tablename__ = "cases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    case_number: Mapped[str] = mapped_column(String(150), nullable=False)
    client_id: Mapped[str] = mapped_column(String(32), nullable=False)
    client_username: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    priority: Mapped[str] = mapped_column(String(10), default="medium")
    lead_attorney_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    assigned_lawyer_ids: Mapped[list] = mapped_column(JSON, default=list)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    result: Mapped[str | None] = mapped_column(String(20), nullable=True)
    result_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    documents: Mapped[list] = mapped_column(JSON, default=list)
    notes: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("guild_id", "case_number", name="uq_cases_guild_case_number"),
        Index("ix_cases_guild_status", "guild_id", "status"),
        Index("ix_cases_client_id", "client_id"),
    )


class CaseCounterRow(Base):
    __tablename__ = "case_counters"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)


class AuditLogRow(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (Index("ix_audit_logs_guild_action", "guild_id", "action"),)


class ReminderRow(Base):
    __tablename__ = "reminders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    case_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        Index("ix_reminders_active_due", "is_active", "scheduled_for"),
        Index("ix_reminders_case_id", "case_id"),
    )


class RetainerRow(Base):
    __tablename__ = "retainers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    client_id: Mapped[str] = mapped_column(String(32), nullable=False)
    lawyer_id: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    agreement_template: Mapped[str] = mapped_column(Text, nullable=False)
    client_roblox_username: Mapped[str | None] = mapped_column(String(50), nullable=True)
    digital_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        Index("ix_retainers_guild_status", "guild_id", "status"),
        Index("ix_retainers_guild_client", "guild_id", "client_id"),
    )


class FeedbackRow(Base):
    __tablename__ = "feedback"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    submitter_id: Mapped[str] = mapped_column(String(32), nullable=False)
    submitter_username: Mapped[str] = mapped_column(String(100), nullable=False)
    target_staff_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    target_staff_username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False)
    is_for_firm: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        Index("ix_feedback_guild_target", "guild_id", "target_staff_id"),
        Index("ix_feedback_guild_created", "guild_id", "created_at"),
    )
