"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. Every repository is guild-scoped and returns
pydantic domain models, never ORM rows. Audit logs are append-only.

Case and retainer status transitions go through ``conditional_update`` so
that two interactions racing on the same record cannot both win.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Select, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from anarchy.db.models import (
    AuditLogRow,
    CaseCounterRow,
    CaseRow,
    FeedbackRow,
    GuildConfigRow,
    ReminderRow,
    RetainerRow,
    StaffRow,
)
from anarchy.models.audit import AuditLogEntry
from anarchy.models.case import (
    ACTIVE_CASE_STATUSES,
    Case,
    CaseDocument,
    CaseNote,
)
from anarchy.models.feedback import Feedback, FeedbackSearchFilters, FeedbackSubmission
from anarchy.models.guild_config import PERMISSION_NAMES, GuildConfig, normalize_permission_name
from anarchy.models.reminder import Reminder
from anarchy.models.retainer import (
    RETAINER_STATUSES,
    STANDARD_RETAINER_TEMPLATE,
    Retainer,
    RetainerStats,
)
from anarchy.models.staff import PromotionRecord, Staff


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _to_guild_config(row: GuildConfigRow) -> GuildConfig:
    permissions = {name: [] for name in PERMISSION_NAMES}
    permissions.update({k: list(v) for k, v in (row.permissions or {}).items()})
    return GuildConfig(
        guild_id=row.guild_id,
        permissions=permissions,
        admin_roles=list(row.admin_roles or []),
        admin_users=list(row.admin_users or []),
        case_review_category_id=row.case_review_category_id,
        case_archive_category_id=row.case_archive_category_id,
    )


def _to_staff(row: StaffRow) -> Staff:
    return Staff(
        id=row.id,
        guild_id=row.guild_id,
        user_id=row.user_id,
        roblox_username=row.roblox_username,
        role=row.role,
        status=row.status,
        hired_by=row.hired_by,
        hired_at=_as_utc(row.hired_at),
        terminated_by=row.terminated_by,
        terminated_at=_as_utc(row.terminated_at),
        promotion_history=row.promotion_history or [],
    )


def _to_case(row: CaseRow) -> Case:
    return Case(
        id=row.id,
        guild_id=row.guild_id,
        case_number=row.case_number,
        client_id=row.client_id,
        client_username=row.client_username,
        title=row.title,
        description=row.description,
        status=row.status,
        priority=row.priority,
        lead_attorney_id=row.lead_attorney_id,
        assigned_lawyer_ids=list(row.assigned_lawyer_ids or []),
        channel_id=row.channel_id,
        result=row.result,
        result_notes=row.result_notes,
        closed_by=row.closed_by,
        closed_at=_as_utc(row.closed_at),
        documents=row.documents or [],
        notes=row.notes or [],
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _to_reminder(row: ReminderRow) -> Reminder:
    return Reminder(
        id=row.id,
        guild_id=row.guild_id,
        user_id=row.user_id,
        username=row.username,
        message=row.message,
        scheduled_for=_as_utc(row.scheduled_for),
        channel_id=row.channel_id,
        case_id=row.case_id,
        is_active=row.is_active,
        delivered_at=_as_utc(row.delivered_at),
        created_at=_as_utc(row.created_at),
    )


def _to_retainer(row: RetainerRow) -> Retainer:
    return Retainer(
        id=row.id,
        guild_id=row.guild_id,
        client_id=row.client_id,
        lawyer_id=row.lawyer_id,
        status=row.status,
        agreement_template=row.agreement_template,
        client_roblox_username=row.client_roblox_username,
        digital_signature=row.digital_signature,
        signed_at=_as_utc(row.signed_at),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _to_feedback(row: FeedbackRow) -> Feedback:
    return Feedback(
        id=row.id,
        guild_id=row.guild_id,
        submitter_id=row.submitter_id,
        submitter_username=row.submitter_username,
        target_staff_id=row.target_staff_id,
        target_staff_username=row.target_staff_username,
        rating=row.rating,
        comment=row.comment,
        is_for_firm=row.is_for_firm,
        created_at=_as_utc(row.created_at),
    )


class BaseRepository:
    """Holds the session every repository operates on."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session


# --- Guild configuration ---


class GuildConfigRepository(BaseRepository):
    async def _get_row(self, guild_id: str) -> GuildConfigRow | None:
        return await self.session.get(GuildConfigRow, guild_id)

    async def _ensure_row(self, guild_id: str) -> GuildConfigRow:
        # Insert-or-ignore keeps concurrent first accesses from colliding on the key.
        stmt = (
            sqlite_insert(GuildConfigRow)
            .values(
                guild_id=guild_id,
                permissions={name: [] for name in PERMISSION_NAMES},
                admin_roles=[],
                admin_users=[],
                created_at=_now(),
                updated_at=_now(),
            )
            .on_conflict_do_nothing(index_elements=["guild_id"])
        )
        await self.session.execute(stmt)
        row = await self.session.get(GuildConfigRow, guild_id, populate_existing=True)
        if row is None:
            raise LookupError(f"Guild config missing after upsert: {guild_id}")
        return row

    async def get_config(self, guild_id: str) -> GuildConfig | None:
        row = await self._get_row(guild_id)
        return _to_guild_config(row) if row else None

    async def ensure_guild_config(self, guild_id: str) -> GuildConfig:
        """Return the guild's config, creating an empty one on first access."""
        row = await self._get_row(guild_id)
        if row is None:
            row = await self._ensure_row(guild_id)
        return _to_guild_config(row)

    async def set_permission_roles(
        self, guild_id: str, permission: str, role_ids: list[str]
    ) -> GuildConfig:
        permission = normalize_permission_name(permission)
        if permission not in PERMISSION_NAMES:
            raise ValueError(f"Unknown permission: {permission}")
        row = await self._ensure_row(guild_id)
        permissions = dict(row.permissions or {})
        permissions[permission] = list(dict.fromkeys(role_ids))
        row.permissions = permissions
        await self.session.flush()
        return _to_guild_config(row)

    async def _update_list(self, guild_id: str, column: str, value: str, add: bool) -> GuildConfig:
        row = await self._ensure_row(guild_id)
        current = list(getattr(row, column) or [])
        if add and value not in current:
            current.append(value)
        elif not add and value in current:
            current.remove(value)
        setattr(row, column, current)
        await self.session.flush()
        return _to_guild_config(row)

    async def add_admin_user(self, guild_id: str, user_id: str) -> GuildConfig:
        return await self._update_list(guild_id, "admin_users", user_id, add=True)

    async def remove_admin_user(self, guild_id: str, user_id: str) -> GuildConfig:
        return await self._update_list(guild_id, "admin_users", user_id, add=False)

    async def add_admin_role(self, guild_id: str, role_id: str) -> GuildConfig:
        return await self._update_list(guild_id, "admin_roles", role_id, add=True)

    async def remove_admin_role(self, guild_id: str, role_id: str) -> GuildConfig:
        return await self._update_list(guild_id, "admin_roles", role_id, add=False)

    async def set_case_review_category(self, guild_id: str, category_id: str | None) -> GuildConfig:
        row = await self._ensure_row(guild_id)
        row.case_review_category_id = category_id
        await self.session.flush()
        return _to_guild_config(row)

    async def set_case_archive_category(
        self, guild_id: str, category_id: str | None
    ) -> GuildConfig:
        row = await self._ensure_row(guild_id)
        row.case_archive_category_id = category_id
        await self.session.flush()
        return _to_guild_config(row)


# --- Staff ---


class StaffRepository(BaseRepository):
    async def get_staff_count_by_role(self, guild_id: str, role: str) -> int:
        """Count active staff holding *role* in the guild."""
        stmt = select(func.count(StaffRow.id)).where(
            StaffRow.guild_id == guild_id,
            StaffRow.role == role,
            StaffRow.status == "active",
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def _get_row(self, guild_id: str, user_id: str) -> StaffRow | None:
        stmt = select(StaffRow).where(StaffRow.guild_id == guild_id, StaffRow.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_user_id(self, guild_id: str, user_id: str) -> Staff | None:
        row = await self._get_row(guild_id, user_id)
        return _to_staff(row) if row else None

    async def find_by_roblox_username(self, guild_id: str, roblox_username: str) -> Staff | None:
        """Case-insensitive lookup among active staff."""
        stmt = select(StaffRow).where(
            StaffRow.guild_id == guild_id,
            func.lower(StaffRow.roblox_username) == roblox_username.lower(),
            StaffRow.status == "active",
        )
        result = await self.session.execute(stmt)
        row = result.scalars().first()
        return _to_staff(row) if row else None

    async def find_by_guild(self, guild_id: str, status: str | None = None) -> list[Staff]:
        stmt = select(StaffRow).where(StaffRow.guild_id == guild_id)
        if status is not None:
            stmt = stmt.where(StaffRow.status == status)
        stmt = stmt.order_by(StaffRow.hired_at)
        result = await self.session.execute(stmt)
        return [_to_staff(row) for row in result.scalars().all()]

    async def add(
        self,
        guild_id: str,
        user_id: str,
        role: str,
        hired_by: str,
        roblox_username: str = "",
        promotion_history: list[PromotionRecord] | None = None,
    ) -> Staff:
        """Insert a staff record, or reactivate a previously terminated one."""
        history = [r.model_dump(mode="json") for r in promotion_history or []]
        row = await self._get_row(guild_id, user_id)
        if row is None:
            row = StaffRow(
                guild_id=guild_id,
                user_id=user_id,
                role=role,
                hired_by=hired_by,
                roblox_username=roblox_username,
                promotion_history=history,
            )
            self.session.add(row)
        else:
            row.role = role
            row.status = "active"
            row.hired_by = hired_by
            row.hired_at = _now()
            row.roblox_username = roblox_username
            row.terminated_by = None
            row.terminated_at = None
            row.promotion_history = list(row.promotion_history or []) + history
        await self.session.flush()
        return _to_staff(row)

    async def update_role(
        self, guild_id: str, user_id: str, new_role: str, record: PromotionRecord
    ) -> Staff | None:
        row = await self._get_row(guild_id, user_id)
        if row is None:
            return None
        row.role = new_role
        row.promotion_history = list(row.promotion_history or []) + [
            record.model_dump(mode="json")
        ]
        await self.session.flush()
        return _to_staff(row)

    async def terminate(
        self, guild_id: str, user_id: str, terminated_by: str, record: PromotionRecord
    ) -> Staff | None:
        row = await self._get_row(guild_id, user_id)
        if row is None:
            return None
        row.status = "terminated"
        row.terminated_by = terminated_by
        row.terminated_at = _now()
        row.promotion_history = list(row.promotion_history or []) + [
            record.model_dump(mode="json")
        ]
        await self.session.flush()
        return _to_staff(row)


# --- Cases ---


class CaseCounterRepository(BaseRepository):
    async def get_next_case_number(self, guild_id: str) -> int:
        """Atomically increment and return the guild's case sequence.

        A single upsert statement, so two creations in the same guild can never
        read the same value.
        """
        stmt = (
            sqlite_insert(CaseCounterRow)
            .values(guild_id=guild_id, count=1, updated_at=_now())
            .on_conflict_do_update(
                index_elements=["guild_id"],
                set_={"count": CaseCounterRow.count + 1, "updated_at": _now()},
            )
            .returning(CaseCounterRow.count)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class CaseRepository(BaseRepository):
    async def _get_row(self, case_id: str) -> CaseRow | None:
        stmt = (
            select(CaseRow)
            .where(CaseRow.id == case_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(
        self,
        guild_id: str,
        case_number: str,
        client_id: str,
        client_username: str,
        title: str,
        description: str = "",
        priority: str = "medium",
    ) -> Case:
        row = CaseRow(
            guild_id=guild_id,
            case_number=case_number,
            client_id=client_id,
            client_username=client_username,
            title=title,
            description=description,
            priority=priority,
            status="pending",
            assigned_lawyer_ids=[],
            documents=[],
            notes=[],
        )
        self.session.add(row)
        await self.session.flush()
        return _to_case(row)

    async def find_by_id(self, case_id: str) -> Case | None:
        row = await self._get_row(case_id)
        return _to_case(row) if row else None

    async def find_by_case_number(self, guild_id: str, case_number: str) -> Case | None:
        stmt = select(CaseRow).where(
            CaseRow.guild_id == guild_id, CaseRow.case_number == case_number
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_case(row) if row else None

    async def find_by_client(self, client_id: str) -> list[Case]:
        """All cases for a client, across every guild."""
        stmt = select(CaseRow).where(CaseRow.client_id == client_id).order_by(CaseRow.created_at)
        result = await self.session.execute(stmt)
        return [_to_case(row) for row in result.scalars().all()]

    async def find_by_guild_and_status(self, guild_id: str, status: str) -> list[Case]:
        stmt = (
            select(CaseRow)
            .where(CaseRow.guild_id == guild_id, CaseRow.status == status)
            .order_by(CaseRow.created_at)
        )
        result = await self.session.execute(stmt)
        return [_to_case(row) for row in result.scalars().all()]

    async def find_by_guild(self, guild_id: str) -> list[Case]:
        stmt = select(CaseRow).where(CaseRow.guild_id == guild_id).order_by(CaseRow.created_at)
        result = await self.session.execute(stmt)
        return [_to_case(row) for row in result.scalars().all()]

    async def find_by_lead_attorney(self, guild_id: str, lawyer_id: str) -> list[Case]:
        stmt = select(CaseRow).where(
            CaseRow.guild_id == guild_id, CaseRow.lead_attorney_id == lawyer_id
        )
        result = await self.session.execute(stmt)
        return [_to_case(row) for row in result.scalars().all()]

    async def find_assigned_to_lawyer(self, guild_id: str, lawyer_id: str) -> list[Case]:
        cases = await self.find_by_guild(guild_id)
        return [c for c in cases if lawyer_id in c.assigned_lawyer_ids]

    async def find_cases_by_user_id(self, guild_id: str, user_id: str) -> list[Case]:
        """Cases where the user is the client, the lead, or an assigned lawyer."""
        cases = await self.find_by_guild(guild_id)
        return [
            c
            for c in cases
            if c.client_id == user_id
            or c.lead_attorney_id == user_id
            or user_id in c.assigned_lawyer_ids
        ]

    async def search(
        self,
        guild_id: str,
        status: str | None = None,
        priority: str | None = None,
        lead_attorney_id: str | None = None,
        client_id: str | None = None,
        channel_id: str | None = None,
        limit: int | None = None,
    ) -> list[Case]:
        stmt = select(CaseRow).where(CaseRow.guild_id == guild_id)
        if status is not None:
            stmt = stmt.where(CaseRow.status == status)
        if priority is not None:
            stmt = stmt.where(CaseRow.priority == priority)
        if lead_attorney_id is not None:
            stmt = stmt.where(CaseRow.lead_attorney_id == lead_attorney_id)
        if client_id is not None:
            stmt = stmt.where(CaseRow.client_id == client_id)
        if channel_id is not None:
            stmt = stmt.where(CaseRow.channel_id == channel_id)
        stmt = stmt.order_by(CaseRow.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [_to_case(row) for row in result.scalars().all()]

    async def count_active_for_client(self, guild_id: str, client_id: str) -> int:
        stmt = select(func.count(CaseRow.id)).where(
            CaseRow.guild_id == guild_id,
            CaseRow.client_id == client_id,
            CaseRow.status.in_(ACTIVE_CASE_STATUSES),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_case_stats(self, guild_id: str) -> dict[str, int]:
        stmt = (
            select(CaseRow.status, func.count(CaseRow.id))
            .where(CaseRow.guild_id == guild_id)
            .group_by(CaseRow.status)
        )
        result = await self.session.execute(stmt)
        stats = {"pending": 0, "in-progress": 0, "closed": 0}
        for status, count in result.all():
            stats[status] = count
        stats["total"] = sum(stats.values())
        return stats

    async def conditional_update(
        self, case_id: str, expected_status: str, values: dict[str, Any]
    ) -> Case | None:
        """Apply *values* only if the case is still in *expected_status*.

        Returns None when the case is gone or its status moved on. This is the
        compare-and-swap every status transition goes through; keep it the first
        write in its transaction.
        """
        stmt = (
            update(CaseRow)
            .where(CaseRow.id == case_id, CaseRow.status == expected_status)
            .values(**values, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            return None
        return await self.find_by_id(case_id)

    async def update(self, case_id: str, values: dict[str, Any]) -> Case | None:
        row = await self._get_row(case_id)
        if row is None:
            return None
        for key, value in values.items():
            setattr(row, key, value)
        await self.session.flush()
        return _to_case(row)

    async def assign_lawyer(self, case_id: str, lawyer_id: str) -> Case | None:
        """Add a lawyer to the case. Already assigned is a no-op.

        The first lawyer assigned to a case without a lead becomes the lead.
        """
        row = await self._get_row(case_id)
        if row is None:
            return None
        assigned = list(row.assigned_lawyer_ids or [])
        if lawyer_id in assigned:
            return _to_case(row)
        assigned.append(lawyer_id)
        row.assigned_lawyer_ids = assigned
        if row.lead_attorney_id is None:
            row.lead_attorney_id = lawyer_id
        await self.session.flush()
        return _to_case(row)

    async def unassign_lawyer(self, case_id: str, lawyer_id: str) -> Case | None:
        """Remove a lawyer. Removing the lead promotes the next assigned lawyer."""
        row = await self._get_row(case_id)
        if row is None:
            return None
        assigned = [lid for lid in row.assigned_lawyer_ids or [] if lid != lawyer_id]
        row.assigned_lawyer_ids = assigned
        if row.lead_attorney_id == lawyer_id:
            row.lead_attorney_id = assigned[0] if assigned else None
        await self.session.flush()
        return _to_case(row)

    async def set_lead_attorney(self, case_id: str, lawyer_id: str) -> Case | None:
        row = await self._get_row(case_id)
        if row is None:
            return None
        assigned = list(row.assigned_lawyer_ids or [])
        if lawyer_id not in assigned:
            assigned.append(lawyer_id)
            row.assigned_lawyer_ids = assigned
        row.lead_attorney_id = lawyer_id
        await self.session.flush()
        return _to_case(row)

    async def add_document(
        self, case_id: str, title: str, content: str, created_by: str
    ) -> Case | None:
        row = await self._get_row(case_id)
        if row is None:
            return None
        document = CaseDocument(
            id=str(uuid.uuid4()), title=title, content=content, created_by=created_by
        )
        row.documents = list(row.documents or []) + [document.model_dump(mode="json")]
        await self.session.flush()
        return _to_case(row)

    async def add_note(
        self, case_id: str, content: str, created_by: str, is_internal: bool = False
    ) -> Case | None:
        row = await self._get_row(case_id)
        if row is None:
            return None
        note = CaseNote(
            id=str(uuid.uuid4()), content=content, created_by=created_by, is_internal=is_internal
        )
        row.notes = list(row.notes or []) + [note.model_dump(mode="json")]
        await self.session.flush()
        return _to_case(row)

    async def delete(self, case_id: str) -> bool:
        row = await self._get_row(case_id)
        if row is None:
            return False
        await self.session.delete(row)
        await self.session.flush()
        return True


# --- Audit log ---


class AuditLogRepository(BaseRepository):
    async def log_action(self, entry: AuditLogEntry) -> str:
        row = AuditLogRow(
            guild_id=entry.guild_id,
            action=entry.action,
            actor_id=entry.actor_id,
            target_id=entry.target_id,
            details=entry.model_dump(mode="json")["details"],
            timestamp=entry.timestamp,
        )
        self.session.add(row)
        await self.session.flush()
        return row.id

    async def find_by_guild(
        self, guild_id: str, action: str | None = None, limit: int = 50
    ) -> list[AuditLogEntry]:
        stmt = select(AuditLogRow).where(AuditLogRow.guild_id == guild_id)
        if action is not None:
            stmt = stmt.where(AuditLogRow.action == action)
        stmt = stmt.order_by(AuditLogRow.timestamp.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [
            AuditLogEntry(
                guild_id=row.guild_id,
                action=row.action,
                actor_id=row.actor_id,
                target_id=row.target_id,
                details=row.details or {},
                timestamp=_as_utc(row.timestamp),
            )
            for row in result.scalars().all()
        ]


# --- Reminders ---


class ReminderRepository(BaseRepository):
    async def add(
        self,
        guild_id: str,
        user_id: str,
        username: str,
        message: str,
        scheduled_for: datetime,
        channel_id: str | None = None,
        case_id: str | None = None,
    ) -> Reminder:
        row = ReminderRow(
            guild_id=guild_id,
            user_id=user_id,
            username=username,
            message=message,
            scheduled_for=scheduled_for,
            channel_id=channel_id,
            case_id=case_id,
            is_active=True,
        )
        self.session.add(row)
        await self.session.flush()
        return _to_reminder(row)

    async def find_by_id(self, reminder_id: str) -> Reminder | None:
        row = await self.session.get(ReminderRow, reminder_id)
        return _to_reminder(row) if row else None

    async def find_by_guild(self, guild_id: str) -> list[Reminder]:
        stmt = select(ReminderRow).where(ReminderRow.guild_id == guild_id)
        result = await self.session.execute(stmt)
        return [_to_reminder(row) for row in result.scalars().all()]

    async def get_user_reminders(
        self, guild_id: str, user_id: str, active_only: bool = True
    ) -> list[Reminder]:
        stmt = select(ReminderRow).where(
            ReminderRow.guild_id == guild_id, ReminderRow.user_id == user_id
        )
        if active_only:
            stmt = stmt.where(ReminderRow.is_active.is_(True))
        stmt = stmt.order_by(ReminderRow.scheduled_for)
        result = await self.session.execute(stmt)
        return [_to_reminder(row) for row in result.scalars().all()]

    async def get_case_reminders(self, case_id: str, active_only: bool = True) -> list[Reminder]:
        stmt = select(ReminderRow).where(ReminderRow.case_id == case_id)
        if active_only:
            stmt = stmt.where(ReminderRow.is_active.is_(True))
        result = await self.session.execute(stmt)
        return [_to_reminder(row) for row in result.scalars().all()]

    async def get_due_reminders(self, now: datetime) -> list[Reminder]:
        # Stored naive UTC; compare against a naive UTC bound.
        bound = now.astimezone(UTC).replace(tzinfo=None) if now.tzinfo else now
        stmt = (
            select(ReminderRow)
            .where(ReminderRow.is_active.is_(True), ReminderRow.scheduled_for <= bound)
            .order_by(ReminderRow.scheduled_for)
        )
        result = await self.session.execute(stmt)
        return [_to_reminder(row) for row in result.scalars().all()]

    async def cancel(self, reminder_id: str) -> Reminder | None:
        row = await self.session.get(ReminderRow, reminder_id)
        if row is None:
            return None
        row.is_active = False
        await self.session.flush()
        return _to_reminder(row)

    async def mark_delivered(self, reminder_id: str) -> Reminder | None:
        row = await self.session.get(ReminderRow, reminder_id)
        if row is None:
            return None
        row.is_active = False
        row.delivered_at = _now()
        await self.session.flush()
        return _to_reminder(row)


# --- Retainers ---


class RetainerRepository(BaseRepository):
    async def add(
        self,
        guild_id: str,
        client_id: str,
        lawyer_id: str,
        agreement_template: str = STANDARD_RETAINER_TEMPLATE,
    ) -> Retainer:
        row = RetainerRow(
            guild_id=guild_id,
            client_id=client_id,
            lawyer_id=lawyer_id,
            status="pending",
            agreement_template=agreement_template,
        )
        self.session.add(row)
        await self.session.flush()
        return _to_retainer(row)

    async def find_by_id(self, retainer_id: str) -> Retainer | None:
        stmt = (
            select(RetainerRow)
            .where(RetainerRow.id == retainer_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_retainer(row) if row else None

    async def find_by_guild(self, guild_id: str, status: str | None = None) -> list[Retainer]:
        stmt = select(RetainerRow).where(RetainerRow.guild_id == guild_id)
        if status is not None:
            stmt = stmt.where(RetainerRow.status == status)
        stmt = stmt.order_by(RetainerRow.created_at.desc())
        result = await self.session.execute(stmt)
        return [_to_retainer(row) for row in result.scalars().all()]

    async def find_by_client(
        self, guild_id: str, client_id: str, status: str | None = None
    ) -> list[Retainer]:
        stmt = select(RetainerRow).where(
            RetainerRow.guild_id == guild_id, RetainerRow.client_id == client_id
        )
        if status is not None:
            stmt = stmt.where(RetainerRow.status == status)
        stmt = stmt.order_by(RetainerRow.created_at.desc())
        result = await self.session.execute(stmt)
        return [_to_retainer(row) for row in result.scalars().all()]

    async def find_active_retainers(self, guild_id: str) -> list[Retainer]:
        return await self.find_by_guild(guild_id, status="signed")

    async def find_pending_retainers(self, guild_id: str) -> list[Retainer]:
        return await self.find_by_guild(guild_id, status="pending")

    async def has_pending_retainer(self, guild_id: str, client_id: str) -> bool:
        return bool(await self.find_by_client(guild_id, client_id, status="pending"))

    async def has_active_retainer(self, guild_id: str, client_id: str) -> bool:
        return bool(await self.find_by_client(guild_id, client_id, status="signed"))

    async def find_client_retainers(
        self, guild_id: str, client_id: str, include_all: bool = False
    ) -> list[Retainer]:
        """Signed retainers only, unless *include_all*."""
        status = None if include_all else "signed"
        return await self.find_by_client(guild_id, client_id, status=status)

    async def conditional_update(
        self, retainer_id: str, expected_status: str, values: dict[str, Any]
    ) -> Retainer | None:
        """Apply *values* only if the retainer is still in *expected_status*."""
        stmt = (
            update(RetainerRow)
            .where(RetainerRow.id == retainer_id, RetainerRow.status == expected_status)
            .values(**values, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            return None
        return await self.find_by_id(retainer_id)

    async def cancel_pending_retainers(self, guild_id: str, client_id: str) -> int:
        stmt = (
            update(RetainerRow)
            .where(
                RetainerRow.guild_id == guild_id,
                RetainerRow.client_id == client_id,
                RetainerRow.status == "pending",
            )
            .values(status="cancelled", updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount)

    async def get_retainer_stats(self, guild_id: str) -> RetainerStats:
        stmt = (
            select(RetainerRow.status, func.count(RetainerRow.id))
            .where(RetainerRow.guild_id == guild_id)
            .group_by(RetainerRow.status)
        )
        result = await self.session.execute(stmt)
        counts = dict.fromkeys(RETAINER_STATUSES, 0)
        for status, count in result.all():
            counts[status] = count
        return RetainerStats(
            total=sum(counts.values()),
            active=counts["signed"],
            pending=counts["pending"],
            cancelled=counts["cancelled"],
        )


# --- Feedback ---

_FEEDBACK_SORT_COLUMNS = {
    "created_at": FeedbackRow.created_at,
    "rating": FeedbackRow.rating,
    "submitter_username": FeedbackRow.submitter_username,
    "target_staff_username": FeedbackRow.target_staff_username,
}


def _naive_utc(value: datetime) -> datetime:
    return value.astimezone(UTC).replace(tzinfo=None) if value.tzinfo else value


class FeedbackRepository(BaseRepository):
    async def add(self, submission: FeedbackSubmission) -> Feedback:
        row = FeedbackRow(
            guild_id=submission.guild_id,
            submitter_id=submission.submitter_id,
            submitter_username=submission.submitter_username,
            target_staff_id=submission.target_staff_id,
            target_staff_username=submission.target_staff_username,
            rating=submission.rating,
            comment=submission.comment,
            is_for_firm=submission.target_staff_id is None,
        )
        self.session.add(row)
        await self.session.flush()
        return _to_feedback(row)

    async def find_by_id(self, feedback_id: str) -> Feedback | None:
        row = await self.session.get(FeedbackRow, feedback_id)
        return _to_feedback(row) if row else None

    def _filtered(self, filters: FeedbackSearchFilters) -> Select:
        stmt = select(FeedbackRow).where(FeedbackRow.guild_id == filters.guild_id)
        if filters.submitter_id is not None:
            stmt = stmt.where(FeedbackRow.submitter_id == filters.submitter_id)
        if filters.target_staff_id is not None:
            stmt = stmt.where(FeedbackRow.target_staff_id == filters.target_staff_id)
        if filters.rating is not None:
            stmt = stmt.where(FeedbackRow.rating == filters.rating)
        if filters.min_rating is not None:
            stmt = stmt.where(FeedbackRow.rating >= filters.min_rating)
        if filters.max_rating is not None:
            stmt = stmt.where(FeedbackRow.rating <= filters.max_rating)
        if filters.is_for_firm is not None:
            stmt = stmt.where(FeedbackRow.is_for_firm.is_(filters.is_for_firm))
        if filters.start_date is not None:
            stmt = stmt.where(FeedbackRow.created_at >= _naive_utc(filters.start_date))
        if filters.end_date is not None:
            stmt = stmt.where(FeedbackRow.created_at < _naive_utc(filters.end_date))
        if filters.search_text:
            stmt = stmt.where(FeedbackRow.comment.ilike(f"%{filters.search_text}%"))
        return stmt

    async def search(
        self,
        filters: FeedbackSearchFilters,
        sort_field: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Feedback]:
        column = _FEEDBACK_SORT_COLUMNS.get(sort_field)
        if column is None:
            raise ValueError(f"Cannot sort feedback by {sort_field}")
        stmt = self._filtered(filters).order_by(column.desc() if descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [_to_feedback(row) for row in result.scalars().all()]

    async def count(self, filters: FeedbackSearchFilters) -> int:
        stmt = select(func.count()).select_from(self._filtered(filters).subquery())
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def find_by_guild(self, guild_id: str) -> list[Feedback]:
        return await self.search(FeedbackSearchFilters(guild_id=guild_id))

    async def find_for_staff(self, guild_id: str, staff_id: str) -> list[Feedback]:
        return await self.search(FeedbackSearchFilters(guild_id=guild_id, target_staff_id=staff_id))

    async def get_recent_feedback(self, guild_id: str, limit: int = 10) -> list[Feedback]:
        return await self.search(FeedbackSearchFilters(guild_id=guild_id), limit=limit)
