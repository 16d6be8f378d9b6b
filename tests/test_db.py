"""Tests for database layer: engine, ORM tables, repository round-trips."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from anarchy.db.engine import Database, DatabaseNotConnectedError
from anarchy.db.repository import (
    AuditLogRepository,
    CaseCounterRepository,
    CaseRepository,
    GuildConfigRepository,
    ReminderRepository,
    StaffRepository,
)
from anarchy.models.audit import AuditLogEntry
from anarchy.models.staff import PromotionRecord

GUILD = "1000"


async def _add_case(repo: CaseRepository, number: str = "2026-0001-client", **kwargs) -> str:
    case = await repo.add(
        guild_id=kwargs.pop("guild_id", GUILD),
        case_number=number,
        client_id=kwargs.pop("client_id", "c1"),
        client_username="client",
        title=kwargs.pop("title", "Contract dispute"),
        **kwargs,
    )
    return case.id


class TestTableCreation:
    async def test_all_tables_created(self, engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda c: inspect(c).get_table_names())
        expected = {
            "guild_configs",
            "staff",
            "cases",
            "case_counters",
            "audit_logs",
            "reminders",
            "retainers",
            "feedback",
        }
        assert expected.issubset(set(tables))


class TestDatabaseHandle:
    def test_engine_before_connect_raises(self) -> None:
        database = Database("sqlite+aiosqlite:///:memory:")
        assert not database.is_connected
        with pytest.raises(DatabaseNotConnectedError):
            _ = database.engine

    async def test_connect_and_disconnect(self) -> None:
        database = Database("sqlite+aiosqlite:///:memory:")
        engine = await database.connect()
        assert database.is_connected
        assert await database.connect() is engine
        await database.disconnect()
        assert not database.is_connected


class TestGuildConfigRepository:
    async def test_ensure_creates_empty_config(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        assert await repo.get_config(GUILD) is None
        config = await repo.ensure_guild_config(GUILD)
        assert config.guild_id == GUILD
        assert config.admin_users == []
        assert config.roles_for("case") == []

    async def test_ensure_is_idempotent(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        await repo.add_admin_user(GUILD, "5")
        config = await repo.ensure_guild_config(GUILD)
        assert config.admin_users == ["5"]

    async def test_set_permission_roles_dedupes(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        config = await repo.set_permission_roles(GUILD, "case", ["1", "2", "1"])
        assert config.roles_for("case") == ["1", "2"]

    async def test_set_permission_roles_accepts_legacy_name(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        config = await repo.set_permission_roles(GUILD, "hr", ["7"])
        assert config.roles_for("senior-staff") == ["7"]

    async def test_unknown_permission_rejected(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        with pytest.raises(ValueError, match="Unknown permission"):
            await repo.set_permission_roles(GUILD, "superuser", ["1"])

    async def test_admin_lists(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        await repo.add_admin_user(GUILD, "5")
        await repo.add_admin_user(GUILD, "5")
        await repo.add_admin_role(GUILD, "r1")
        config = await repo.remove_admin_user(GUILD, "5")
        assert config.admin_users == []
        assert config.admin_roles == ["r1"]

    async def test_categories(self, session: AsyncSession) -> None:
        repo = GuildConfigRepository(session)
        await repo.set_case_review_category(GUILD, "11")
        config = await repo.set_case_archive_category(GUILD, "22")
        assert config.case_review_category_id == "11"
        assert config.case_archive_category_id == "22"


class TestStaffRepository:
    async def test_add_and_find(self, session: AsyncSession) -> None:
        repo = StaffRepository(session)
        staff = await repo.add(GUILD, "u1", "Paralegal", hired_by="boss", roblox_username="Runner")
        found = await repo.find_by_user_id(GUILD, "u1")
        assert found is not None
        assert found.id == staff.id
        assert found.hired_at.tzinfo is not None

    async def test_count_by_role_ignores_terminated(self, session: AsyncSession) -> None:
        repo = StaffRepository(session)
        await repo.add(GUILD, "u1", "Paralegal", hired_by="boss")
        await repo.add(GUILD, "u2", "Paralegal", hired_by="boss")
        await repo.terminate(
            GUILD,
            "u2",
            "boss",
            PromotionRecord(
                from_role="Paralegal", to_role="Paralegal", promoted_by="boss", action_type="fire"
            ),
        )
        assert await repo.get_staff_count_by_role(GUILD, "Paralegal") == 1

    async def test_roblox_lookup_is_case_insensitive(self, session: AsyncSession) -> None:
        repo = StaffRepository(session)
        await repo.add(GUILD, "u1", "Paralegal", hired_by="boss", roblox_username="Runner")
        found = await repo.find_by_roblox_username(GUILD, "runner")
        assert found is not None and found.user_id == "u1"

    async def test_rehire_reactivates_record(self, session: AsyncSession) -> None:
        repo = StaffRepository(session)
        first = await repo.add(GUILD, "u1", "Paralegal", hired_by="boss")
        await repo.terminate(
            GUILD,
            "u1",
            "boss",
            PromotionRecord(
                from_role="Paralegal", to_role="Paralegal", promoted_by="boss", action_type="fire"
            ),
        )
        again = await repo.add(GUILD, "u1", "Junior Associate", hired_by="boss2")
        assert again.id == first.id
        assert again.status == "active"
        assert again.terminated_by is None
        assert again.role == "Junior Associate"

    async def test_update_role_appends_history(self, session: AsyncSession) -> None:
        repo = StaffRepository(session)
        await repo.add(GUILD, "u1", "Paralegal", hired_by="boss")
        updated = await repo.update_role(
            GUILD,
            "u1",
            "Junior Associate",
            PromotionRecord(
                from_role="Paralegal",
                to_role="Junior Associate",
                promoted_by="boss",
                action_type="promotion",
            ),
        )
        assert updated is not None
        assert updated.role == "Junior Associate"
        assert [r.action_type for r in updated.promotion_history] == ["promotion"]


class TestCaseCounterRepository:
    async def test_sequence_per_guild(self, session: AsyncSession) -> None:
        repo = CaseCounterRepository(session)
        assert await repo.get_next_case_number(GUILD) == 1
        assert await repo.get_next_case_number(GUILD) == 2
        assert await repo.get_next_case_number("other") == 1


class TestCaseRepository:
    async def test_add_defaults(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        case = await repo.find_by_id(case_id)
        assert case is not None
        assert case.status == "pending"
        assert case.priority == "medium"
        assert case.assigned_lawyer_ids == []

    async def test_find_by_case_number_is_guild_scoped(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        await _add_case(repo)
        assert await repo.find_by_case_number(GUILD, "2026-0001-client") is not None
        assert await repo.find_by_case_number("other", "2026-0001-client") is None

    async def test_conditional_update_matches_status(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        updated = await repo.conditional_update(case_id, "pending", {"status": "in-progress"})
        assert updated is not None
        assert updated.status == "in-progress"

    async def test_conditional_update_stale_status_returns_none(
        self, session: AsyncSession
    ) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        await repo.conditional_update(case_id, "pending", {"status": "in-progress"})
        assert await repo.conditional_update(case_id, "pending", {"status": "closed"}) is None
        case = await repo.find_by_id(case_id)
        assert case is not None and case.status == "in-progress"

    async def test_conditional_update_missing_case(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        assert await repo.conditional_update("nope", "pending", {"status": "closed"}) is None

    async def test_assign_first_lawyer_becomes_lead(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        case = await repo.assign_lawyer(case_id, "L1")
        assert case is not None
        assert case.lead_attorney_id == "L1"
        case = await repo.assign_lawyer(case_id, "L2")
        assert case is not None
        assert case.assigned_lawyer_ids == ["L1", "L2"]
        assert case.lead_attorney_id == "L1"

    async def test_assign_is_idempotent(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        await repo.assign_lawyer(case_id, "L1")
        case = await repo.assign_lawyer(case_id, "L1")
        assert case is not None
        assert case.assigned_lawyer_ids == ["L1"]

    async def test_unassign_lead_promotes_next(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        await repo.assign_lawyer(case_id, "L1")
        await repo.assign_lawyer(case_id, "L2")
        case = await repo.unassign_lawyer(case_id, "L1")
        assert case is not None
        assert case.assigned_lawyer_ids == ["L2"]
        assert case.lead_attorney_id == "L2"

    async def test_set_lead_adds_to_assigned(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        case = await repo.set_lead_attorney(case_id, "L9")
        assert case is not None
        assert case.lead_attorney_id == "L9"
        assert "L9" in case.assigned_lawyer_ids

    async def test_search_filters(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        await _add_case(repo, "2026-0001-a", priority="high", client_id="a")
        second = await _add_case(repo, "2026-0002-b", priority="low", client_id="b")
        await repo.update(second, {"channel_id": "chan"})
        assert [c.case_number for c in await repo.search(GUILD, priority="high")] == [
            "2026-0001-a"
        ]
        assert [c.id for c in await repo.search(GUILD, channel_id="chan")] == [second]
        assert len(await repo.search(GUILD, limit=1)) == 1
        assert await repo.search("other") == []

    async def test_count_active_for_client(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        first = await _add_case(repo, "2026-0001-a")
        await _add_case(repo, "2026-0002-a")
        await repo.update(first, {"status": "closed"})
        assert await repo.count_active_for_client(GUILD, "c1") == 1

    async def test_case_stats(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        first = await _add_case(repo, "2026-0001-a")
        await _add_case(repo, "2026-0002-a")
        await repo.update(first, {"status": "closed"})
        stats = await repo.get_case_stats(GUILD)
        assert stats == {"pending": 1, "in-progress": 0, "closed": 1, "total": 2}

    async def test_notes_and_documents(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        await repo.add_note(case_id, "Called the client", "L1", is_internal=True)
        case = await repo.add_document(case_id, "Contract", "Terms...", "L1")
        assert case is not None
        assert case.notes[0].is_internal
        assert case.documents[0].title == "Contract"

    async def test_find_cases_by_user_id(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo, client_id="client-x")
        await repo.assign_lawyer(case_id, "L1")
        assert [c.id for c in await repo.find_cases_by_user_id(GUILD, "client-x")] == [case_id]
        assert [c.id for c in await repo.find_cases_by_user_id(GUILD, "L1")] == [case_id]
        assert await repo.find_cases_by_user_id(GUILD, "stranger") == []

    async def test_delete(self, session: AsyncSession) -> None:
        repo = CaseRepository(session)
        case_id = await _add_case(repo)
        assert await repo.delete(case_id)
        assert await repo.find_by_id(case_id) is None
        assert not await repo.delete(case_id)


class TestAuditLogRepository:
    async def test_log_and_filter(self, session: AsyncSession) -> None:
        repo = AuditLogRepository(session)
        await repo.log_action(AuditLogEntry(guild_id=GUILD, action="staff_hired", actor_id="1"))
        await repo.log_action(
            AuditLogEntry(guild_id=GUILD, action="case_created", actor_id="1", details={"n": 1})
        )
        entries = await repo.find_by_guild(GUILD, action="case_created")
        assert len(entries) == 1
        assert entries[0].details == {"n": 1}
        assert len(await repo.find_by_guild(GUILD)) == 2


class TestReminderRepository:
    async def test_due_reminders(self, session: AsyncSession) -> None:
        repo = ReminderRepository(session)
        now = datetime.now(UTC)
        due = await repo.add(GUILD, "u1", "user", "past", now - timedelta(minutes=1))
        await repo.add(GUILD, "u1", "user", "future", now + timedelta(hours=1))
        found = await repo.get_due_reminders(now)
        assert [r.id for r in found] == [due.id]

    async def test_mark_delivered_deactivates(self, session: AsyncSession) -> None:
        repo = ReminderRepository(session)
        now = datetime.now(UTC)
        reminder = await repo.add(GUILD, "u1", "user", "past", now - timedelta(minutes=1))
        delivered = await repo.mark_delivered(reminder.id)
        assert delivered is not None
        assert not delivered.is_active
        assert delivered.delivered_at is not None
        assert await repo.get_due_reminders(now) == []

    async def test_user_and_case_reminders(self, session: AsyncSession) -> None:
        repo = ReminderRepository(session)
        soon = datetime.now(UTC) + timedelta(hours=1)
        first = await repo.add(GUILD, "u1", "user", "a", soon, case_id="case-1")
        await repo.add(GUILD, "u1", "user", "b", soon)
        await repo.cancel(first.id)
        assert [r.message for r in await repo.get_user_reminders(GUILD, "u1")] == ["b"]
        assert len(await repo.get_user_reminders(GUILD, "u1", active_only=False)) == 2
        assert await repo.get_case_reminders("case-1") == []
