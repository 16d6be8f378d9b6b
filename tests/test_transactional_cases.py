"""Tests for unit-of-work case operations and their compensations."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from anarchy.core.audit import AuditLogger
from anarchy.core.business_rules import BusinessRuleValidationService
from anarchy.core.cases import CaseError
from anarchy.core.permissions import PermissionContext, PermissionDeniedError, PermissionService
from anarchy.core.rollback import RollbackService
from anarchy.core.transactional_cases import CREATION_FAILED_NOTICE, TransactionalCaseService
from anarchy.db.repository import (
    AuditLogRepository,
    CaseCounterRepository,
    CaseRepository,
    GuildConfigRepository,
    StaffRepository,
)
from anarchy.db.unit_of_work import UnitOfWorkFactory
from anarchy.models.case import Case, CaseCreationRequest, CaseUpdateRequest


class FakeDiscord:
    """Records channel and DM side effects."""

    def __init__(self, channel_id: str | None = "chan-1", fail_create: bool = False) -> None:
        self.channel_id = channel_id
        self.fail_create = fail_create
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.notified: list[tuple[str, str]] = []

    async def create_channel(self, case: Case) -> str | None:
        if self.fail_create:
            raise RuntimeError("missing permissions")
        self.created.append(case.case_number)
        return self.channel_id

    async def delete_channel(self, channel_id: str) -> None:
        self.deleted.append(channel_id)

    async def notify(self, user_id: str, message: str) -> None:
        self.notified.append((user_id, message))


@pytest.fixture
def discord_fake() -> FakeDiscord:
    return FakeDiscord()


def _build(
    session: AsyncSession, engine: AsyncEngine, fake: FakeDiscord
) -> TransactionalCaseService:
    config_repo = GuildConfigRepository(session)
    permissions = PermissionService(config_repo)
    validation = BusinessRuleValidationService(
        config_repo, StaffRepository(session), CaseRepository(session), permissions
    )
    return TransactionalCaseService(
        UnitOfWorkFactory(engine),
        RollbackService(max_retries=2, base_delay=0, sleep=AsyncMock()),
        permissions,
        validation,
        audit=AuditLogger(engine),
        create_channel=fake.create_channel,
        delete_channel=fake.delete_channel,
        notify_user=fake.notify,
    )


def _request(guild_id: str, client_id: str = "client-1") -> CaseCreationRequest:
    return CaseCreationRequest(
        guild_id=guild_id, client_id=client_id, client_username="client", title="Eviction"
    )


class TestCreateCase:
    async def test_creates_case_channel_and_audit(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        service = _build(session, engine, discord_fake)
        case = await service.create_case(case_worker, _request(configured_guild))
        assert case.channel_id == "chan-1"
        assert discord_fake.created == [case.case_number]
        assert "-0001-client" in case.case_number

        entries = await AuditLogRepository(session).find_by_guild(
            configured_guild, action="case_created"
        )
        assert entries[0].details["case_id"] == case.id
        transaction_id = entries[0].details["transaction_id"]
        assert service.rollback_service.get_compensation_actions(transaction_id) == []

    async def test_channel_failure_does_not_block_creation(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        fake = FakeDiscord(fail_create=True)
        case = await _build(session, engine, fake).create_case(
            case_worker, _request(configured_guild)
        )
        assert case.channel_id is None
        assert await CaseRepository(session).find_by_id(case.id) is not None
        assert fake.notified == []

    async def test_counter_failure_leaves_no_case(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        service = _build(session, engine, discord_fake)
        with (
            patch.object(
                CaseCounterRepository,
                "get_next_case_number",
                AsyncMock(side_effect=RuntimeError("counter unavailable")),
            ),
            patch.object(CaseRepository, "add", AsyncMock()) as add,
            pytest.raises(CaseError, match="Failed to create case"),
        ):
            await service.create_case(case_worker, _request(configured_guild))

        add.assert_not_awaited()
        assert await CaseRepository(session).find_by_guild(configured_guild) == []
        assert discord_fake.created == []
        assert discord_fake.deleted == []
        assert discord_fake.notified == [("client-1", CREATION_FAILED_NOTICE)]
        rolled_back = await AuditLogRepository(session).find_by_guild(
            configured_guild, action="transaction_rolled_back"
        )
        assert rolled_back[0].details["operation"] == "create_case"

    async def test_failure_after_channel_created_deletes_channel(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        service = _build(session, engine, discord_fake)
        with (
            patch.object(CaseRepository, "update", AsyncMock(side_effect=RuntimeError("disk"))),
            pytest.raises(CaseError),
        ):
            await service.create_case(case_worker, _request(configured_guild))

        assert discord_fake.deleted == ["chan-1"]
        assert await CaseRepository(session).find_by_guild(configured_guild) == []
        # The failed sequence number was rolled back with the case.
        next_number = await CaseCounterRepository(session).get_next_case_number(configured_guild)
        assert next_number == 1

    async def test_permission_denied_before_transaction(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        outsider: PermissionContext,
    ) -> None:
        service = _build(session, engine, discord_fake)
        with pytest.raises(PermissionDeniedError):
            await service.create_case(outsider, _request(configured_guild))
        assert discord_fake.notified == []

    async def test_case_limit_denied_before_transaction(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        repo = CaseRepository(session)
        for n in range(5):
            await repo.add(configured_guild, f"2026-{n:04d}-x", "client-1", "client", "t")
        await session.commit()
        service = _build(session, engine, discord_fake)
        with pytest.raises(CaseError, match="maximum active case limit"):
            await service.create_case(case_worker, _request(configured_guild))
        assert discord_fake.notified == []


class TestAssignLawyers:
    async def _case(self, session: AsyncSession, guild_id: str) -> str:
        case = await CaseRepository(session).add(guild_id, "2026-0001-c", "c1", "c", "t")
        await StaffRepository(session).add(guild_id, "L1", "Junior Associate", "boss")
        await StaffRepository(session).add(guild_id, "P1", "Paralegal", "boss")
        await session.commit()
        return case.id

    async def test_assigns_all_and_lead(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        case_id = await self._case(session, configured_guild)
        service = _build(session, engine, discord_fake)
        updated = await service.assign_lawyer_transactional(
            case_worker, case_id, ["L1"], lead_attorney_id="L1"
        )
        assert updated.assigned_lawyer_ids == ["L1"]
        assert updated.lead_attorney_id == "L1"

    async def test_paralegal_rejected(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        case_id = await self._case(session, configured_guild)
        service = _build(session, engine, discord_fake)
        with pytest.raises(CaseError, match="User P1 cannot be assigned to case"):
            await service.assign_lawyer_transactional(case_worker, case_id, ["L1", "P1"])
        case = await CaseRepository(session).find_by_id(case_id)
        assert case is not None and case.assigned_lawyer_ids == []

    async def test_skip_lawyer_validation(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        case_id = await self._case(session, configured_guild)
        service = _build(session, engine, discord_fake)
        updated = await service.assign_lawyer_transactional(
            case_worker, case_id, ["P1"], validate_lawyers=False
        )
        assert updated.assigned_lawyer_ids == ["P1"]

    async def test_missing_case_rolls_back(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        await self._case(session, configured_guild)
        service = _build(session, engine, discord_fake)
        with pytest.raises(CaseError, match="Failed to assign lawyer to case"):
            await service.assign_lawyer_transactional(case_worker, "missing", ["L1"])


class TestUpdateCase:
    async def test_update_records_before_and_after(
        self,
        session: AsyncSession,
        engine: AsyncEngine,
        discord_fake: FakeDiscord,
        configured_guild: str,
        case_worker: PermissionContext,
    ) -> None:
        case = await CaseRepository(session).add(configured_guild, "2026-0001-c", "c1", "c", "t")
        await session.commit()
        service = _build(session, engine, discord_fake)
        updated = await service.update_case_transactional(
            case_worker, case.id, CaseUpdateRequest(priority="high", title="New title")
        )
        assert updated.priority == "high"
        entries = await AuditLogRepository(session).find_by_guild(
            configured_guild, action="case_updated"
        )
        assert entries[0].details["before"] == {"priority": "medium", "title": "t"}
        assert entries[0].details["after"] == {"priority": "high", "title": "New title"}
