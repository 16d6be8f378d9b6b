"""Tests for business-rule validation: role caps, client case load, staff status."""

from unittest.mock import AsyncMock

from sqlalchemy.ext.asyncio import AsyncSession

from anarchy.core.business_rules import BusinessRuleValidationService, fold_results
from anarchy.core.permissions import PermissionContext, PermissionService
from anarchy.db.repository import CaseRepository, GuildConfigRepository, StaffRepository
from anarchy.models.validation import ValidationResult


def _service(session: AsyncSession) -> BusinessRuleValidationService:
    config_repo = GuildConfigRepository(session)
    return BusinessRuleValidationService(
        config_repo,
        StaffRepository(session),
        CaseRepository(session),
        PermissionService(config_repo),
    )


async def _hire(session: AsyncSession, guild_id: str, user_id: str, role: str) -> None:
    await StaffRepository(session).add(guild_id, user_id, role, hired_by="1")


async def _open_cases(session: AsyncSession, guild_id: str, client_id: str, count: int) -> None:
    repo = CaseRepository(session)
    for n in range(count):
        await repo.add(guild_id, f"2026-{n:04d}-{client_id}", client_id, "client", f"Case {n}")


class TestRoleLimit:
    async def test_under_cap(
        self, session: AsyncSession, configured_guild: str, senior_staff: PermissionContext
    ) -> None:
        result = await _service(session).validate_role_limit(senior_staff, "Senior Partner")
        assert result.valid
        assert result.current_count == 0
        assert result.max_count == 3

    async def test_cap_reached(
        self, session: AsyncSession, configured_guild: str, senior_staff: PermissionContext
    ) -> None:
        await _hire(session, configured_guild, "mp", "Managing Partner")
        result = await _service(session).validate_role_limit(senior_staff, "Managing Partner")
        assert not result.valid
        assert not result.bypass_available
        assert result.errors == [
            "Cannot hire Managing Partner. Maximum limit of 1 reached (current: 1)"
        ]

    async def test_owner_offered_bypass_with_true_counts(
        self, session: AsyncSession, configured_guild: str, owner: PermissionContext
    ) -> None:
        await _hire(session, configured_guild, "mp", "Managing Partner")
        result = await _service(session).validate_role_limit(owner, "Managing Partner")
        assert not result.valid
        assert result.bypass_available
        assert result.bypass_type == "guild-owner"
        assert result.current_count == 1
        assert result.max_count == 1

    async def test_unknown_role_has_zero_cap(
        self, session: AsyncSession, configured_guild: str, senior_staff: PermissionContext
    ) -> None:
        result = await _service(session).validate_role_limit(senior_staff, "Janitor")
        assert not result.valid
        assert result.max_count == 0

    async def test_count_failure_fails_closed(self, senior_staff: PermissionContext) -> None:
        staff_repo = AsyncMock()
        staff_repo.get_staff_count_by_role.side_effect = RuntimeError("db down")
        service = BusinessRuleValidationService(AsyncMock(), staff_repo, AsyncMock(), AsyncMock())
        result = await service.validate_role_limit(senior_staff, "Paralegal")
        assert not result.valid
        assert result.errors == ["Failed to validate role limits"]


class TestClientCaseLimit:
    async def test_under_warning_threshold(
        self, session: AsyncSession, configured_guild: str
    ) -> None:
        await _open_cases(session, configured_guild, "c1", 2)
        result = await _service(session).validate_client_case_limit("c1", configured_guild)
        assert result.valid
        assert result.warnings == []

    async def test_warning_at_three(self, session: AsyncSession, configured_guild: str) -> None:
        await _open_cases(session, configured_guild, "c1", 3)
        result = await _service(session).validate_client_case_limit("c1", configured_guild)
        assert result.valid
        assert result.warnings == ["Client has 3 active cases (limit: 5)"]

    async def test_blocked_at_five(self, session: AsyncSession, configured_guild: str) -> None:
        await _open_cases(session, configured_guild, "c1", 5)
        result = await _service(session).validate_client_case_limit("c1", configured_guild)
        assert not result.valid
        assert not result.bypass_available
        assert "maximum active case limit (5)" in result.errors[0]

    async def test_closed_cases_not_counted(
        self, session: AsyncSession, configured_guild: str
    ) -> None:
        await _open_cases(session, configured_guild, "c1", 5)
        repo = CaseRepository(session)
        first = (await repo.find_by_client("c1"))[0]
        await repo.update(first.id, {"status": "closed"})
        result = await _service(session).validate_client_case_limit("c1", configured_guild)
        assert result.valid
        assert result.current_count == 4

    async def test_other_guild_cases_not_counted(
        self, session: AsyncSession, configured_guild: str
    ) -> None:
        await _open_cases(session, "elsewhere", "c1", 5)
        result = await _service(session).validate_client_case_limit("c1", configured_guild)
        assert result.valid
        assert result.current_count == 0

    async def test_lookup_failure_fails_closed(self, senior_staff: PermissionContext) -> None:
        case_repo = AsyncMock()
        case_repo.find_by_client.side_effect = RuntimeError("db down")
        service = BusinessRuleValidationService(AsyncMock(), AsyncMock(), case_repo, AsyncMock())
        result = await service.validate_client_case_limit("c1", senior_staff.guild_id)
        assert not result.valid
        assert not result.bypass_available
        assert result.errors == ["Failed to validate client case limits"]
        assert result.current_count == 0
        assert result.max_count == 5


class TestStaffMember:
    async def test_active_lawyer(
        self, session: AsyncSession, configured_guild: str, senior_staff: PermissionContext
    ) -> None:
        await _hire(session, configured_guild, "u1", "Junior Associate")
        result = await _service(session).validate_staff_member(senior_staff, "u1", ["lawyer"])
        assert result.valid
        assert result.is_active_staff
        assert result.current_role == "Junior Associate"

    async def test_paralegal_lacks_lawyer(
        self, session: AsyncSession, configured_guild: str, senior_staff: PermissionContext
    ) -> None:
        await _hire(session, configured_guild, "u1", "Paralegal")
        result = await _service(session).validate_staff_member(senior_staff, "u1", ["lawyer"])
        assert not result.valid
        assert result.errors == ["User lacks required permissions: lawyer"]

    async def test_not_staff(
        self, session: AsyncSession, configured_guild: str, senior_staff: PermissionContext
    ) -> None:
        result = await _service(session).validate_staff_member(senior_staff, "ghost")
        assert not result.valid
        assert "User is not an active staff member" in result.errors
        assert not result.bypass_available

    async def test_owner_gets_bypass(
        self, session: AsyncSession, configured_guild: str, owner: PermissionContext
    ) -> None:
        result = await _service(session).validate_staff_member(owner, "ghost")
        assert not result.valid
        assert result.bypass_available

    async def test_lookup_failure_fails_closed(self, owner: PermissionContext) -> None:
        staff_repo = AsyncMock()
        staff_repo.find_by_user_id.side_effect = RuntimeError("db down")
        service = BusinessRuleValidationService(AsyncMock(), staff_repo, AsyncMock(), AsyncMock())
        result = await service.validate_staff_member(owner, "u1", ["lawyer"])
        assert not result.valid
        assert not result.bypass_available
        assert result.errors == ["Failed to validate staff member"]
        assert not result.is_active_staff
        assert not result.has_required_permissions


class TestPermissionValidation:
    async def test_owner_valid(self, session: AsyncSession, owner: PermissionContext) -> None:
        result = await _service(session).validate_permission(owner, "senior-staff")
        assert result.valid
        assert result.has_permission

    async def test_granted_by_role(
        self, session: AsyncSession, configured_guild: str, case_worker: PermissionContext
    ) -> None:
        result = await _service(session).validate_permission(case_worker, "case")
        assert result.valid
        assert "case" in result.granted_permissions

    async def test_missing(
        self, session: AsyncSession, configured_guild: str, case_worker: PermissionContext
    ) -> None:
        result = await _service(session).validate_permission(case_worker, "senior-staff")
        assert not result.valid
        assert result.errors == ["Missing required permission: senior-staff"]

    async def test_check_failure_fails_closed(self, case_worker: PermissionContext) -> None:
        permissions = AsyncMock()
        permissions.has_senior_staff_permission_with_context.side_effect = RuntimeError("down")
        service = BusinessRuleValidationService(AsyncMock(), AsyncMock(), AsyncMock(), permissions)
        result = await service.validate_permission(case_worker, "senior-staff")
        assert not result.valid
        assert not result.has_permission
        assert result.errors == ["Missing required permission: senior-staff"]
        assert result.granted_permissions == []

    async def test_summary_failure_revokes_granted_check(
        self, case_worker: PermissionContext
    ) -> None:
        permissions = AsyncMock()
        permissions.has_action_permission.return_value = True
        permissions.get_permission_summary.side_effect = RuntimeError("down")
        service = BusinessRuleValidationService(AsyncMock(), AsyncMock(), AsyncMock(), permissions)
        result = await service.validate_permission(case_worker, "case")
        assert not result.valid
        assert result.errors == ["Missing required permission: case"]


class TestFoldResults:
    def test_combines_results(self) -> None:
        folded = fold_results(
            [
                ValidationResult(valid=True, warnings=["w1"]),
                ValidationResult(valid=False, errors=["e1"], bypass_available=True),
                ValidationResult(valid=False, errors=["e2"]),
            ]
        )
        assert not folded.valid
        assert folded.errors == ["e1", "e2"]
        assert folded.warnings == ["w1"]
        assert folded.bypass_available
        assert folded.metadata["invalid_results"] == 2

    def test_empty_is_valid(self) -> None:
        folded = fold_results([])
        assert folded.valid
        assert not folded.bypass_available
