"""Tests for retainer agreements."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from anarchy.core.audit import AuditLogger
from anarchy.core.permissions import PermissionContext, PermissionDeniedError, PermissionService
from anarchy.core.retainers import RetainerError, RetainerService, format_retainer_agreement
from anarchy.db.repository import AuditLogRepository, GuildConfigRepository, RetainerRepository
from anarchy.models.retainer import Retainer

LAWYER_ROLE = "800"
CLIENT_ID = "77"
SIGNED_AT = datetime(2026, 3, 14, 9, 30, tzinfo=UTC)


@pytest.fixture
async def lawyer_guild(session: AsyncSession, configured_guild: str) -> str:
    await GuildConfigRepository(session).set_permission_roles(
        configured_guild, "lawyer", [LAWYER_ROLE]
    )
    await session.commit()
    return configured_guild


@pytest.fixture
def lawyer(make_context) -> PermissionContext:
    return make_context(user_id="250", roles=(LAWYER_ROLE,))


@pytest.fixture
def client(make_context) -> PermissionContext:
    return make_context(user_id=CLIENT_ID)


@pytest.fixture
def service(session: AsyncSession, engine: AsyncEngine) -> RetainerService:
    return RetainerService(
        RetainerRepository(session),
        PermissionService(GuildConfigRepository(session)),
        audit=AuditLogger(engine),
    )


class TestCreateRetainer:
    async def test_offer_is_pending(
        self, service: RetainerService, lawyer_guild: str, lawyer: PermissionContext
    ) -> None:
        retainer = await service.create_retainer(lawyer, CLIENT_ID)
        assert retainer.status == "pending"
        assert retainer.lawyer_id == lawyer.user_id
        assert "[CLIENT_NAME]" in retainer.agreement_template

    async def test_requires_lawyer(
        self, service: RetainerService, lawyer_guild: str, case_worker: PermissionContext
    ) -> None:
        with pytest.raises(PermissionDeniedError, match="create retainer agreements"):
            await service.create_retainer(case_worker, CLIENT_ID)

    async def test_one_pending_per_client(
        self, service: RetainerService, lawyer_guild: str, lawyer: PermissionContext
    ) -> None:
        await service.create_retainer(lawyer, CLIENT_ID)
        with pytest.raises(RetainerError, match="already has a pending"):
            await service.create_retainer(lawyer, CLIENT_ID)

    async def test_one_active_per_client(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        await service.sign_retainer(client, offered.id, "Client_One")
        with pytest.raises(RetainerError, match="already has an active"):
            await service.create_retainer(lawyer, CLIENT_ID)

    async def test_other_guild_does_not_block(
        self,
        service: RetainerService,
        session: AsyncSession,
        lawyer_guild: str,
        owner: PermissionContext,
    ) -> None:
        await RetainerRepository(session).add("2000", CLIENT_ID, "9")
        await session.commit()
        retainer = await service.create_retainer(owner, CLIENT_ID)
        assert retainer.guild_id == lawyer_guild

    async def test_audited(
        self,
        service: RetainerService,
        session: AsyncSession,
        lawyer_guild: str,
        lawyer: PermissionContext,
    ) -> None:
        retainer = await service.create_retainer(lawyer, CLIENT_ID)
        entries = await AuditLogRepository(session).find_by_guild(
            lawyer_guild, action="retainer_created"
        )
        assert entries[0].target_id == retainer.id


class TestSignRetainer:
    async def test_client_signs(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        signed = await service.sign_retainer(client, offered.id, " Client_One ", now=SIGNED_AT)
        assert signed.status == "signed"
        assert signed.is_active
        assert signed.client_roblox_username == "Client_One"
        assert signed.signed_at == SIGNED_AT

    async def test_only_the_client(
        self, service: RetainerService, lawyer_guild: str, lawyer: PermissionContext
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        with pytest.raises(RetainerError, match="Only the client"):
            await service.sign_retainer(lawyer, offered.id, "Lawyer_Guy")

    async def test_username_required(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        with pytest.raises(RetainerError, match="Roblox username is required"):
            await service.sign_retainer(client, offered.id, "   ")

    async def test_cancelled_cannot_be_signed(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        await service.cancel_retainer(lawyer, offered.id)
        with pytest.raises(RetainerError, match="not in pending status"):
            await service.sign_retainer(client, offered.id, "Client_One")

    async def test_suspicious_username_still_signs(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        signed = await service.sign_retainer(client, offered.id, "_x")
        assert signed.status == "signed"
        assert "retainer_signature_username_suspicious" in caplog.text

    async def test_other_guild_not_found(
        self,
        service: RetainerService,
        session: AsyncSession,
        lawyer_guild: str,
        client: PermissionContext,
    ) -> None:
        foreign = await RetainerRepository(session).add("2000", CLIENT_ID, "9")
        await session.commit()
        with pytest.raises(RetainerError, match="not found"):
            await service.sign_retainer(client, foreign.id, "Client_One")


class TestCancelRetainer:
    async def test_cancel_pending(
        self, service: RetainerService, lawyer_guild: str, lawyer: PermissionContext
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        cancelled = await service.cancel_retainer(lawyer, offered.id)
        assert cancelled.status == "cancelled"
        # A withdrawn offer no longer blocks a new one.
        again = await service.create_retainer(lawyer, CLIENT_ID)
        assert again.id != offered.id

    async def test_signed_cannot_be_cancelled(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        await service.sign_retainer(client, offered.id, "Client_One")
        with pytest.raises(RetainerError, match="Only pending"):
            await service.cancel_retainer(lawyer, offered.id)

    async def test_client_cannot_cancel(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        with pytest.raises(PermissionDeniedError):
            await service.cancel_retainer(client, offered.id)


class TestRetainerQueries:
    async def test_stats_and_lists(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        make_context,
    ) -> None:
        signed = await service.create_retainer(lawyer, "71")
        await service.sign_retainer(make_context(user_id="71"), signed.id, "Client_71")
        dropped = await service.create_retainer(lawyer, "72")
        await service.cancel_retainer(lawyer, dropped.id)
        await service.create_retainer(lawyer, "73")

        stats = await service.get_retainer_stats(lawyer)
        assert (stats.total, stats.active, stats.pending, stats.cancelled) == (3, 1, 1, 1)
        assert [r.client_id for r in await service.get_active_retainers(lawyer)] == ["71"]
        assert [r.client_id for r in await service.get_pending_retainers(lawyer)] == ["73"]

    async def test_client_sees_own_retainers(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        client: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        assert await service.get_client_retainers(client, CLIENT_ID) == []
        everything = await service.get_client_retainers(client, CLIENT_ID, include_all=True)
        assert [r.id for r in everything] == [offered.id]
        assert (await service.get_retainer(client, offered.id)).id == offered.id

    async def test_someone_elses_retainers_need_lawyer(
        self,
        service: RetainerService,
        lawyer_guild: str,
        lawyer: PermissionContext,
        outsider: PermissionContext,
    ) -> None:
        offered = await service.create_retainer(lawyer, CLIENT_ID)
        with pytest.raises(PermissionDeniedError):
            await service.get_client_retainers(outsider, CLIENT_ID)
        with pytest.raises(PermissionDeniedError):
            await service.get_retainer(outsider, offered.id)


class TestFormatRetainerAgreement:
    def _retainer(self, **overrides) -> Retainer:
        fields = {
            "id": "r1",
            "guild_id": "1000",
            "client_id": CLIENT_ID,
            "lawyer_id": "250",
            "status": "signed",
            "client_roblox_username": "Client_One",
            "digital_signature": "Client_One",
            "signed_at": SIGNED_AT,
        }
        fields.update(overrides)
        return Retainer(**fields)

    def test_fills_placeholders(self) -> None:
        agreement = format_retainer_agreement(self._retainer(), "Clara", "Lex")
        assert "between Clara" in agreement.agreement_text
        assert "Client Signature: Client_One" in agreement.agreement_text
        assert "Date: March 14, 2026" in agreement.agreement_text
        assert "Representing Lawyer: Lex" in agreement.agreement_text
        assert "[" not in agreement.agreement_text

    def test_unsigned_rejected(self) -> None:
        with pytest.raises(RetainerError, match="unsigned"):
            format_retainer_agreement(self._retainer(status="pending"), "Clara", "Lex")

    def test_missing_signature_rejected(self) -> None:
        with pytest.raises(RetainerError, match="missing signature"):
            format_retainer_agreement(self._retainer(signed_at=None), "Clara", "Lex")
