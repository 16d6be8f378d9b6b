"""Tests for compensation actions and rollback."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from anarchy.core.audit import AuditLogger
from anarchy.core.rollback import (
    CompensationAction,
    RollbackService,
    audit_log_compensation,
    channel_deletion_compensation,
    notification_compensation,
)
from anarchy.db.repository import AuditLogRepository, CaseRepository
from anarchy.db.unit_of_work import UnitOfWorkFactory


class Recorder:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls} failed")


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def rollback(sleep: AsyncMock) -> RollbackService:
    return RollbackService(max_retries=3, base_delay=1.0, sleep=sleep)


async def _begun(engine: AsyncEngine):
    uow = UnitOfWorkFactory(engine).create()
    await uow.begin()
    return uow


class TestRegistration:
    def test_actions_sorted_by_priority(self, rollback: RollbackService) -> None:
        for action_id, priority in (("low", 1), ("high", 10), ("mid", 5), ("mid-2", 5)):
            rollback.register_compensation_action(
                "tx", CompensationAction(action_id, "", Recorder(), priority=priority)
            )
        ids = [a.action_id for a in rollback.get_compensation_actions("tx")]
        assert ids == ["high", "mid", "mid-2", "low"]

    def test_clear_transaction(self, rollback: RollbackService) -> None:
        rollback.register_compensation_action("tx", CompensationAction("a", "", Recorder()))
        rollback.clear_transaction("tx")
        assert rollback.get_compensation_actions("tx") == []


class TestPerformRollback:
    async def test_rolls_back_uow_and_runs_actions(
        self, rollback: RollbackService, engine: AsyncEngine, session: AsyncSession
    ) -> None:
        uow = await _begun(engine)
        await uow.get_repository(CaseRepository).add("g", "2026-0001-x", "c", "c", "t")
        first, second = Recorder(), Recorder()
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("first", "", first, priority=2)
        )
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("second", "", second, priority=1)
        )
        context = rollback.create_rollback_context(uow, "create_case", RuntimeError("x"))
        result = await rollback.perform_rollback(uow, context)

        assert result.success
        assert result.compensations_executed == ["first", "second"]
        assert not uow.is_active
        assert await CaseRepository(session).find_by_guild("g") == []
        assert rollback.get_compensation_actions(context.transaction_id) == []

    async def test_retries_with_exponential_backoff(
        self, rollback: RollbackService, engine: AsyncEngine, sleep: AsyncMock
    ) -> None:
        uow = await _begun(engine)
        flaky = Recorder(failures=2)
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("flaky", "", flaky)
        )
        result = await rollback.perform_rollback(
            uow, rollback.create_rollback_context(uow, "op")
        )
        assert result.success
        assert flaky.calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_exhausted_action_reported_not_raised(
        self, rollback: RollbackService, engine: AsyncEngine
    ) -> None:
        uow = await _begun(engine)
        broken, after = Recorder(failures=99), Recorder()
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("broken", "", broken, priority=5)
        )
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("after", "", after, priority=1)
        )
        result = await rollback.perform_rollback(
            uow, rollback.create_rollback_context(uow, "op")
        )
        assert not result.success
        assert result.compensations_failed == ["broken"]
        assert result.compensations_executed == ["after"]
        assert broken.calls == 3
        assert "failed after 3 attempts" in result.errors[0]

    async def test_non_retryable_runs_once(
        self, rollback: RollbackService, engine: AsyncEngine, sleep: AsyncMock
    ) -> None:
        uow = await _begun(engine)
        once = Recorder(failures=1)
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("once", "", once, retryable=False)
        )
        result = await rollback.perform_rollback(
            uow, rollback.create_rollback_context(uow, "op")
        )
        assert once.calls == 1
        assert result.compensations_failed == ["once"]
        sleep.assert_not_awaited()

    async def test_per_action_retry_override(
        self, rollback: RollbackService, engine: AsyncEngine
    ) -> None:
        uow = await _begun(engine)
        flaky = Recorder(failures=99)
        rollback.register_compensation_action(
            uow.transaction_id, CompensationAction("two", "", flaky, max_retries=2)
        )
        await rollback.perform_rollback(uow, rollback.create_rollback_context(uow, "op"))
        assert flaky.calls == 2


class TestCompensationFactories:
    async def test_channel_deletion_skips_when_no_channel(self) -> None:
        delete = AsyncMock()
        action = channel_deletion_compensation(delete, lambda: None)
        await action.execute()
        delete.assert_not_awaited()
        assert action.priority == 10

    async def test_channel_deletion_reads_id_late(self) -> None:
        delete = AsyncMock()
        holder: dict[str, str] = {}
        action = channel_deletion_compensation(delete, lambda: holder.get("id"))
        holder["id"] = "chan-5"
        await action.execute()
        delete.assert_awaited_once_with("chan-5")

    async def test_notification_notifies_every_recipient(self) -> None:
        notify = AsyncMock()
        action = notification_compensation(notify, ["a", "b"], "sorry")
        await action.execute()
        assert [c.args for c in notify.await_args_list] == [("a", "sorry"), ("b", "sorry")]
        assert action.action_id == "notify-a-b"

    async def test_audit_compensation_writes_entry(
        self, engine: AsyncEngine, session: AsyncSession
    ) -> None:
        action = audit_log_compensation(
            AuditLogger(engine), "g", "actor", "create_case", "boom", target_id="client"
        )
        await action.execute()
        entries = await AuditLogRepository(session).find_by_guild("g")
        assert entries[0].action == "transaction_rolled_back"
        assert entries[0].details == {"operation": "create_case", "reason": "boom"}
