"""Shared test fixtures.

Every test gets its own in-memory SQLite engine. In-memory engines share one
connection across sessions, so tests commit setup data before exercising code
that opens its own session or unit of work.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from anarchy.config import Settings
from anarchy.core.permissions import PermissionContext
from anarchy.db.engine import create_engine, create_tables, dispose_engine, get_session
from anarchy.db.repository import GuildConfigRepository

GUILD_ID = "1000"
OWNER_ID = "1"
CASE_ROLE = "500"
SENIOR_STAFF_ROLE = "600"
ADMIN_ROLE = "700"

ContextFactory = Callable[..., PermissionContext]


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(anarchy_env="development", database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    """An in-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await dispose_engine(eng)


@pytest.fixture
async def session(engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    async with get_session(engine) as s:
        yield s


@pytest.fixture
def make_context() -> ContextFactory:
    def _make(
        user_id: str = "42",
        roles: tuple[str, ...] = (),
        owner: bool = False,
        guild_id: str = GUILD_ID,
    ) -> PermissionContext:
        return PermissionContext(
            guild_id=guild_id,
            user_id=user_id,
            user_roles=frozenset(roles),
            is_guild_owner=owner,
        )

    return _make


@pytest.fixture
async def configured_guild(session: AsyncSession) -> str:
    """A guild with case, senior-staff and admin roles mapped. Committed."""
    repo = GuildConfigRepository(session)
    await repo.set_permission_roles(GUILD_ID, "case", [CASE_ROLE])
    await repo.set_permission_roles(GUILD_ID, "senior-staff", [SENIOR_STAFF_ROLE])
    await repo.add_admin_role(GUILD_ID, ADMIN_ROLE)
    await session.commit()
    return GUILD_ID


@pytest.fixture
def owner(make_context: ContextFactory) -> PermissionContext:
    return make_context(user_id=OWNER_ID, owner=True)


@pytest.fixture
def case_worker(make_context: ContextFactory) -> PermissionContext:
    return make_context(user_id="200", roles=(CASE_ROLE,))


@pytest.fixture
def senior_staff(make_context: ContextFactory) -> PermissionContext:
    return make_context(user_id="300", roles=(SENIOR_STAFF_ROLE,))


@pytest.fixture
def admin(make_context: ContextFactory) -> PermissionContext:
    return make_context(user_id="400", roles=(ADMIN_ROLE,))


@pytest.fixture
def outsider(make_context: ContextFactory) -> PermissionContext:
    return make_context(user_id="999")
