"""Unit of work: one session, one transaction, many repositories.

Usage:
    uow = UnitOfWorkFactory(engine).create()
    transaction_id = await uow.begin()
    cases = uow.get_repository(CaseRepository)
    ...
    await uow.commit()

Repositories obtained from the same unit share its session, so everything they
write commits or rolls back together. A unit can be begun once; after commit or
rollback it is finished and must be disposed.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, TypeVar

from anarchy.db.engine import create_session_factory
from anarchy.db.repository import BaseRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

logger = logging.getLogger(__name__)

RepoT = TypeVar("RepoT", bound=BaseRepository)


class UnitOfWorkError(RuntimeError):
    """A unit of work was used outside its begin/commit lifecycle."""


class SqlAlchemyUnitOfWork:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.transaction_id: str | None = None
        self._session: AsyncSession | None = None
        self._repositories: dict[type[BaseRepository], BaseRepository] = {}
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise UnitOfWorkError("Unit of work has not been started")
        return self._session

    async def begin(self) -> str:
        if self._session is not None:
            raise UnitOfWorkError("Unit of work already started")
        self._session = create_session_factory(self.engine)()
        self.transaction_id = str(uuid.uuid4())
        self._active = True
        logger.debug("uow_begin transaction_id=%s", self.transaction_id)
        return self.transaction_id

    def get_repository(self, repo_cls: type[RepoT]) -> RepoT:
        """Repository bound to this unit's session. Cached per class."""
        if not self._active:
            raise UnitOfWorkError("Unit of work is not active")
        repo = self._repositories.get(repo_cls)
        if repo is None:
            repo = repo_cls(self.session)
            self._repositories[repo_cls] = repo
        return repo  # type: ignore[return-value]

    async def commit(self) -> None:
        if not self._active:
            raise UnitOfWorkError("No active transaction to commit")
        await self.session.commit()
        self._active = False
        logger.debug("uow_commit transaction_id=%s", self.transaction_id)

    async def rollback(self) -> None:
        if not self._active:
            raise UnitOfWorkError("No active transaction to roll back")
        try:
            await self.session.rollback()
        finally:
            self._active = False
        logger.info("uow_rollback transaction_id=%s", self.transaction_id)

    async def dispose(self) -> None:
        """Close the session. Rolls back first if still active."""
        if self._session is None:
            return
        if self._active:
            await self.rollback()
        await self._session.close()
        self._session = None
        self._repositories.clear()


class UnitOfWorkFactory:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    def create(self) -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(self.engine)
