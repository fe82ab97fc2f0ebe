"""
Unit of Work — one database transaction plus side effects that run only
after it commits.

Post-commit hooks (real-time publish, mostly) are allowed to fail on their
own: a failing hook is logged and never undoes or fails the write it
follows. Hooks registered on a transaction that rolls back are discarded.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

PostCommitHook = Callable[[], Awaitable[Any]]


class UnitOfWork:
    """
    Usage:
        async with UnitOfWork(session_factory) as uow:
            uow.session.add(row)
            uow.after_commit(lambda: publisher.publish(...))
        # committed here, then hooks fire in registration order
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None
        self._hooks: list[tuple[str, PostCommitHook]] = []

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("UnitOfWork used outside its context")
        return self._session

    def after_commit(self, hook: PostCommitHook, name: str = "") -> None:
        self._hooks.append((name or getattr(hook, "__name__", "hook"), hook))

    async def __aenter__(self) -> "UnitOfWork":
        self._session = self._session_factory()
        self._hooks = []
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        session = self.session
        try:
            if exc_type is None:
                await session.commit()
            else:
                await session.rollback()
                self._hooks.clear()
                return False
        except Exception:
            await session.rollback()
            self._hooks.clear()
            raise
        finally:
            await session.close()
            self._session = None

        await self._run_hooks()
        return False

    async def _run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for name, hook in hooks:
            try:
                await hook()
            except Exception as e:
                logger.warning("post_commit_hook_failed", hook=name, error=str(e))
