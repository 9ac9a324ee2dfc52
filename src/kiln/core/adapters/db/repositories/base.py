"""Session factory wrapper that refuses new sessions during shutdown."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class RepositoryClosing(RuntimeError):
    """Raised when a repository is used after shutdown has begun."""


class ClosingAwareSessionFactory:
    """Callable session provider that fails fast once ``mark_closing`` is called."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._closing = False

    @property
    def closing(self) -> bool:
        return self._closing

    def mark_closing(self) -> None:
        self._closing = True

    def __call__(self) -> AsyncSession:
        if self._closing:
            raise RepositoryClosing("Repository is closing")
        return self._session_factory()
