"""App ownership lookup."""

from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from blockflow.models.app import App


def _as_app_id(app_id: int | str) -> int | None:
    try:
        return int(app_id)
    except (TypeError, ValueError):
        return None


class AppOwnership(ABC):
    """Answers whether a user owns an app."""

    @abstractmethod
    async def app_exists(self, app_id: int | str) -> bool:
        """Return True if the app exists."""

    @abstractmethod
    async def owns_app(self, app_id: int | str, user_id: str) -> bool:
        """Return True if ``user_id`` owns ``app_id``."""


class SqlAppOwnership(AppOwnership):
    """Ownership backed by the ``app`` table."""

    def __init__(self, session_maker: sessionmaker) -> None:
        self._session_maker = session_maker

    async def _owner_of(self, app_id: int | str) -> str | None:
        numeric_id = _as_app_id(app_id)
        if numeric_id is None:
            return None
        session: AsyncSession
        async with self._session_maker() as session:
            result = await session.execute(select(App.owner_id).where(App.id == numeric_id))
            return result.scalar_one_or_none()

    async def app_exists(self, app_id: int | str) -> bool:
        return await self._owner_of(app_id) is not None

    async def owns_app(self, app_id: int | str, user_id: str) -> bool:
        owner = await self._owner_of(app_id)
        return owner is not None and owner == str(user_id)

