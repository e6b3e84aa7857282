"""App service.

Apps are the tenant boundary: every workflow, execution and dynamic table
belongs to exactly one app, and only the app's owner may touch them.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from blockflow.models.app import App, AppCreate, AppRead, AppTable, AppTableRead

logger = structlog.get_logger()


class AppServiceError(Exception):
    """Error in app service operations."""

    pass


class AppNotFoundError(AppServiceError):
    """App not found."""

    pass


class AppAccessDeniedError(AppServiceError):
    """User doesn't own the app."""

    pass


class AppService:
    """Service for apps and their registered tables.

    Example usage:
        service = AppService(session)
        app = await service.create(user_id, AppCreate(name="CRM"))
        tables = await service.list_tables(app.id, user_id)
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user_id: str, data: AppCreate) -> AppRead:
        """Create an app owned by ``user_id``."""
        app = App(owner_id=user_id, name=data.name)
        self._session.add(app)
        await self._session.commit()
        await self._session.refresh(app)

        logger.info("app_created", app_id=app.id, user_id=user_id)
        return AppRead.model_validate(app, from_attributes=True)

    async def get(self, app_id: int, user_id: str) -> AppRead:
        """Get an app.

        Raises:
            AppNotFoundError: If the app doesn't exist
            AppAccessDeniedError: If the user doesn't own it
        """
        app = await self.get_owned(app_id, user_id)
        return AppRead.model_validate(app, from_attributes=True)

    async def list_all(self, user_id: str, limit: int = 50, offset: int = 0) -> list[AppRead]:
        query = (
            select(App)
            .where(App.owner_id == user_id)
            .order_by(App.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(query)
        return [AppRead.model_validate(a, from_attributes=True) for a in result.scalars().all()]

    async def list_tables(self, app_id: int, user_id: str) -> list[AppTableRead]:
        """List the dynamic tables provisioned for an app."""
        await self.get_owned(app_id, user_id)
        query = (
            select(AppTable)
            .where(AppTable.app_id == app_id)
            .order_by(AppTable.table_name)
        )
        result = await self._session.execute(query)
        return [
            AppTableRead(
                table_name=table.table_name,
                columns=table.get_columns(),
                created_at=table.created_at,
            )
            for table in result.scalars().all()
        ]

    async def get_owned(self, app_id: int, user_id: str) -> App:
        """Load an app and verify ownership.

        Raises:
            AppNotFoundError: If not found
            AppAccessDeniedError: If wrong owner
        """
        app = await self._session.get(App, app_id)
        if app is None:
            raise AppNotFoundError(f"App '{app_id}' not found")

        if app.owner_id != user_id:
            logger.warning(
                "app_access_denied",
                app_id=app_id,
                requested_by=user_id,
            )
            raise AppAccessDeniedError("Access denied to this app")

        return app

    async def get_any(self, app_id: int) -> App:
        """Load an app without an ownership check (webhook entry).

        Raises:
            AppNotFoundError: If not found
        """
        app = await self._session.get(App, app_id)
        if app is None:
            raise AppNotFoundError(f"App '{app_id}' not found")
        return app
