"""Execution of built statements against app-scoped tables.

Statements arrive from :class:`~blockflow.core.query_builder.SafeQueryBuilder`
with ``$n`` placeholders; they are rebound as SQLAlchemy named parameters so
the same statement runs on asyncpg and aiosqlite.
"""

import re
from typing import Any

import structlog
from sqlalchemy import Column, DateTime, Integer, MetaData, Table, Text, func, inspect, select, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from blockflow.core.identifiers import validate_column_name, validate_table_name
from blockflow.core.query_builder import BuiltQuery
from blockflow.models.app import AppTable

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r"\$(\d+)")


def to_named_params(built: BuiltQuery) -> tuple[str, dict[str, Any]]:
    """Rewrite ``$n`` placeholders as ``:pn`` bind parameters."""
    sql = _PLACEHOLDER.sub(lambda m: f":p{m.group(1)}", built.query)
    params = {f"p{index}": value for index, value in enumerate(built.params, start=1)}
    return sql, params


class TableStore:
    """Runs statements for one workflow job.

    In the default mode every statement commits on its own. With
    ``transactional=True`` all statements share one session until
    :meth:`finish` commits or rolls them back together.
    """

    def __init__(self, session_maker: sessionmaker, transactional: bool = False) -> None:
        self._session_maker = session_maker
        self.transactional = transactional
        self._session: AsyncSession | None = None

    async def _run(self, work) -> Any:
        if self.transactional:
            if self._session is None:
                self._session = self._session_maker()
            return await work(self._session)

        async with self._session_maker() as session:
            try:
                outcome = await work(session)
                await session.commit()
                return outcome
            except Exception:
                await session.rollback()
                raise

    async def fetch(self, built: BuiltQuery) -> list[dict[str, Any]]:
        """Execute a statement and return its rows as dictionaries."""
        sql, params = to_named_params(built)

        async def work(session: AsyncSession) -> list[dict[str, Any]]:
            result = await session.execute(text(sql), params)
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

        return await self._run(work)

    async def fetch_value(self, built: BuiltQuery) -> Any:
        """Execute a statement and return the first column of the first row."""
        rows = await self.fetch(built)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    async def get_columns(self, table_name: str) -> list[dict[str, Any]] | None:
        """Read column metadata from the database catalog.

        Returns:
            Inspector column dictionaries, or None if the table is missing
        """

        def inspect_columns(sync_conn) -> list[dict[str, Any]] | None:
            inspector = inspect(sync_conn)
            if not inspector.has_table(table_name):
                return None
            return inspector.get_columns(table_name)

        async def work(session: AsyncSession) -> list[dict[str, Any]] | None:
            conn = await session.connection()
            return await conn.run_sync(inspect_columns)

        return await self._run(work)

    async def table_exists(self, table_name: str) -> bool:
        return await self.get_columns(table_name) is not None

    async def create_table(self, table_name: str, app_id: int | str, columns: list[str]) -> None:
        """Provision an app-scoped table with one text column per field.

        Every table gets ``id``, ``created_at`` and ``updated_at``.
        """
        validate_table_name(table_name, app_id)
        table = Table(
            table_name,
            MetaData(),
            Column("id", Integer, primary_key=True, autoincrement=True),
            *(Column(validate_column_name(name), Text, nullable=True) for name in columns),
            Column("created_at", DateTime(timezone=True), server_default=func.now()),
            Column("updated_at", DateTime(timezone=True), server_default=func.now()),
        )

        async def work(session: AsyncSession) -> None:
            conn = await session.connection()
            await conn.run_sync(table.create, checkfirst=True)

        await self._run(work)
        logger.info("app_table_created", table=table_name, column_count=len(columns))

    async def add_columns(self, table_name: str, app_id: int | str, columns: list[str]) -> None:
        """Add nullable text columns to an existing app-scoped table."""
        table = validate_table_name(table_name, app_id)
        for name in columns:
            column = validate_column_name(name)

            async def work(session: AsyncSession, column: str = column) -> None:
                await session.execute(text(f'ALTER TABLE "{table}" ADD COLUMN "{column}" TEXT'))

            await self._run(work)
        logger.info("app_table_columns_added", table=table_name, columns=columns)

    async def record_table(self, app_id: int, table_name: str, columns: list[str]) -> None:
        """Register a provisioned table and its columns in ``app_table``."""
        descriptors = [{"name": name, "type": "text"} for name in columns]

        async def work(session: AsyncSession) -> None:
            result = await session.execute(select(AppTable).where(AppTable.table_name == table_name))
            entry = result.scalar_one_or_none()
            if entry is None:
                entry = AppTable(app_id=app_id, table_name=table_name)
            known = {c["name"] for c in entry.get_columns()}
            entry.set_columns(entry.get_columns() + [d for d in descriptors if d["name"] not in known])
            session.add(entry)
            await session.flush()

        await self._run(work)

    async def finish(self, commit: bool) -> None:
        """Close a transactional scope, committing or rolling back."""
        if self._session is None:
            return
        try:
            if commit:
                await self._session.commit()
                logger.debug("table_store_committed")
            else:
                await self._session.rollback()
                logger.info("table_store_rolled_back")
        finally:
            await self._session.close()
            self._session = None
