"""Dynamic-table action blocks.

Every block here goes through the same gate before touching SQL: app
ownership, per-user rate limit, table-name qualification and validation,
schema discovery. Statements are built by :class:`SafeQueryBuilder` and
executed through the job's :class:`TableStore`.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, TypeVar

import structlog

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome, BlockValidationError, require
from blockflow.core.identifiers import (
    RESERVED_COLUMNS,
    qualify_table_name,
    validate_column_name,
    validate_table_name,
)
from blockflow.core.query_builder import LIST_OPERATORS, NULL_OPERATORS, SafeQueryBuilder
from blockflow.core.schema import ColumnInfo, convert_value, validate_and_convert
from blockflow.core.security import normalize_operator
from blockflow.integrations.publisher import app_channel
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

logger = structlog.get_logger()

ConfigT = TypeVar("ConfigT")

# Operators whose right-hand side is a pattern, not a column value
PATTERN_OPERATORS = frozenset({"LIKE", "ILIKE"})

PREVIEW_ROWS = 5


def parse_json_field(value: Any, name: str) -> Any:
    """Decode a config value that the editor may send as a JSON string."""
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except ValueError as e:
        raise BlockValidationError(
            f"Invalid JSON in {name}: {e}. Please provide valid JSON.", name
        ) from e


def parse_object_field(value: Any, name: str) -> dict[str, Any]:
    """Decode a config value that must be a JSON object."""
    parsed = parse_json_field(value, name)
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise BlockValidationError(f"{name} must be an object, not an array or primitive", name)
    return parsed


def parse_conditions(value: Any, name: str = "conditions") -> list[dict[str, Any]]:
    """Normalize conditions to a list; a single object becomes a one-item list."""
    parsed = parse_json_field(value, name)
    if parsed is None:
        return []
    if isinstance(parsed, dict):
        return [parsed]
    if not isinstance(parsed, list):
        raise BlockValidationError(f"{name} must be an array of conditions", name)
    return parsed


def parse_order_by(value: Any) -> list[tuple[str, str]]:
    """Accept ``[{field, direction}]``, a single object, or bare field names."""
    parsed = parse_json_field(value, "orderBy")
    if not parsed:
        return []
    if isinstance(parsed, (dict, str)):
        parsed = [parsed]
    order: list[tuple[str, str]] = []
    for item in parsed:
        if isinstance(item, str):
            order.append((item, "ASC"))
        elif isinstance(item, dict):
            order.append((item.get("field"), item.get("direction", "ASC")))
        else:
            raise BlockValidationError("orderBy entries must be objects or field names", "orderBy")
    return order


def parse_int(value: Any, name: str, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise BlockValidationError(f"{name} must be an integer", name)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise BlockValidationError(f"{name} must be an integer", name) from e


def parse_unique_fields(value: Any) -> list[str]:
    """Accept a list, a JSON array string or a comma-separated string."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            value = value.split(",")
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise BlockValidationError("uniqueFields must be a list of column names", "uniqueFields")

    fields: list[str] = []
    for item in value:
        cleaned = str(item).strip()
        if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ("'", '"'):
            cleaned = cleaned[1:-1].strip()
        if cleaned:
            fields.append(cleaned)

    numeric = [f for f in fields if f.isdigit()]
    if numeric:
        raise BlockValidationError(
            f"Invalid unique fields: {', '.join(numeric)}. "
            "Unique fields must be column names, not just numbers",
            "uniqueFields",
        )
    return fields


def strip_reserved(data: dict[str, Any], block: str) -> dict[str, Any]:
    """Drop engine-managed columns from write data."""
    kept = {}
    for column, value in data.items():
        if str(column).lower() in RESERVED_COLUMNS:
            logger.info("reserved_column_skipped", block=block, column=column)
            continue
        kept[column] = value
    return kept


def serialize_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def serialize_row(row: dict[str, Any]) -> dict[str, Any]:
    """Make a database row JSON-friendly for results and context."""
    return {key: serialize_value(value) for key, value in row.items()}


class TableBlock(BaseBlock[ConfigT]):
    """Shared gate and helpers for blocks that operate on app-scoped tables."""

    # Rate-limit operation key; defaults to the block label
    operation: str | None = None

    async def guard(self, ctx: BlockContext) -> None:
        """Check app ownership, then the per-user rate limit.

        Raises:
            AppAccessError: If the user does not own the app
            RateLimitExceededError: If the operation is over its limit
        """
        security = ctx.services.security
        await security.assert_app_access(ctx.app_id, ctx.user_id)
        await security.enforce_rate_limit(ctx.user_id, self.operation or self.label)

    def qualify(self, table_name: Any, ctx: BlockContext) -> str:
        """Prefix a bare suffix with ``app_<appId>_`` and validate the result."""
        if not isinstance(table_name, str):
            raise BlockValidationError("tableName must be a string", "tableName")
        return validate_table_name(qualify_table_name(table_name.strip(), ctx.app_id), ctx.app_id)

    async def schema_for(self, table: str, ctx: BlockContext) -> list[ColumnInfo]:
        return await ctx.services.schemas.discover_schema(table, ctx.app_id)

    def add_conditions(
        self,
        builder: SafeQueryBuilder,
        conditions: list[dict[str, Any]],
        schema: list[ColumnInfo],
    ) -> None:
        """Add WHERE conditions, converting values to their column types."""
        types = {column.name: column.type for column in schema}
        for condition in conditions:
            column = condition.get("field")
            operator = normalize_operator(condition.get("operator", "="))
            value = condition.get("value")
            column_type = types.get(column)

            if column_type and operator not in NULL_OPERATORS | PATTERN_OPERATORS:
                if operator in LIST_OPERATORS and isinstance(value, list):
                    value = [convert_value(item, column_type) for item in value]
                else:
                    value = convert_value(value, column_type)

            builder.add_where(column, operator, value, condition.get("logic", "AND"))

    async def publish(self, ctx: BlockContext, event: str, payload: dict[str, Any]) -> None:
        await ctx.services.publisher.publish(app_channel(ctx.app_id), event, payload)


@dataclass
class FindConfig:
    """Validated configuration for ``db.find``."""

    table_name: str
    conditions: list[dict[str, Any]] = field(default_factory=list)
    order_by: list[tuple[str, str]] = field(default_factory=list)
    limit: int = 100
    offset: int = 0
    columns: list[str] | None = None


class DbFindBlock(TableBlock[FindConfig]):
    """Select rows from an app-scoped table.

    Returns ``{data, count, total, hasMore}``. ``total`` counts every row
    matching the conditions, and ``hasMore`` is set when rows remain past
    this page. Rows are also written to ``dbFindResult``.
    """

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="db.find",
            display_name="Find Records",
            description="Query rows of an app table with conditions, ordering and pagination",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="tableName", required=True, description="Table name or suffix"),
                ConfigField(
                    name="conditions",
                    type=ConfigFieldType.JSON,
                    description="List of {field, operator, value, logic}",
                    default=[],
                ),
                ConfigField(name="orderBy", type=ConfigFieldType.JSON, default=[]),
                ConfigField(name="limit", type=ConfigFieldType.NUMBER, default=100),
                ConfigField(name="offset", type=ConfigFieldType.NUMBER, default=0),
                ConfigField(name="columns", type=ConfigFieldType.ARRAY),
                ConfigField(name="outputVariable", description="Context key for the rows"),
            ],
            outputs=["dbFindResult", "dbFindCount"],
            tags=["database"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> FindConfig:
        table_name = require(config, "tableName", "Table name is required for db.find")
        columns = parse_json_field(config.get("columns"), "columns")
        if isinstance(columns, str):
            columns = [c.strip() for c in columns.split(",") if c.strip()]
        if not columns or columns == ["*"]:
            columns = None

        return FindConfig(
            table_name=self.qualify(table_name, ctx),
            conditions=parse_conditions(config.get("conditions")),
            order_by=parse_order_by(config.get("orderBy")),
            limit=parse_int(config.get("limit"), "limit", 100),
            offset=parse_int(config.get("offset"), "offset", 0),
            columns=columns,
        )

    async def execute(self, config: FindConfig, ctx: BlockContext) -> BlockOutcome:
        await self.guard(ctx)
        security = ctx.services.security
        schema = await self.schema_for(config.table_name, ctx)

        security.validate_conditions(config.conditions)
        security.validate_pagination(config.limit, config.offset)

        builder = SafeQueryBuilder(ctx.app_id)
        self.add_conditions(builder, config.conditions, schema)
        for column, direction in config.order_by:
            builder.add_order_by(column, direction)
        builder.set_limit(config.limit)
        builder.set_offset(config.offset)

        built = builder.build_select_query(config.table_name, config.columns)
        rows = [serialize_row(row) for row in await ctx.services.store.fetch(built)]
        counted = await ctx.services.store.fetch_value(builder.build_count_query(config.table_name))
        total = int(counted or 0)

        logger.info(
            "db_find_completed",
            table=config.table_name,
            row_count=len(rows),
            total=total,
            execution_id=ctx.execution_id,
        )
        return BlockOutcome(
            success=True,
            payload={
                "tableName": config.table_name,
                "data": rows,
                "count": len(rows),
                "total": total,
                "hasMore": config.offset + len(rows) < total,
            },
            context_updates={"dbFindResult": rows, "dbFindCount": len(rows)},
            output=rows,
        )


@dataclass
class UpdateConfig:
    """Validated configuration for ``db.update``."""

    table_name: str
    update_data: dict[str, Any]
    where_conditions: list[dict[str, Any]]
    return_records: bool = True


class DbUpdateBlock(TableBlock[UpdateConfig]):
    """Update rows of an app-scoped table.

    WHERE conditions are mandatory. Reserved columns are dropped from the
    update data and ``updated_at`` is maintained automatically. An update
    that matches no rows succeeds with ``updatedCount`` 0.
    """

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="db.update",
            display_name="Update Records",
            description="Update rows of an app table that match the WHERE conditions",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="tableName", required=True),
                ConfigField(name="updateData", type=ConfigFieldType.JSON, required=True),
                ConfigField(name="whereConditions", type=ConfigFieldType.JSON, required=True),
                ConfigField(name="returnUpdatedRecords", type=ConfigFieldType.BOOLEAN, default=True),
                ConfigField(name="outputVariable"),
            ],
            outputs=["dbUpdateResult"],
            tags=["database"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> UpdateConfig:
        table_name = require(config, "tableName", "Table name is required for db.update")
        update_data = strip_reserved(parse_object_field(config.get("updateData"), "updateData"), "db.update")
        if not update_data:
            raise BlockValidationError("No update data provided", "updateData")
        where = parse_conditions(config.get("whereConditions"), "whereConditions")
        if not where:
            raise BlockValidationError("WHERE conditions required (safety)", "whereConditions")

        return UpdateConfig(
            table_name=self.qualify(table_name, ctx),
            update_data=update_data,
            where_conditions=where,
            return_records=config.get("returnUpdatedRecords", True) is not False,
        )

    async def execute(self, config: UpdateConfig, ctx: BlockContext) -> BlockOutcome:
        await self.guard(ctx)
        security = ctx.services.security
        schema = await self.schema_for(config.table_name, ctx)
        security.validate_conditions(config.where_conditions)
        update_data = security.validate_value(config.update_data)

        data = validate_and_convert(update_data, schema, partial=True)
        if any(column.name == "updated_at" for column in schema):
            data["updated_at"] = datetime.now(timezone.utc)

        builder = SafeQueryBuilder(ctx.app_id)
        self.add_conditions(builder, config.where_conditions, schema)
        built = builder.build_update_query(
            config.table_name, data, allow_reserved=frozenset({"updated_at"})
        )
        rows = [serialize_row(row) for row in await ctx.services.store.fetch(built)]
        updated_count = len(rows)

        logger.info(
            "db_update_completed",
            table=config.table_name,
            rows_affected=updated_count,
            execution_id=ctx.execution_id,
        )
        await self.publish(
            ctx,
            "database:update",
            {
                "tableName": config.table_name,
                "rowsAffected": updated_count,
                "preview": rows[:PREVIEW_ROWS],
            },
        )

        summary = {
            "tableName": config.table_name,
            "updatedCount": updated_count,
            "updatedRecords": rows,
        }
        return BlockOutcome(
            success=True,
            payload={
                "tableName": config.table_name,
                "updatedCount": updated_count,
                "data": rows if config.return_records else None,
                "message": f"Updated {updated_count} record(s) in '{config.table_name}'",
            },
            context_updates={"dbUpdateResult": summary},
            output=summary,
        )


@dataclass
class CreateConfig:
    """Validated configuration for ``db.create``."""

    table_name: str
    insert_data: dict[str, Any] | None


class DbCreateBlock(TableBlock[CreateConfig]):
    """Insert one row, provisioning the table or its columns if needed.

    Data comes from ``insertData`` or, when that is empty, from the
    submitted ``formData``. New tables get ``id``, ``created_at``,
    ``updated_at`` and one text column per field; they are registered in
    ``app_table``.
    """

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="db.create",
            display_name="Create Record",
            description="Insert a row into an app table, creating the table on first use",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="tableName", default="form_data"),
                ConfigField(
                    name="insertData",
                    type=ConfigFieldType.JSON,
                    description="Column values; defaults to the submitted form data",
                ),
                ConfigField(name="outputVariable"),
            ],
            outputs=["dbCreateResult"],
            tags=["database", "form"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> CreateConfig:
        table_name = config.get("tableName") or "form_data"
        insert_data = parse_object_field(config.get("insertData"), "insertData")
        return CreateConfig(
            table_name=self.qualify(table_name, ctx),
            insert_data=insert_data or None,
        )

    async def execute(self, config: CreateConfig, ctx: BlockContext) -> BlockOutcome:
        data = config.insert_data
        if data is None:
            form_data = ctx.data.get("formData")
            data = dict(form_data) if isinstance(form_data, dict) else {}
        data = strip_reserved(data, "db.create")
        if not data:
            raise BlockValidationError("No data provided for database insertion", "insertData")
        columns = [validate_column_name(column) for column in data]

        await self.guard(ctx)
        data = ctx.services.security.validate_value(data)
        store = ctx.services.store
        schemas = ctx.services.schemas

        created = False
        if not await schemas.table_exists(config.table_name, ctx.app_id):
            await store.create_table(config.table_name, ctx.app_id, columns)
            created = True
        else:
            existing = {column.name for column in await self.schema_for(config.table_name, ctx)}
            missing = [column for column in columns if column not in existing]
            if missing:
                await store.add_columns(config.table_name, ctx.app_id, missing)
        await store.record_table(ctx.app_id, config.table_name, columns)
        schemas.invalidate(config.table_name)

        schema = await self.schema_for(config.table_name, ctx)
        values = validate_and_convert(data, schema)
        built = SafeQueryBuilder(ctx.app_id).build_insert_query(config.table_name, values)
        rows = [serialize_row(row) for row in await store.fetch(built)]
        record = rows[0] if rows else {}

        logger.info(
            "db_create_completed",
            table=config.table_name,
            table_created=created,
            execution_id=ctx.execution_id,
        )
        if created:
            await self.publish(ctx, "table-created", {"tableName": config.table_name})
        await self.publish(
            ctx,
            "data-updated",
            {"tableName": config.table_name, "action": "insert", "rowsAffected": 1},
        )

        summary = {
            "tableName": config.table_name,
            "insertedId": record.get("id"),
            "record": record,
            "tableCreated": created,
        }
        if created:
            message = f"Table '{config.table_name}' created and data inserted (ID: {record.get('id')})"
        else:
            message = f"Data inserted into '{config.table_name}' (ID: {record.get('id')})"
        return BlockOutcome(
            success=True,
            payload={**summary, "message": message},
            context_updates={"dbCreateResult": summary, "tableName": config.table_name},
            output=record,
        )


@dataclass
class UpsertConfig:
    """Validated configuration for ``db.upsert``."""

    table_name: str
    unique_fields: list[str]
    update_data: dict[str, Any]
    insert_data: dict[str, Any]


class DbUpsertBlock(TableBlock[UpsertConfig]):
    """Update the row matching ``uniqueFields``, or insert one.

    The lookup value for each unique field is taken from ``insertData``,
    then ``updateData``. The table must already exist.
    """

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="db.upsert",
            display_name="Upsert Record",
            description="Update a row identified by unique fields, inserting it when absent",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="tableName", required=True),
                ConfigField(name="uniqueFields", type=ConfigFieldType.ARRAY, required=True),
                ConfigField(name="updateData", type=ConfigFieldType.JSON),
                ConfigField(name="insertData", type=ConfigFieldType.JSON),
                ConfigField(name="outputVariable"),
            ],
            outputs=["dbUpsertResult"],
            tags=["database"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> UpsertConfig:
        table_name = require(config, "tableName", "Table name is required for db.upsert")
        unique_fields = parse_unique_fields(config.get("uniqueFields") or [])
        if not unique_fields:
            raise BlockValidationError(
                "At least one unique field is required for upsert", "uniqueFields"
            )
        for name in unique_fields:
            validate_column_name(name, allow_reserved=True)

        update_data = strip_reserved(parse_object_field(config.get("updateData"), "updateData"), "db.upsert")
        insert_data = strip_reserved(parse_object_field(config.get("insertData"), "insertData"), "db.upsert")
        if not update_data and not insert_data:
            raise BlockValidationError("Either updateData or insertData must be provided", "updateData")

        return UpsertConfig(
            table_name=self.qualify(table_name, ctx),
            unique_fields=unique_fields,
            update_data=update_data,
            insert_data=insert_data,
        )

    async def execute(self, config: UpsertConfig, ctx: BlockContext) -> BlockOutcome:
        await self.guard(ctx)
        security = ctx.services.security
        store = ctx.services.store
        schema = await self.schema_for(config.table_name, ctx)

        conditions = []
        for name in config.unique_fields:
            value = config.insert_data.get(name)
            if value is None:
                value = config.update_data.get(name)
            if value is None:
                raise BlockValidationError(
                    f"Value for unique field '{name}' not found in insertData or updateData",
                    "uniqueFields",
                )
            conditions.append({"field": name, "operator": "=", "value": value})
        security.validate_conditions(conditions)
        security.validate_value(config.update_data)
        security.validate_value(config.insert_data)

        lookup = SafeQueryBuilder(ctx.app_id)
        self.add_conditions(lookup, conditions, schema)
        lookup.set_limit(1)
        existing = await store.fetch(lookup.build_select_query(config.table_name))

        if existing:
            data = validate_and_convert(config.update_data or config.insert_data, schema, partial=True)
            if any(column.name == "updated_at" for column in schema):
                data["updated_at"] = datetime.now(timezone.utc)
            builder = SafeQueryBuilder(ctx.app_id)
            self.add_conditions(builder, conditions, schema)
            built = builder.build_update_query(
                config.table_name, data, allow_reserved=frozenset({"updated_at"})
            )
            action = "updated"
        else:
            data = validate_and_convert({**config.insert_data, **config.update_data}, schema)
            built = SafeQueryBuilder(ctx.app_id).build_insert_query(config.table_name, data)
            action = "inserted"

        rows = [serialize_row(row) for row in await store.fetch(built)]
        record = rows[0] if rows else {}

        logger.info(
            "db_upsert_completed",
            table=config.table_name,
            action=action,
            execution_id=ctx.execution_id,
        )
        await self.publish(
            ctx,
            "data-updated",
            {"tableName": config.table_name, "action": action, "rowsAffected": len(rows)},
        )

        summary = {"tableName": config.table_name, "action": action, "record": record}
        return BlockOutcome(
            success=True,
            payload={**summary, "message": f"Record {action} in '{config.table_name}'"},
            context_updates={"dbUpsertResult": summary},
            output=record,
        )
