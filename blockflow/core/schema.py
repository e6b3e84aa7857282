"""Schema discovery and type coercion for app-scoped tables.

Column metadata always comes from the database catalog, never from the
client, and raw input is converted to the declared column type before it is
bound as a parameter.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import structlog

from blockflow.core.identifiers import DataLayerError, RESERVED_COLUMNS, validate_table_name
from blockflow.core.table_store import TableStore

logger = structlog.get_logger()

TRUE_STRINGS = frozenset({"true", "1"})


class SchemaValidationError(DataLayerError):
    """One or more fields failed validation; ``errors`` lists all of them."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Data validation failed: {'; '.join(errors)}", "SCHEMA_VALIDATION_ERROR")
        self.errors = errors


class TableNotFoundError(DataLayerError):
    """App-scoped table does not exist."""

    def __init__(self, table_name: str) -> None:
        super().__init__(f"Table {table_name} does not exist", "TABLE_NOT_FOUND")
        self.table_name = table_name


@dataclass(frozen=True)
class ColumnInfo:
    """Column metadata discovered from the catalog."""

    name: str
    type: str
    nullable: bool = True
    default: Any = None
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None

    @property
    def family(self) -> str:
        return type_family(self.type)

    @property
    def required(self) -> bool:
        """Engine-managed columns are never required from the caller."""
        if self.name.lower() in RESERVED_COLUMNS:
            return False
        return not self.nullable and self.default is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "nullable": self.nullable,
            "default": None if self.default is None else str(self.default),
        }


def type_family(column_type: str) -> str:
    """Map a SQL type name onto a coercion family.

    Returns one of ``integer``, ``number``, ``boolean``, ``timestamp``,
    ``date``, ``json`` or ``text``.
    """
    t = column_type.lower().split("(")[0].strip()
    if "int" in t or "serial" in t:
        return "integer"
    if any(marker in t for marker in ("numeric", "decimal", "real", "double", "float")):
        return "number"
    if "bool" in t:
        return "boolean"
    if "timestamp" in t or "datetime" in t:
        return "timestamp"
    if t == "date":
        return "date"
    if "json" in t:
        return "json"
    return "text"


def _parse_datetime(raw: Any) -> datetime | None:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(raw / 1000)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def convert_value(raw: Any, column_type: str) -> Any:
    """Convert raw input to the Python value for a column type.

    Empty input (None or ``""``) becomes None. Integer and float columns
    yield None when parsing fails, as do unparseable dates. Booleans accept
    ``True``, ``1``, ``"true"`` and ``"1"``; everything else is False. JSON
    columns take objects as-is, parse strings, and keep unparseable strings.
    All other types are stringified.
    """
    if raw is None or raw == "":
        return None

    family = type_family(column_type)

    if family == "integer":
        if isinstance(raw, bool):
            return int(raw)
        try:
            return int(raw)
        except (TypeError, ValueError):
            try:
                return int(float(raw))
            except (TypeError, ValueError, OverflowError):
                return None

    if family == "number":
        if isinstance(raw, bool):
            return float(raw)
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    if family == "boolean":
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, (int, float)):
            return raw == 1
        return str(raw).strip().lower() in TRUE_STRINGS

    if family == "timestamp":
        return _parse_datetime(raw)

    if family == "date":
        parsed = _parse_datetime(raw)
        return parsed.date() if parsed is not None else None

    if family == "json":
        if isinstance(raw, (dict, list)):
            return raw
        if isinstance(raw, str):
            try:
                return json.loads(raw)
            except ValueError:
                return raw
        return raw

    if isinstance(raw, (dict, list)):
        return json.dumps(raw)
    if isinstance(raw, (datetime, date)):
        return raw.isoformat()
    return str(raw)


def validate_and_convert(
    data: dict[str, Any],
    schema: list[ColumnInfo],
    partial: bool = False,
) -> dict[str, Any]:
    """Convert a row against a table schema, collecting every error.

    Args:
        data: Column/value pairs from the workflow
        schema: Discovered columns
        partial: Skip the required-column check for columns not supplied,
            as for updates

    Returns:
        Converted column/value pairs

    Raises:
        SchemaValidationError: With every unknown column, missing required
            column and failed conversion
    """
    columns = {column.name: column for column in schema}
    errors: list[str] = []
    converted: dict[str, Any] = {}

    for key, raw in data.items():
        column = columns.get(key)
        if column is None:
            errors.append(f"Unknown column: {key}")
            continue

        value = convert_value(raw, column.type)
        if value is None and raw not in (None, "") and column.family != "text":
            errors.append(f"Column {key} expects {column.family}, got {raw!r}")
            continue
        if value is None and column.required:
            errors.append(f"Column {key} is required")
            continue
        converted[key] = value

    if not partial:
        for column in schema:
            if column.required and column.name not in data:
                errors.append(f"Column {column.name} is required")

    if errors:
        raise SchemaValidationError(errors)
    return converted


class SchemaRegistry:
    """Discovers and caches table schemas for one job.

    The cache lives only as long as the registry; a new job rediscovers.
    """

    def __init__(self, store: TableStore) -> None:
        self._store = store
        self._cache: dict[str, list[ColumnInfo]] = {}

    async def discover_schema(self, table_name: str, app_id: int | str) -> list[ColumnInfo]:
        """Read a table's columns from the catalog.

        Raises:
            IdentifierError: If the table name is invalid
            TableNotFoundError: If the table does not exist
        """
        validate_table_name(table_name, app_id)
        if table_name in self._cache:
            return self._cache[table_name]

        raw_columns = await self._store.get_columns(table_name)
        if raw_columns is None:
            raise TableNotFoundError(table_name)

        schema = []
        for raw in raw_columns:
            column_type = raw["type"]
            schema.append(
                ColumnInfo(
                    name=raw["name"],
                    type=str(column_type),
                    nullable=bool(raw.get("nullable", True)),
                    default=raw.get("default"),
                    max_length=getattr(column_type, "length", None),
                    precision=getattr(column_type, "precision", None),
                    scale=getattr(column_type, "scale", None),
                )
            )

        self._cache[table_name] = schema
        logger.debug("schema_discovered", table=table_name, column_count=len(schema))
        return schema

    async def table_exists(self, table_name: str, app_id: int | str) -> bool:
        validate_table_name(table_name, app_id)
        if table_name in self._cache:
            return True
        return await self._store.table_exists(table_name)

    def invalidate(self, table_name: str | None = None) -> None:
        if table_name is None:
            self._cache.clear()
        else:
            self._cache.pop(table_name, None)
