"""Parameterized SQL construction for app-scoped tables.

Values are always bound as positional parameters (``$1``, ``$2``, ...);
only identifiers that pass the identifier validator are written into the
statement text, quoted, and they are validated again at build time.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from blockflow.core.identifiers import (
    DataLayerError,
    IdentifierError,
    quote_identifier,
    validate_column_name,
    validate_table_name,
)
from blockflow.core.security import ALLOWED_OPERATORS, SecurityError, normalize_operator

logger = structlog.get_logger()

NULL_OPERATORS = frozenset({"IS NULL", "IS NOT NULL"})
LIST_OPERATORS = frozenset({"IN", "NOT IN"})
LOGIC_KEYWORDS = frozenset({"AND", "OR"})
SORT_DIRECTIONS = frozenset({"ASC", "DESC"})


class QueryBuildError(DataLayerError):
    """Query cannot be built from the supplied parts."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "QUERY_BUILD_ERROR")


@dataclass(frozen=True)
class BuiltQuery:
    """SQL text plus its positional parameters."""

    query: str
    params: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"query": self.query, "params": list(self.params)}


@dataclass
class _WhereCondition:
    field: str
    operator: str
    placeholders: list[str]
    logic: str


class SafeQueryBuilder:
    """Stateful builder for one parameterized statement at a time.

    Call :meth:`reset` before reusing an instance for another statement.

    Example usage:
        builder = SafeQueryBuilder(app_id=7)
        builder.add_where("status", "=", "open")
        builder.add_order_by("created_at", "DESC")
        builder.set_limit(20)
        built = builder.build_select_query("app_7_tickets")
        # SELECT * FROM "app_7_tickets" WHERE "status" = $1
        #   ORDER BY "created_at" DESC LIMIT 20
    """

    def __init__(self, app_id: int | str) -> None:
        self.app_id = app_id
        self.reset()

    def reset(self) -> "SafeQueryBuilder":
        """Clear parameters, conditions, ordering and pagination."""
        self._params: list[Any] = []
        self._where: list[_WhereCondition] = []
        self._order_by: list[tuple[str, str]] = []
        self._limit: int | None = None
        self._offset: int | None = None
        return self

    @property
    def params(self) -> list[Any]:
        return list(self._params)

    @property
    def has_where(self) -> bool:
        return bool(self._where)

    def _add_param(self, value: Any) -> str:
        self._params.append(value)
        return f"${len(self._params)}"

    def add_where(
        self,
        field: str,
        operator: str,
        value: Any = None,
        logic: str = "AND",
    ) -> "SafeQueryBuilder":
        """Add a WHERE condition.

        ``IS NULL``/``IS NOT NULL`` take no parameter; ``IN``/``NOT IN``
        expand to one placeholder per element.

        Raises:
            IdentifierError: If the field name is invalid
            SecurityError: If the operator is not whitelisted
            QueryBuildError: If the value shape does not fit the operator
        """
        column = validate_column_name(field, allow_reserved=True)
        op = normalize_operator(operator)
        if op not in ALLOWED_OPERATORS:
            raise SecurityError(f"Invalid operator: {operator}", "INVALID_OPERATOR")

        joiner = normalize_operator(logic)
        if joiner not in LOGIC_KEYWORDS:
            raise QueryBuildError(f"Invalid logic operator: {logic}")

        placeholders: list[str] = []
        if op in LIST_OPERATORS:
            if not isinstance(value, (list, tuple)) or not value:
                raise QueryBuildError(f"{op} operator requires a non-empty array value")
            placeholders = [self._add_param(item) for item in value]
        elif op not in NULL_OPERATORS:
            placeholders = [self._add_param(value)]

        self._where.append(_WhereCondition(column, op, placeholders, joiner))
        return self

    def add_order_by(self, field: str, direction: str = "ASC") -> "SafeQueryBuilder":
        """Add an ORDER BY column.

        Raises:
            IdentifierError: If the field name is invalid
            QueryBuildError: If the direction is not ASC or DESC
        """
        column = validate_column_name(field, allow_reserved=True)
        normalized = normalize_operator(direction)
        if normalized not in SORT_DIRECTIONS:
            raise QueryBuildError(f"Invalid sort direction: {direction}")
        self._order_by.append((column, normalized))
        return self

    def set_limit(self, limit: int) -> "SafeQueryBuilder":
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise QueryBuildError("Limit must be a non-negative integer")
        self._limit = limit
        return self

    def set_offset(self, offset: int) -> "SafeQueryBuilder":
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise QueryBuildError("Offset must be a non-negative integer")
        self._offset = offset
        return self

    def build_where_clause(self) -> str:
        """Render the WHERE clause, or an empty string without conditions."""
        if not self._where:
            return ""

        parts: list[str] = []
        for index, condition in enumerate(self._where):
            # Re-validate in case the condition list was tampered with
            column = quote_identifier(validate_column_name(condition.field, allow_reserved=True))
            if condition.operator in NULL_OPERATORS:
                clause = f"{column} {condition.operator}"
            elif condition.operator in LIST_OPERATORS:
                clause = f"{column} {condition.operator} ({', '.join(condition.placeholders)})"
            else:
                clause = f"{column} {condition.operator} {condition.placeholders[0]}"
            if index > 0:
                clause = f"{condition.logic} {clause}"
            parts.append(clause)

        return "WHERE " + " ".join(parts)

    def _table(self, table_name: str) -> str:
        return quote_identifier(validate_table_name(table_name, self.app_id))

    def build_select_query(
        self,
        table_name: str,
        columns: list[str] | None = None,
    ) -> BuiltQuery:
        """Build a SELECT statement.

        Args:
            table_name: App-scoped table name
            columns: Columns to return; all columns when omitted
        """
        table = self._table(table_name)
        if columns:
            column_list = ", ".join(
                quote_identifier(validate_column_name(c, allow_reserved=True)) for c in columns
            )
        else:
            column_list = "*"

        sql = [f"SELECT {column_list} FROM {table}"]
        where = self.build_where_clause()
        if where:
            sql.append(where)
        if self._order_by:
            order = ", ".join(
                f"{quote_identifier(validate_column_name(c, allow_reserved=True))} {d}"
                for c, d in self._order_by
            )
            sql.append(f"ORDER BY {order}")
        if self._limit is not None:
            sql.append(f"LIMIT {int(self._limit)}")
        if self._offset is not None:
            sql.append(f"OFFSET {int(self._offset)}")

        built = BuiltQuery(" ".join(sql), list(self._params))
        logger.debug("select_query_built", table=table_name, param_count=len(built.params))
        return built

    def build_count_query(self, table_name: str) -> BuiltQuery:
        """Build ``SELECT COUNT(*)`` over the current WHERE conditions."""
        sql = f"SELECT COUNT(*) AS total FROM {self._table(table_name)}"
        where = self.build_where_clause()
        if where:
            sql = f"{sql} {where}"
        return BuiltQuery(sql, list(self._params))

    def build_update_query(
        self,
        table_name: str,
        data: dict[str, Any],
        allow_reserved: frozenset[str] = frozenset(),
    ) -> BuiltQuery:
        """Build an ``UPDATE ... RETURNING *`` statement.

        SET parameters are numbered after any WHERE parameters already
        bound, so conditions may be added before or after the data is known.

        Args:
            table_name: App-scoped table name
            data: Column/value pairs to set
            allow_reserved: Reserved columns the caller may set (such as
                ``updated_at`` maintained by the engine itself)

        Raises:
            QueryBuildError: If ``data`` is empty or no WHERE condition exists
        """
        if not data:
            raise QueryBuildError("Update data cannot be empty")
        if not self._where:
            raise QueryBuildError("UPDATE requires at least one WHERE condition")

        table = self._table(table_name)
        params = list(self._params)
        assignments = []
        for column, value in data.items():
            name = validate_column_name(column, allow_reserved=column in allow_reserved)
            params.append(value)
            assignments.append(f"{quote_identifier(name)} = ${len(params)}")

        sql = f"UPDATE {table} SET {', '.join(assignments)} {self.build_where_clause()} RETURNING *"
        built = BuiltQuery(sql, params)
        logger.debug("update_query_built", table=table_name, param_count=len(built.params))
        return built

    def build_insert_query(
        self,
        table_name: str,
        data: dict[str, Any],
        allow_reserved: frozenset[str] = frozenset(),
    ) -> BuiltQuery:
        """Build an ``INSERT ... RETURNING *`` statement.

        Raises:
            QueryBuildError: If ``data`` is empty
        """
        if not data:
            raise QueryBuildError("Insert data cannot be empty")

        table = self._table(table_name)
        params: list[Any] = []
        columns = []
        placeholders = []
        for column, value in data.items():
            name = validate_column_name(column, allow_reserved=column in allow_reserved)
            params.append(value)
            columns.append(quote_identifier(name))
            placeholders.append(f"${len(params)}")

        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join(placeholders)}) RETURNING *"
        )
        return BuiltQuery(sql, params)


__all__ = [
    "BuiltQuery",
    "IdentifierError",
    "QueryBuildError",
    "SafeQueryBuilder",
]
