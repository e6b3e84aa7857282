"""Identifier validation for app-scoped tables and their columns.

Identifiers are the only tokens ever interpolated into SQL text, so every
table and column name passes through here first. Values never do; they are
bound as parameters by the query builder.
"""

import re

import structlog

logger = structlog.get_logger()

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

FORBIDDEN_KEYWORDS = (
    "select",
    "insert",
    "update",
    "delete",
    "drop",
    "create",
    "alter",
    "truncate",
    "union",
    "exec",
)

SYSTEM_CATALOG_MARKERS = (
    "pg_",
    "information_schema",
    "sys",
    "mysql_",
    "sqlite_",
)

RESERVED_COLUMNS = frozenset({"id", "created_at", "updated_at", "app_id"})


class DataLayerError(Exception):
    """Base exception for errors raised before SQL reaches the database."""

    def __init__(self, message: str, error_code: str = "DATA_LAYER_ERROR") -> None:
        super().__init__(message)
        self.error_code = error_code


class IdentifierError(DataLayerError):
    """Table or column name rejected by the identifier rules."""

    def __init__(self, message: str, identifier: object = None) -> None:
        super().__init__(message, "INVALID_IDENTIFIER")
        self.identifier = identifier


def table_prefix(app_id: int | str) -> str:
    """Return the mandatory table-name prefix for an app."""
    return f"app_{app_id}_"


def _check_grammar(name: object, kind: str) -> str:
    if not isinstance(name, str) or not name:
        raise IdentifierError(f"{kind} name is required and must be a string", name)
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise IdentifierError(
            f"{kind} name too long. Maximum {MAX_IDENTIFIER_LENGTH} characters allowed",
            name,
        )
    if not IDENTIFIER_PATTERN.match(name):
        raise IdentifierError(
            f"{kind} name must start with a letter and contain only "
            "alphanumeric characters and underscores",
            name,
        )
    return name


def _check_forbidden(name: str, kind: str) -> None:
    lowered = name.lower()
    for marker in SYSTEM_CATALOG_MARKERS:
        if marker in lowered:
            raise IdentifierError(f"{kind} name contains forbidden pattern: {name}", name)
    for keyword in FORBIDDEN_KEYWORDS:
        if keyword in lowered:
            raise IdentifierError(
                f"{kind} name contains a reserved SQL keyword: {name}", name
            )


def validate_table_name(name: object, app_id: int | str) -> str:
    """Validate an app-scoped table name.

    Args:
        name: Candidate table name
        app_id: App that must own the table

    Returns:
        The validated name, unchanged

    Raises:
        IdentifierError: If the name breaks the grammar, contains a forbidden
            keyword or catalog marker, or lacks the ``app_<appId>_`` prefix
    """
    table = _check_grammar(name, "Table")
    _check_forbidden(table, "Table")

    prefix = table_prefix(app_id)
    if not table.startswith(prefix) or len(table) == len(prefix):
        logger.warning("table_prefix_rejected", table=table, app_id=str(app_id))
        raise IdentifierError(f"Table name must start with {prefix} for security", table)

    return table


def validate_column_name(name: object, allow_reserved: bool = False) -> str:
    """Validate a column name.

    Reserved columns (``id``, ``created_at``, ``updated_at``, ``app_id``) are
    refused as write targets and accepted when ``allow_reserved`` is set, as
    for WHERE-clause fields.

    Raises:
        IdentifierError: If the name is not acceptable
    """
    column = _check_grammar(name, "Column")

    if column.lower() in RESERVED_COLUMNS:
        if not allow_reserved:
            raise IdentifierError(f"Column name '{column}' is reserved", column)
        return column

    _check_forbidden(column, "Column")
    return column


def qualify_table_name(name: str, app_id: int | str) -> str:
    """Add the app prefix to a bare table suffix.

    Names that already look app-scoped (``app_...``) are returned as-is, so a
    name scoped to another app still fails :func:`validate_table_name`.
    """
    if name.startswith("app_"):
        return name
    return f"{table_prefix(app_id)}{name}"


def quote_identifier(name: str) -> str:
    """Double-quote a validated identifier for interpolation into SQL."""
    return f'"{name}"'
