"""Security validation for dynamic-table operations.

Screens values before they are bound as query parameters, enforces limits on
query shape, applies per-user rate limits and confirms app ownership.
"""

import re
from typing import Any

import structlog

from blockflow.core.identifiers import DataLayerError, validate_column_name
from blockflow.core.rate_limit import InMemoryRateLimiter, RateLimiter
from blockflow.integrations.ownership import AppOwnership

logger = structlog.get_logger()

SQL_INJECTION_PATTERNS = (
    re.compile(
        r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE|UNION|SCRIPT)\b",
        re.IGNORECASE,
    ),
    re.compile(r"(--|/\*|\*/|;|'|\"|`)"),
    re.compile(r"(\bOR\b|\bAND\b).*(\b=\b|\bLIKE\b)", re.IGNORECASE),
    re.compile(r"(INFORMATION_SCHEMA|SYSOBJECTS|SYSCOLUMNS)", re.IGNORECASE),
    re.compile(r"(xp_|sp_|fn_)", re.IGNORECASE),
)

XSS_PATTERN = re.compile(r"<script|javascript:|on\w+\s*=", re.IGNORECASE)

MAX_STRING_LENGTH = 10000
MAX_ARRAY_LENGTH = 1000
MAX_OBJECT_PROPERTIES = 100
MAX_CONDITIONS = 50
MAX_IN_VALUES = 100
MAX_PAGE_SIZE = 1000

ALLOWED_OPERATORS = frozenset(
    {
        "=",
        "!=",
        "<>",
        ">",
        "<",
        ">=",
        "<=",
        "LIKE",
        "ILIKE",
        "IN",
        "NOT IN",
        "IS NULL",
        "IS NOT NULL",
    }
)

DEFAULT_RATE_LIMITS = {
    "db.find": 100,
    "db.update": 50,
    "db.create": 20,
}


class SecurityError(DataLayerError):
    """Value, query shape or access rejected by the security layer."""

    def __init__(self, message: str, error_code: str = "SECURITY_ERROR") -> None:
        super().__init__(message, error_code)


class RateLimitExceededError(SecurityError):
    """Too many operations of one kind inside the rate-limit window."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            "RATE_LIMIT_EXCEEDED",
        )
        self.operation = operation


class AppAccessError(SecurityError):
    """Requesting user does not own the app, or the app does not exist."""

    def __init__(self, message: str = "Access denied to this app", status_code: int = 403) -> None:
        super().__init__(message, "APP_ACCESS_DENIED")
        self.status_code = status_code


def normalize_operator(operator: object) -> str:
    """Upper-case an operator and collapse inner whitespace."""
    if not isinstance(operator, str):
        raise SecurityError(f"Invalid operator: {operator}", "INVALID_OPERATOR")
    return " ".join(operator.upper().split())


class SecurityValidator:
    """Validates values, conditions and access for dynamic-table operations.

    The rate limiter and the ownership lookup are injected so tests can use
    deterministic doubles and deployments can share state through Redis.

    Example usage:
        validator = SecurityValidator(rate_limiter, ownership)
        validator.validate_conditions([{"field": "status", "operator": "=", "value": "new"}])
        if not await validator.check_rate_limit(user_id, "db.find"):
            ...
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        ownership: AppOwnership | None = None,
        rate_limits: dict[str, int] | None = None,
        default_rate_limit: int = 10,
        window_seconds: float = 60.0,
    ) -> None:
        self._rate_limiter = rate_limiter or InMemoryRateLimiter()
        self._ownership = ownership
        self._rate_limits = dict(DEFAULT_RATE_LIMITS)
        if rate_limits:
            self._rate_limits.update(rate_limits)
        self._default_rate_limit = default_rate_limit
        self._window_seconds = window_seconds

    def validate_value(self, value: Any, expected_type: str | None = None) -> Any:
        """Screen a value before it is bound as a query parameter.

        Strings are length-capped and checked against the injection and
        script patterns; lists and dicts are size-capped and validated
        recursively, with dict keys treated as column names.

        Args:
            value: Value to check
            expected_type: Declared SQL type of the target column, if known

        Returns:
            The value, with containers rebuilt from validated members

        Raises:
            SecurityError: If any part of the value is rejected
        """
        if value is None:
            return None

        if isinstance(value, str):
            if len(value) > MAX_STRING_LENGTH:
                raise SecurityError(
                    f"String value too long. Maximum {MAX_STRING_LENGTH} characters allowed",
                    "VALUE_TOO_LONG",
                )
            for pattern in SQL_INJECTION_PATTERNS:
                if pattern.search(value):
                    logger.warning("sql_pattern_rejected", expected_type=expected_type)
                    raise SecurityError(
                        "String value contains potentially dangerous SQL patterns",
                        "SQL_INJECTION_PATTERN",
                    )
            if XSS_PATTERN.search(value):
                logger.warning("script_pattern_rejected", expected_type=expected_type)
                raise SecurityError(
                    "String value contains potentially dangerous script content",
                    "XSS_PATTERN",
                )
            return value

        if isinstance(value, (list, tuple)):
            if len(value) > MAX_ARRAY_LENGTH:
                raise SecurityError(
                    f"Array too long. Maximum {MAX_ARRAY_LENGTH} elements allowed",
                    "ARRAY_TOO_LONG",
                )
            return [self.validate_value(item, expected_type) for item in value]

        if isinstance(value, dict):
            if len(value) > MAX_OBJECT_PROPERTIES:
                raise SecurityError(
                    f"Object has too many properties. Maximum {MAX_OBJECT_PROPERTIES} allowed",
                    "OBJECT_TOO_LARGE",
                )
            sanitized = {}
            for key, item in value.items():
                validate_column_name(key)
                sanitized[key] = self.validate_value(item, expected_type)
            return sanitized

        return value

    def validate_conditions(self, conditions: Any) -> None:
        """Validate WHERE conditions supplied by a workflow author.

        Each condition is a mapping with ``field``, ``operator`` and
        ``value``. Fields may reference reserved columns such as ``id``.

        Raises:
            SecurityError: If the list or any condition is rejected
            IdentifierError: If a field name is invalid
        """
        if not isinstance(conditions, list):
            raise SecurityError("Conditions must be an array", "INVALID_CONDITIONS")

        if len(conditions) > MAX_CONDITIONS:
            raise SecurityError(
                f"Too many conditions. Maximum {MAX_CONDITIONS} allowed",
                "TOO_MANY_CONDITIONS",
            )

        for condition in conditions:
            if not isinstance(condition, dict):
                raise SecurityError("Each condition must be an object", "INVALID_CONDITIONS")

            validate_column_name(condition.get("field"), allow_reserved=True)

            raw_operator = condition.get("operator", "=")
            operator = normalize_operator(raw_operator)
            if operator not in ALLOWED_OPERATORS:
                raise SecurityError(f"Invalid operator: {raw_operator}", "INVALID_OPERATOR")

            value = condition.get("value")
            if operator in ("IN", "NOT IN"):
                if not isinstance(value, list):
                    raise SecurityError(
                        f"{operator} operator requires an array value",
                        "INVALID_CONDITIONS",
                    )
                if len(value) > MAX_IN_VALUES:
                    raise SecurityError(
                        f"IN/NOT IN arrays cannot exceed {MAX_IN_VALUES} elements",
                        "INVALID_CONDITIONS",
                    )

            if value is not None:
                self.validate_value(value, "text")

    def validate_pagination(self, limit: Any, offset: Any) -> None:
        """Validate pagination parameters.

        Raises:
            SecurityError: If limit is outside 0..1000 or offset is negative
        """
        if limit is not None:
            if isinstance(limit, bool) or not isinstance(limit, int) or not 0 <= limit <= MAX_PAGE_SIZE:
                raise SecurityError(
                    f"Limit must be an integer between 0 and {MAX_PAGE_SIZE}",
                    "INVALID_PAGINATION",
                )
        if offset is not None:
            if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
                raise SecurityError(
                    "Offset must be a non-negative integer",
                    "INVALID_PAGINATION",
                )

    def rate_limit_for(self, operation: str) -> int:
        """Request ceiling for one operation per window."""
        return self._rate_limits.get(operation, self._default_rate_limit)

    async def check_rate_limit(self, user_id: str, operation: str) -> bool:
        """Record one operation for a user and report whether it is allowed."""
        allowed = await self._rate_limiter.hit(
            f"{user_id}:{operation}",
            self.rate_limit_for(operation),
            self._window_seconds,
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                user_id=user_id,
                operation=operation,
                limit=self.rate_limit_for(operation),
            )
        return allowed

    async def enforce_rate_limit(self, user_id: str, operation: str) -> None:
        """Like :meth:`check_rate_limit`, raising when the limit is hit.

        Raises:
            RateLimitExceededError: If the operation is over its limit
        """
        if not await self.check_rate_limit(user_id, operation):
            raise RateLimitExceededError(operation)

    async def validate_app_access(self, app_id: int | str, user_id: str) -> bool:
        """Return True if ``user_id`` owns ``app_id``."""
        if self._ownership is None:
            logger.error("app_ownership_not_configured", app_id=str(app_id))
            return False
        return await self._ownership.owns_app(app_id, user_id)

    async def assert_app_access(self, app_id: int | str, user_id: str) -> None:
        """Require ownership of an app.

        Raises:
            AppAccessError: 404-flavoured when the app does not exist,
                403-flavoured when it belongs to someone else
        """
        if self._ownership is None or not await self._ownership.app_exists(app_id):
            raise AppAccessError("App not found", status_code=404)
        if not await self._ownership.owns_app(app_id, user_id):
            logger.warning("app_access_denied", app_id=str(app_id), user_id=user_id)
            raise AppAccessError("Access denied to this app", status_code=403)
