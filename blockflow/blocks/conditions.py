"""Condition blocks.

A condition reports a branch decision: ``true``/``false`` for boolean checks
or a case label for ``switch``. The engine follows the matching edge.
"""

import json
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

from blockflow.blocks.base import BlockContext, BlockValidationError, ConditionBlock
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

TEXT_OPERATORS = frozenset(
    {
        "equals",
        "equals_exactly",
        "not_equals",
        "contains",
        "not_contains",
        "starts_with",
        "ends_with",
        "is_empty",
        "is_not_empty",
        "matches_pattern",
    }
)
NUMBER_OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "greater_than",
        "less_than",
        "greater_than_or_equal",
        "at_least",
        "less_than_or_equal",
        "at_most",
        "between",
        "is_number",
        "is_not_number",
    }
)
DATE_OPERATORS = frozenset(
    {
        "equals",
        "is_exactly",
        "not_equals",
        "is_after",
        "is_before",
        "is_today",
        "is_this_week",
        "is_this_month",
        "is_within_last_days",
        "is_within_next_days",
    }
)
LIST_OPERATORS = frozenset(
    {
        "includes",
        "not_includes",
        "includes_any_of",
        "includes_all_of",
        "includes_none_of",
        "has_length",
        "has_length_greater_than",
        "has_length_less_than",
        "is_empty",
        "is_not_empty",
    }
)

OPERATORS_BY_TYPE = {
    "text": TEXT_OPERATORS,
    "number": NUMBER_OPERATORS,
    "date": DATE_OPERATORS,
    "list": LIST_OPERATORS,
}

# Operators that never look at the right-hand value
UNARY_OPERATORS = frozenset(
    {"is_empty", "is_not_empty", "is_number", "is_not_number", "is_today", "is_this_week", "is_this_month"}
)

DATE_FORMATS = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
    "DD-MM-YYYY": "%d-%m-%Y",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_date(value: Any, date_format: str | None = None) -> datetime | None:
    """Parse a date or datetime into a naive UTC datetime.

    Without a format, ISO 8601 is tried first and then the US, European
    and dashed day-first forms in that order.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text:
            return None
        parsed = None
        if date_format and date_format in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, DATE_FORMATS[date_format])
            except ValueError:
                return None
        else:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                for pattern in ("%m/%d/%Y", "%d/%m/%Y", "%d-%m-%Y"):
                    try:
                        parsed = datetime.strptime(text, pattern)
                        break
                    except ValueError:
                        continue
        if parsed is None:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _as_float(value: Any, side: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{side} value "{value}" is not a valid number') from None


def _as_int(value: Any, operator: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f'Right value "{value}" must be a number for {operator} operator') from None


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [item.strip() for item in value.split(",")]
        if isinstance(parsed, list):
            return parsed
        return [value]
    return [value]


def compare_text(left: Any, right: Any, operator: str, options: dict[str, Any]) -> bool:
    left_value, right_value = _as_text(left), _as_text(right)
    if options.get("trimSpaces"):
        left_value, right_value = left_value.strip(), right_value.strip()
    if options.get("ignoreCase"):
        left_value, right_value = left_value.lower(), right_value.lower()

    if operator in ("equals", "equals_exactly"):
        return left_value == right_value
    if operator == "not_equals":
        return left_value != right_value
    if operator == "contains":
        return right_value in left_value
    if operator == "not_contains":
        return right_value not in left_value
    if operator == "starts_with":
        return left_value.startswith(right_value)
    if operator == "ends_with":
        return left_value.endswith(right_value)
    if operator == "is_empty":
        return left_value == ""
    if operator == "is_not_empty":
        return left_value != ""
    if operator == "matches_pattern":
        try:
            flags = re.IGNORECASE if options.get("ignoreCase") else 0
            return re.search(right_value, left_value, flags) is not None
        except re.error:
            raise ValueError(f"Invalid regex pattern: {right_value}") from None
    raise ValueError(f"Unknown text operator: {operator}")


def compare_number(left: Any, right: Any, operator: str) -> bool:
    if operator in ("is_number", "is_not_number"):
        try:
            float(left)
            is_number = True
        except (TypeError, ValueError):
            is_number = False
        return is_number if operator == "is_number" else not is_number

    left_number = _as_float(left, "Left")
    if operator == "between":
        parts = [p.strip() for p in _as_text(right).split(",")]
        try:
            low, high = float(parts[0]), float(parts[1])
        except (IndexError, ValueError):
            raise ValueError(f'Between operator requires "min,max" format, got: {right}') from None
        return low <= left_number <= high

    right_number = _as_float(right, "Right")
    if operator == "equals":
        return left_number == right_number
    if operator == "not_equals":
        return left_number != right_number
    if operator == "greater_than":
        return left_number > right_number
    if operator == "less_than":
        return left_number < right_number
    if operator in ("greater_than_or_equal", "at_least"):
        return left_number >= right_number
    if operator in ("less_than_or_equal", "at_most"):
        return left_number <= right_number
    raise ValueError(f"Unknown number operator: {operator}")


def compare_date(left: Any, right: Any, operator: str) -> bool:
    left_date = parse_date(left)
    if left_date is None:
        raise ValueError(f'Left value "{left}" is not a valid date')

    now = _utcnow()
    today = datetime(now.year, now.month, now.day)

    if operator == "is_today":
        return left_date.date() == today.date()
    if operator == "is_this_week":
        # Weeks start on Sunday
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return start <= left_date < start + timedelta(days=7)
    if operator == "is_this_month":
        return left_date.year == now.year and left_date.month == now.month
    if operator == "is_within_last_days":
        days = _as_int(right, operator)
        return now - timedelta(days=days) <= left_date <= now
    if operator == "is_within_next_days":
        days = _as_int(right, operator)
        return now <= left_date <= now + timedelta(days=days)

    right_date = parse_date(right)
    if right_date is None:
        raise ValueError(f'Right value "{right}" is not a valid date')
    if operator in ("equals", "is_exactly"):
        return left_date == right_date
    if operator == "not_equals":
        return left_date != right_date
    if operator == "is_after":
        return left_date > right_date
    if operator == "is_before":
        return left_date < right_date
    raise ValueError(f"Unknown date operator: {operator}")


def compare_list(left: Any, right: Any, operator: str, options: dict[str, Any]) -> bool:
    left_items = _as_list(left)
    if operator in ("includes", "not_includes"):
        right_items = [right]
    else:
        right_items = _as_list(right)

    def norm(item: Any) -> str:
        text = _as_text(item)
        return text.lower() if options.get("ignoreCase") else text

    left_set = [norm(item) for item in left_items]
    right_set = [norm(item) for item in right_items]

    if operator == "includes":
        return right_set[0] in left_set
    if operator == "not_includes":
        return right_set[0] not in left_set
    if operator == "includes_any_of":
        return any(item in left_set for item in right_set)
    if operator == "includes_all_of":
        return all(item in left_set for item in right_set)
    if operator == "includes_none_of":
        return not any(item in left_set for item in right_set)
    if operator == "has_length":
        return len(left_items) == _as_int(right, operator)
    if operator == "has_length_greater_than":
        return len(left_items) > _as_int(right, operator)
    if operator == "has_length_less_than":
        return len(left_items) < _as_int(right, operator)
    if operator == "is_empty":
        return not left_items
    if operator == "is_not_empty":
        return bool(left_items)
    raise ValueError(f"Unknown list operator: {operator}")


class MatchBlock(ConditionBlock[dict[str, Any]]):
    """Compare two values as text, numbers, dates or lists.

    Example config:
        {"leftValue": "{{formData.age}}", "rightValue": "18",
         "comparisonType": "number", "operator": "at_least"}
    """

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="match",
            display_name="Match",
            description="Compare two values and branch on the result",
            category=BlockCategory.CONDITION,
            config=[
                ConfigField(name="leftValue", required=True),
                ConfigField(name="rightValue"),
                ConfigField(
                    name="comparisonType",
                    default="text",
                    options=["text", "number", "date", "list"],
                ),
                ConfigField(name="operator", default="equals"),
                ConfigField(name="options", type=ConfigFieldType.JSON, default={}),
            ],
            outputs=["matches"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        if config.get("leftValue") is None:
            raise BlockValidationError("Left value is required for match comparison", "leftValue")
        comparison = config.get("comparisonType") or "text"
        operator = config.get("operator") or "equals"
        known = OPERATORS_BY_TYPE.get(comparison, TEXT_OPERATORS)
        if operator not in known:
            raise BlockValidationError(f"Unknown {comparison} operator: {operator}", "operator")
        if operator not in UNARY_OPERATORS and config.get("rightValue") is None:
            raise BlockValidationError("Right value is required for match comparison", "rightValue")
        return config

    async def evaluate(self, config: dict[str, Any], ctx: BlockContext) -> tuple[bool, dict[str, Any]]:
        comparison = config.get("comparisonType") or "text"
        operator = config.get("operator") or "equals"
        options = config.get("options") or {}
        left, right = config.get("leftValue"), config.get("rightValue")

        if comparison == "number":
            matches = compare_number(left, right, operator)
        elif comparison == "date":
            matches = compare_date(left, right, operator)
        elif comparison == "list":
            matches = compare_list(left, right, operator, options)
        else:
            matches = compare_text(left, right, operator, options)

        return matches, {
            "leftValue": _as_text(left),
            "rightValue": _as_text(right),
            "operator": operator,
            "comparisonType": comparison,
        }


def _selected_ids(config: dict[str, Any]) -> list[str]:
    ids = config.get("selectedElementIds") or config.get("fields")
    if not ids and config.get("selectedElementId"):
        ids = [config["selectedElementId"]]
    if isinstance(ids, str):
        ids = [item.strip() for item in ids.split(",") if item.strip()]
    return list(ids or [])


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (list, dict, tuple)):
        return len(value) > 0
    return bool(str(value).strip())


class IsFilledBlock(ConditionBlock[dict[str, Any]]):
    """Check that form fields are filled in.

    Values come from ``formData`` first and the context second. ``mode``
    ``all`` (default) needs every field filled, ``any`` needs one.
    """

    result_key = "isFilled"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="isFilled",
            display_name="Is Filled",
            description="Branch on whether form fields have values",
            category=BlockCategory.CONDITION,
            config=[
                ConfigField(name="selectedElementIds", type=ConfigFieldType.ARRAY, required=True),
                ConfigField(name="mode", default="all", options=["all", "any"]),
            ],
            outputs=["isFilled"],
            tags=["form"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        if not _selected_ids(config):
            raise BlockValidationError("No form elements selected for validation", "selectedElementIds")
        return config

    async def evaluate(self, config: dict[str, Any], ctx: BlockContext) -> tuple[bool, dict[str, Any]]:
        form_data = ctx.data.get("formData") or {}
        results = []
        for element_id in _selected_ids(config):
            value = form_data.get(element_id) if isinstance(form_data, dict) else None
            if value is None:
                value = ctx.data.get(element_id)
            results.append({"elementId": element_id, "isFilled": _is_filled(value)})

        filled = sum(1 for r in results if r["isFilled"])
        if config.get("mode") == "any":
            decision = filled > 0
        else:
            decision = filled == len(results)
        return decision, {
            "filledCount": filled,
            "results": results,
            "message": f"{filled}/{len(results)} elements are filled",
        }


class SwitchBlock(ConditionBlock[dict[str, Any]]):
    """Multi-way branch on a value.

    Cases compare case-insensitively as strings. The branch is the matched
    case's ``caseLabel`` (or its value), else ``default``.
    """

    context_key = "switchResult"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="switch",
            display_name="Switch",
            description="Follow the edge of the first matching case",
            category=BlockCategory.CONDITION,
            config=[
                ConfigField(name="inputValue", required=True),
                ConfigField(name="cases", type=ConfigFieldType.ARRAY, required=True),
            ],
            outputs=["switchResult"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        if config.get("inputValue") is None:
            raise BlockValidationError("Input value is required for switch", "inputValue")
        cases = config.get("cases")
        if not isinstance(cases, list) or not cases:
            raise BlockValidationError("At least one case is required for switch", "cases")
        return config

    async def evaluate(self, config: dict[str, Any], ctx: BlockContext) -> tuple[str, dict[str, Any]]:
        needle = _as_text(config["inputValue"]).lower()
        matched = "default"
        for case in config["cases"]:
            if not isinstance(case, dict):
                continue
            case_value = _as_text(case.get("caseValue"))
            if needle == case_value.lower():
                matched = str(case.get("caseLabel") or case_value)
                break

        return matched, {"matchedCase": matched, "inputValue": _as_text(config["inputValue"])}


class RoleIsBlock(ConditionBlock[dict[str, Any]]):
    """Check the current user's role.

    The role comes from ``user.role`` in the context. A single
    ``requiredRole`` (default ``user``) is compared unless ``checkMultiple``
    is set, in which case any of ``roles`` matches.
    """

    result_key = "isValid"
    context_key = "roleCheck"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="roleIs",
            display_name="Role Is",
            description="Branch on the current user's role",
            category=BlockCategory.CONDITION,
            config=[
                ConfigField(name="requiredRole", default="user"),
                ConfigField(name="roles", type=ConfigFieldType.ARRAY, default=[]),
                ConfigField(name="checkMultiple", type=ConfigFieldType.BOOLEAN, default=False),
            ],
            outputs=["roleCheck"],
            tags=["auth"],
        )

    async def evaluate(self, config: dict[str, Any], ctx: BlockContext) -> tuple[bool, dict[str, Any]]:
        user = ctx.data.get("user") or {}
        user_role = user.get("role") if isinstance(user, dict) else None
        if not user_role:
            return False, {"message": "User role missing"}

        user_role = str(user_role).strip().lower()
        if config.get("checkMultiple"):
            allowed = [str(r).strip().lower() for r in config.get("roles") or []]
            valid = user_role in allowed
        else:
            required = str(config.get("requiredRole") or "").strip().lower() or "user"
            valid = user_role == required
        return valid, {"userRole": user_role}


class DateValidBlock(ConditionBlock[dict[str, Any]]):
    """Validate date fields from ``formData`` against rules.

    Supported rules: ``required``, ``minDate``, ``maxDate``,
    ``businessDaysOnly``, ``futureOnly`` and ``pastOnly``.
    """

    result_key = "isValid"
    context_key = "dateValidation"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="dateValid",
            display_name="Date Valid",
            description="Branch on whether date fields parse and satisfy rules",
            category=BlockCategory.CONDITION,
            config=[
                ConfigField(name="selectedElementIds", type=ConfigFieldType.ARRAY, required=True),
                ConfigField(
                    name="dateFormat",
                    options=["auto-detect", *DATE_FORMATS.keys()],
                    default="auto-detect",
                ),
                ConfigField(name="validationRules", type=ConfigFieldType.JSON, default={}),
            ],
            outputs=["dateValidation"],
            tags=["form"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        if not _selected_ids(config):
            raise BlockValidationError("No date elements selected for validation", "selectedElementIds")
        return config

    @staticmethod
    def check(value: Any, rules: dict[str, Any], date_format: str | None) -> list[str]:
        """Return the rule violations for one value."""
        if value is None or not str(value).strip():
            return ["Date is required"] if rules.get("required") else []

        parsed = parse_date(value, date_format)
        if parsed is None:
            return [f"Invalid date format. Expected {date_format or 'a recognizable date'}"]

        errors = []
        min_date = parse_date(rules.get("minDate"), date_format)
        if min_date is not None and parsed < min_date:
            errors.append(f"Date must be on or after {min_date.date().isoformat()}")
        max_date = parse_date(rules.get("maxDate"), date_format)
        if max_date is not None and parsed > max_date:
            errors.append(f"Date must be on or before {max_date.date().isoformat()}")
        if rules.get("businessDaysOnly") and parsed.weekday() >= 5:
            errors.append("Date must be a business day (Monday-Friday)")
        today = _utcnow().date()
        if rules.get("futureOnly") and parsed.date() <= today:
            errors.append("Date must be in the future")
        if rules.get("pastOnly") and parsed.date() >= today:
            errors.append("Date must be in the past")
        return errors

    async def evaluate(self, config: dict[str, Any], ctx: BlockContext) -> tuple[bool, dict[str, Any]]:
        form_data = ctx.data.get("formData") or {}
        rules = config.get("validationRules") or {}
        date_format = config.get("dateFormat")
        if date_format == "auto-detect":
            date_format = None

        results = []
        for element_id in _selected_ids(config):
            value = form_data.get(element_id) if isinstance(form_data, dict) else None
            errors = self.check(value, rules, date_format)
            results.append({"elementId": element_id, "isValid": not errors, "errors": errors})

        valid_count = sum(1 for r in results if r["isValid"])
        return valid_count == len(results), {
            "validCount": valid_count,
            "validationResults": results,
            "message": f"{valid_count}/{len(results)} dates are valid",
        }

