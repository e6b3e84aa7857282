"""Tests for identifier rules, query building, type coercion and security."""

from datetime import date, datetime

import pytest

from blockflow.core.identifiers import (
    IdentifierError,
    qualify_table_name,
    validate_column_name,
    validate_table_name,
)
from blockflow.core.query_builder import QueryBuildError, SafeQueryBuilder
from blockflow.core.rate_limit import InMemoryRateLimiter, create_rate_limiter
from blockflow.core.schema import (
    ColumnInfo,
    SchemaRegistry,
    SchemaValidationError,
    TableNotFoundError,
    convert_value,
    type_family,
    validate_and_convert,
)
from blockflow.core.security import (
    AppAccessError,
    RateLimitExceededError,
    SecurityError,
    SecurityValidator,
)
from blockflow.core.table_store import TableStore, to_named_params
from blockflow.integrations.ownership import AppOwnership


class StaticAppOwnership(AppOwnership):
    """Fixed ``appId -> ownerId`` mapping."""

    def __init__(self, owners: dict[int, str]) -> None:
        self._owners = owners

    async def app_exists(self, app_id) -> bool:
        return int(app_id) in self._owners

    async def owns_app(self, app_id, user_id: str) -> bool:
        return self._owners.get(int(app_id)) == str(user_id)


class TestIdentifiers:
    """Tests for table and column name validation."""

    def test_valid_table_name(self):
        assert validate_table_name("app_7_contacts", 7) == "app_7_contacts"

    @pytest.mark.parametrize(
        "name",
        [
            "contacts",
            "app_8_contacts",
            "app_7_",
            "7_app_contacts",
            "app_7_con-tacts",
            "app_7_pg_shadow",
            "app_7_dropped",
            "app_7_" + "x" * 60,
            "",
            None,
        ],
    )
    def test_invalid_table_names(self, name):
        with pytest.raises(IdentifierError):
            validate_table_name(name, 7)

    def test_reserved_columns_refused_for_writes(self):
        with pytest.raises(IdentifierError) as exc_info:
            validate_column_name("id")
        assert "reserved" in str(exc_info.value)

    def test_reserved_columns_allowed_in_conditions(self):
        assert validate_column_name("created_at", allow_reserved=True) == "created_at"

    def test_column_with_keyword_rejected(self):
        with pytest.raises(IdentifierError):
            validate_column_name("union_total")

    def test_qualify_bare_suffix(self):
        assert qualify_table_name("contacts", 3) == "app_3_contacts"
        assert qualify_table_name("app_9_contacts", 3) == "app_9_contacts"


class TestSafeQueryBuilder:
    """Tests for parameterized statement construction."""

    def test_select_with_conditions_order_and_pagination(self):
        builder = SafeQueryBuilder(app_id=7)
        builder.add_where("status", "=", "open")
        builder.add_where("priority", "in", [1, 2], logic="or")
        builder.add_order_by("created_at", "desc")
        builder.set_limit(20).set_offset(40)

        built = builder.build_select_query("app_7_tickets")

        assert built.query == (
            'SELECT * FROM "app_7_tickets" WHERE "status" = $1 '
            'OR "priority" IN ($2, $3) ORDER BY "created_at" DESC LIMIT 20 OFFSET 40'
        )
        assert built.params == ["open", 1, 2]

    def test_null_operators_take_no_parameter(self):
        builder = SafeQueryBuilder(app_id=1)
        builder.add_where("email", "is not null")
        built = builder.build_count_query("app_1_contacts")
        assert built.query == 'SELECT COUNT(*) AS total FROM "app_1_contacts" WHERE "email" IS NOT NULL'
        assert built.params == []

    def test_update_numbers_set_params_after_where(self):
        builder = SafeQueryBuilder(app_id=1)
        builder.add_where("id", "=", 5)
        built = builder.build_update_query("app_1_contacts", {"name": "Ada"})
        assert built.query == 'UPDATE "app_1_contacts" SET "name" = $2 WHERE "id" = $1 RETURNING *'
        assert built.params == [5, "Ada"]

    def test_repeated_builds_do_not_accumulate_params(self):
        builder = SafeQueryBuilder(app_id=1)
        builder.add_where("id", "=", 5)
        first = builder.build_update_query("app_1_contacts", {"name": "Ada"})
        second = builder.build_update_query("app_1_contacts", {"name": "Grace"})
        inserted = builder.build_insert_query("app_1_contacts", {"name": "Linus"})

        assert first.params == [5, "Ada"]
        assert second.params == [5, "Grace"]
        assert second.query == first.query
        assert inserted.params == ["Linus"]
        assert builder.build_count_query("app_1_contacts").params == [5]

    def test_update_without_where_refused(self):
        with pytest.raises(QueryBuildError):
            SafeQueryBuilder(app_id=1).build_update_query("app_1_contacts", {"name": "Ada"})

    def test_insert(self):
        built = SafeQueryBuilder(app_id=1).build_insert_query(
            "app_1_contacts", {"name": "Ada", "email": "ada@example.com"}
        )
        assert built.query == (
            'INSERT INTO "app_1_contacts" ("name", "email") VALUES ($1, $2) RETURNING *'
        )

    def test_operator_whitelist(self):
        with pytest.raises(SecurityError):
            SafeQueryBuilder(app_id=1).add_where("name", "; DROP", "x")

    def test_empty_in_list_refused(self):
        with pytest.raises(QueryBuildError):
            SafeQueryBuilder(app_id=1).add_where("name", "IN", [])

    def test_other_apps_table_refused(self):
        with pytest.raises(IdentifierError):
            SafeQueryBuilder(app_id=1).build_select_query("app_2_contacts")

    def test_reset_clears_state(self):
        builder = SafeQueryBuilder(app_id=1)
        builder.add_where("name", "=", "Ada").set_limit(3)
        builder.reset()
        assert builder.build_select_query("app_1_contacts").query == 'SELECT * FROM "app_1_contacts"'

    def test_named_params_rewrite(self):
        builder = SafeQueryBuilder(app_id=1)
        builder.add_where("a", "=", 1).add_where("b", "=", 2)
        sql, params = to_named_params(builder.build_select_query("app_1_t"))
        assert sql == 'SELECT * FROM "app_1_t" WHERE "a" = :p1 AND "b" = :p2'
        assert params == {"p1": 1, "p2": 2}


class TestTypeCoercion:
    """Tests for converting raw input to column types."""

    @pytest.mark.parametrize(
        "column_type, family",
        [
            ("INTEGER", "integer"),
            ("BIGSERIAL", "integer"),
            ("NUMERIC(10, 2)", "number"),
            ("BOOLEAN", "boolean"),
            ("TIMESTAMP WITH TIME ZONE", "timestamp"),
            ("DATETIME", "timestamp"),
            ("DATE", "date"),
            ("JSONB", "json"),
            ("VARCHAR(255)", "text"),
        ],
    )
    def test_type_family(self, column_type, family):
        assert type_family(column_type) == family

    def test_conversions(self):
        assert convert_value("42", "integer") == 42
        assert convert_value("4.7", "integer") == 4
        assert convert_value("abc", "integer") is None
        assert convert_value("2.5", "numeric") == 2.5
        assert convert_value("true", "boolean") is True
        assert convert_value("1", "boolean") is True
        assert convert_value("yes", "boolean") is False
        assert convert_value("", "text") is None
        assert convert_value('{"a": 1}', "jsonb") == {"a": 1}
        assert convert_value("not json", "json") == "not json"
        assert convert_value({"a": 1}, "text") == '{"a": 1}'
        assert convert_value("2024-03-01", "date") == date(2024, 3, 1)
        assert convert_value("2024-03-01T10:00:00", "timestamp") == datetime(2024, 3, 1, 10, 0)

    def test_validate_and_convert_collects_every_error(self):
        schema = [
            ColumnInfo(name="id", type="INTEGER", nullable=False),
            ColumnInfo(name="name", type="TEXT", nullable=False),
            ColumnInfo(name="age", type="INTEGER"),
        ]
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_and_convert({"age": "old", "nickname": "x"}, schema)

        errors = exc_info.value.errors
        assert "Unknown column: nickname" in errors
        assert any("age" in e for e in errors)
        assert "Column name is required" in errors
        assert not any("Column id" in e for e in errors)

    def test_partial_skips_missing_required(self):
        schema = [ColumnInfo(name="name", type="TEXT", nullable=False), ColumnInfo(name="age", type="INTEGER")]
        assert validate_and_convert({"age": "30"}, schema, partial=True) == {"age": 30}


class TestSecurityValidator:
    """Tests for value screening, condition limits and access checks."""

    @pytest.fixture
    def validator(self) -> SecurityValidator:
        return SecurityValidator(InMemoryRateLimiter(), StaticAppOwnership({1: "owner"}))

    @pytest.mark.parametrize(
        "value",
        [
            "'; DROP TABLE users; --",
            "1 OR 1=1",
            "x UNION SELECT password",
            "<script>alert(1)</script>",
            "javascript:alert(1)",
            "a" * 10001,
        ],
    )
    def test_dangerous_values_rejected(self, validator, value):
        with pytest.raises(SecurityError):
            validator.validate_value(value)

    def test_plain_values_pass(self, validator):
        assert validator.validate_value("Ada Lovelace") == "Ada Lovelace"
        assert validator.validate_value({"name": "Ada", "tags": ["a", "b"]}) == {
            "name": "Ada",
            "tags": ["a", "b"],
        }

    def test_condition_limits(self, validator):
        validator.validate_conditions([{"field": "id", "operator": "in", "value": [1, 2]}])
        with pytest.raises(SecurityError):
            validator.validate_conditions([{"field": "a", "value": 1}] * 51)
        with pytest.raises(SecurityError):
            validator.validate_conditions([{"field": "a", "operator": "IN", "value": "1,2"}])
        with pytest.raises(SecurityError):
            validator.validate_conditions([{"field": "a", "operator": "IN", "value": list(range(101))}])
        with pytest.raises(SecurityError):
            validator.validate_conditions({"field": "a"})
        with pytest.raises(IdentifierError):
            validator.validate_conditions([{"field": "a;b", "value": 1}])

    def test_pagination(self, validator):
        validator.validate_pagination(1000, 0)
        with pytest.raises(SecurityError):
            validator.validate_pagination(1001, 0)
        with pytest.raises(SecurityError):
            validator.validate_pagination(10, -1)

    async def test_rate_limit_per_operation(self):
        validator = SecurityValidator(InMemoryRateLimiter(), rate_limits={"db.find": 2})
        assert await validator.check_rate_limit("u1", "db.find")
        assert await validator.check_rate_limit("u1", "db.find")
        assert not await validator.check_rate_limit("u1", "db.find")
        assert await validator.check_rate_limit("u2", "db.find")
        with pytest.raises(RateLimitExceededError):
            await validator.enforce_rate_limit("u1", "db.find")

    async def test_app_access(self, validator):
        await validator.assert_app_access(1, "owner")
        assert await validator.validate_app_access(1, "owner")

        with pytest.raises(AppAccessError) as exc_info:
            await validator.assert_app_access(1, "someone-else")
        assert exc_info.value.status_code == 403

        with pytest.raises(AppAccessError) as exc_info:
            await validator.assert_app_access(2, "owner")
        assert exc_info.value.status_code == 404


class TestInMemoryRateLimiter:
    """Tests for the sliding window."""

    async def test_window_slides(self):
        now = [0.0]
        limiter = InMemoryRateLimiter(clock=lambda: now[0])

        assert await limiter.hit("k", 2, 10)
        now[0] = 5
        assert await limiter.hit("k", 2, 10)
        assert not await limiter.hit("k", 2, 10)

        now[0] = 10
        assert await limiter.hit("k", 2, 10)
        assert not await limiter.hit("k", 2, 10)

    async def test_reset(self):
        limiter = InMemoryRateLimiter()
        assert await limiter.hit("k", 1, 60)
        assert not await limiter.hit("k", 1, 60)
        await limiter.reset("k")
        assert await limiter.hit("k", 1, 60)

    async def test_idle_keys_are_dropped(self):
        now = [0.0]
        limiter = InMemoryRateLimiter(clock=lambda: now[0])
        for user in ("u1", "u2", "u3"):
            assert await limiter.hit(f"{user}:db.find", 5, 10)
        assert len(limiter) == 3

        now[0] = 30
        assert await limiter.hit("u4:db.find", 5, 10)
        assert len(limiter) == 1

    async def test_rejected_zero_limit_keeps_no_key(self):
        limiter = InMemoryRateLimiter()
        assert not await limiter.hit("k", 0, 60)
        assert len(limiter) == 0

    def test_factory_falls_back_without_redis(self):
        assert isinstance(create_rate_limiter("redis", None), InMemoryRateLimiter)


class TestTableStore:
    """Tests for provisioning and querying app-scoped tables."""

    async def test_create_insert_select(self, table_store: TableStore):
        await table_store.create_table("app_1_contacts", 1, ["name", "email"])
        assert await table_store.table_exists("app_1_contacts")

        insert = SafeQueryBuilder(1).build_insert_query("app_1_contacts", {"name": "Ada"})
        rows = await table_store.fetch(insert)
        assert rows[0]["name"] == "Ada"
        assert rows[0]["id"] == 1

        builder = SafeQueryBuilder(1)
        builder.add_where("name", "=", "Ada")
        assert await table_store.fetch_value(builder.build_count_query("app_1_contacts")) == 1

    async def test_add_columns(self, table_store: TableStore):
        await table_store.create_table("app_1_notes", 1, ["title"])
        await table_store.add_columns("app_1_notes", 1, ["body"])
        names = [c["name"] for c in await table_store.get_columns("app_1_notes")]
        assert names == ["id", "title", "created_at", "updated_at", "body"]

    async def test_schema_discovery(self, table_store: TableStore):
        schemas = SchemaRegistry(table_store)
        with pytest.raises(TableNotFoundError):
            await schemas.discover_schema("app_1_missing", 1)

        await table_store.create_table("app_1_contacts", 1, ["name"])
        schema = await schemas.discover_schema("app_1_contacts", 1)
        by_name = {c.name: c for c in schema}
        assert by_name["name"].family == "text"
        assert by_name["id"].family == "integer"
        assert not by_name["id"].required

    async def test_transactional_rollback(self, session_maker):
        setup = TableStore(session_maker)
        await setup.create_table("app_1_orders", 1, ["item"])

        store = TableStore(session_maker, transactional=True)
        await store.fetch(SafeQueryBuilder(1).build_insert_query("app_1_orders", {"item": "tea"}))
        await store.finish(commit=False)

        count = SafeQueryBuilder(1).build_count_query("app_1_orders")
        assert await setup.fetch_value(count) == 0

        await store.fetch(SafeQueryBuilder(1).build_insert_query("app_1_orders", {"item": "tea"}))
        await store.finish(commit=True)
        assert await setup.fetch_value(count) == 1
