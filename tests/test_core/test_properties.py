"""Property-based tests for the data layer, the execution context and the walk."""

import asyncio
import re
from types import SimpleNamespace
from typing import Any

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome
from blockflow.blocks.registry import BlockRegistry
from blockflow.core.context import ExecutionContext
from blockflow.core.execution_engine import WorkflowExecutionEngine
from blockflow.core.identifiers import IDENTIFIER_PATTERN, IdentifierError, validate_table_name
from blockflow.core.query_builder import QueryBuildError, SafeQueryBuilder
from blockflow.core.schema import convert_value
from blockflow.models.node import BlockCategory, BlockDefinition

identifier_text = st.text(alphabet=st.characters(min_codepoint=32, max_codepoint=126), max_size=70)
scalar_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(),
    st.floats(allow_nan=False),
    st.text(max_size=30),
)
json_values = st.recursive(
    scalar_values,
    lambda children: st.lists(children, max_size=3) | st.dictionaries(st.text(max_size=5), children, max_size=3),
    max_leaves=8,
)


@given(app_id=st.integers(min_value=1, max_value=10_000), name=identifier_text)
def test_table_names_are_rejected_or_scoped(app_id, name):
    try:
        table = validate_table_name(name, app_id)
    except IdentifierError:
        return
    assert table.startswith(f"app_{app_id}_")
    assert IDENTIFIER_PATTERN.match(table)
    assert len(table) <= 63


@settings(max_examples=50)
@given(
    values=st.lists(st.text(min_size=1, max_size=20).map(lambda s: f"<{s}>"), min_size=1, max_size=8),
    in_values=st.lists(st.integers(), min_size=1, max_size=5),
)
def test_values_only_travel_as_parameters(values, in_values):
    builder = SafeQueryBuilder(app_id=3)
    for index, value in enumerate(values):
        builder.add_where(f"field{index}", "=", value)
    builder.add_where("tags", "IN", in_values, logic="OR")

    built = builder.build_select_query("app_3_records")

    placeholders = re.findall(r"\$\d+", built.query)
    assert len(placeholders) == len(built.params) == len(values) + len(in_values)
    assert placeholders == [f"${n}" for n in range(1, len(built.params) + 1)]
    for value in values:
        assert value not in built.query


@given(raw=st.one_of(scalar_values, st.sampled_from(["true", "1", "TRUE", "false", "0", "yes"])))
def test_boolean_conversion_yields_bool_or_none(raw):
    converted = convert_value(raw, "boolean")
    if raw is None or raw == "":
        assert converted is None
    else:
        assert isinstance(converted, bool)


@given(
    base=st.dictionaries(st.text(min_size=1, max_size=8), json_values, max_size=6),
    updates=st.dictionaries(st.text(min_size=1, max_size=8), json_values, max_size=6),
)
def test_merge_never_mutates_and_only_grows(base, updates):
    ctx = ExecutionContext(base)
    before = ctx.to_dict()

    merged = ctx.merge(updates)

    assert ctx.to_dict() == before
    assert set(merged) >= set(ctx)
    assert set(merged) >= set(updates)
    for key, value in updates.items():
        assert merged[key] == value


@given(data=st.dictionaries(st.text(min_size=1, max_size=12), scalar_values, max_size=5))
def test_update_without_where_always_refused(data):
    with pytest.raises(QueryBuildError):
        SafeQueryBuilder(app_id=1).build_update_query("app_1_records", data)


@given(raw=st.one_of(st.booleans(), st.integers(), st.sampled_from(["true", "1", "0", "no", ""])))
def test_boolean_conversion_is_idempotent(raw):
    once = convert_value(raw, "boolean")
    assert convert_value(once, "boolean") == once


@given(
    raw=st.one_of(
        st.integers().map(str), st.integers(), st.floats(allow_nan=False).map(str), st.text(max_size=8)
    )
)
def test_integer_conversion_is_idempotent(raw):
    once = convert_value(raw, "integer")
    assert convert_value(once, "integer") == once


@given(
    raw=st.one_of(
        st.dates().map(lambda d: d.isoformat()),
        st.datetimes().map(lambda d: d.isoformat()),
        st.text(max_size=12),
    )
)
def test_date_conversion_is_idempotent(raw):
    once = convert_value(raw, "date")
    assert convert_value(once, "date") == once


class AlwaysFailsBlock(BaseBlock[dict[str, Any]]):
    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="test.always_fails",
            display_name="Always fails",
            description="Raise on every run",
            category=BlockCategory.ACTION,
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        raise RuntimeError("boom")


failing_registry = BlockRegistry()
failing_registry.register(AlwaysFailsBlock)


@settings(max_examples=25, deadline=None)
@given(length=st.integers(min_value=1, max_value=12))
def test_every_visited_node_has_one_result_when_all_fail(length):
    engine = WorkflowExecutionEngine(registry=failing_registry, max_steps=50, timeout=5)
    nodes = [{"id": f"n{i}", "label": "test.always_fails"} for i in range(length)]
    edges = [{"source": f"n{i}", "target": f"n{i + 1}"} for i in range(length - 1)]
    graph = engine.parse_graph(nodes, edges)

    outcome = asyncio.run(engine.run(graph, {}, SimpleNamespace(), app_id=1, user_id="u1"))

    assert [result.node_id for result in outcome.results] == [node["id"] for node in nodes]
    assert not any(result.success for result in outcome.results)
