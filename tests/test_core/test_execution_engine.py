"""Tests for graph parsing and the workflow walk."""

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome, ConditionBlock
from blockflow.blocks.registry import BlockRegistry
from blockflow.core.execution_engine import (
    CancellationToken,
    GraphValidationError,
    WorkflowExecutionEngine,
)
from blockflow.models.execution import ExecutionStatus
from blockflow.models.node import BlockCategory, BlockDefinition


class SetBlock(BaseBlock[dict[str, Any]]):
    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="test.set",
            display_name="Set",
            description="Store one value in the context",
            category=BlockCategory.ACTION,
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        return BlockOutcome(
            success=True,
            payload={"key": config["key"], "seen": ctx.data.get("seen", [])},
            context_updates={
                config["key"]: config.get("value"),
                "seen": [*ctx.data.get("seen", []), config["key"]],
            },
        )


class FailBlock(BaseBlock[dict[str, Any]]):
    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="test.fail",
            display_name="Fail",
            description="Always raises",
            category=BlockCategory.ACTION,
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        raise RuntimeError("boom")


class SleepBlock(BaseBlock[dict[str, Any]]):
    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="test.sleep",
            display_name="Sleep",
            description="Wait for a while",
            category=BlockCategory.ACTION,
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        await asyncio.sleep(float(config.get("seconds", 5)))
        return BlockOutcome(success=True)


class RecordingSleepBlock(BaseBlock[dict[str, Any]]):
    finished: list[str] = []

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="test.record",
            display_name="Record",
            description="Sleep, then record that the block finished",
            category=BlockCategory.ACTION,
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        await asyncio.sleep(float(config.get("seconds", 0.2)))
        self.finished.append(config.get("name", "done"))
        return BlockOutcome(success=True)


class FlagBlock(ConditionBlock[dict[str, Any]]):
    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="test.flag",
            display_name="Flag",
            description="Branch on a configured flag",
            category=BlockCategory.CONDITION,
        )

    async def evaluate(self, config: dict[str, Any], ctx: BlockContext) -> tuple[bool, dict[str, Any]]:
        if config.get("explode"):
            raise ValueError("cannot decide")
        return bool(config.get("value")), {}


@pytest.fixture
def registry() -> BlockRegistry:
    registry = BlockRegistry()
    registry.load_builtin_blocks()
    for block_class in (SetBlock, FailBlock, SleepBlock, RecordingSleepBlock, FlagBlock):
        registry.register(block_class)
    return registry


@pytest.fixture
def engine(registry: BlockRegistry) -> WorkflowExecutionEngine:
    return WorkflowExecutionEngine(registry=registry, max_steps=50, timeout=5)


def set_node(node_id: str, key: str, value: Any = True) -> dict[str, Any]:
    return {"id": node_id, "label": "test.set", "config": {"key": key, "value": value}}


async def walk(engine: WorkflowExecutionEngine, nodes, edges, context=None, **kwargs):
    graph = engine.parse_graph(nodes, edges)
    return await engine.run(graph, context or {}, SimpleNamespace(), app_id=1, user_id="u1", **kwargs)


def visited(outcome) -> list[str]:
    return [result.node_id for result in outcome.results]


class TestGraphValidation:
    """Tests for rejecting malformed graphs before they run."""

    def test_fan_out_from_action_rejected(self, engine):
        nodes = [set_node("a", "x"), set_node("b", "y"), set_node("c", "z")]
        edges = [{"source": "a", "target": "b"}, {"source": "a", "target": "c"}]
        with pytest.raises(GraphValidationError) as exc_info:
            engine.parse_graph(nodes, edges)
        assert "only condition blocks may branch" in exc_info.value.errors[0]

    def test_unknown_label_and_dangling_edge(self, engine):
        nodes = [{"id": "a", "label": "no.such.block", "category": "Action"}]
        edges = [{"source": "a", "target": "ghost"}]
        with pytest.raises(GraphValidationError) as exc_info:
            engine.parse_graph(nodes, edges)
        errors = exc_info.value.errors
        assert any("Unknown block 'no.such.block'" in e for e in errors)
        assert any("ghost" in e for e in errors)

    def test_duplicate_branch_rejected(self, engine):
        nodes = [
            {"id": "c", "label": "test.flag", "config": {"value": True}},
            set_node("a", "x"),
            set_node("b", "y"),
        ]
        edges = [
            {"source": "c", "target": "a", "sourceHandle": "yes"},
            {"source": "c", "target": "b", "branch": "true"},
        ]
        with pytest.raises(GraphValidationError):
            engine.parse_graph(nodes, edges)

    def test_missing_id_reported(self, engine):
        with pytest.raises(GraphValidationError):
            engine.parse_graph([{"label": "test.set"}], [])

    def test_category_filled_from_registry(self, engine):
        graph = engine.parse_graph([set_node("a", "x")], [])
        assert graph.nodes[0].category == BlockCategory.ACTION

    def test_editor_node_shape(self, engine):
        graph = engine.parse_graph(
            [{"id": "t", "data": {"label": "notify.toast", "message": "Hi"}}],
            [],
        )
        assert graph.nodes[0].label == "notify.toast"
        assert graph.nodes[0].config == {"message": "Hi"}
        assert graph.nodes[0].category == BlockCategory.ACTION


class TestWorkflowWalk:
    """Tests for traversal, context threading and stop conditions."""

    async def test_linear_chain_threads_context(self, engine):
        nodes = [set_node("a", "first", 1), set_node("b", "second", 2)]
        edges = [{"source": "a", "target": "b"}]

        outcome = await walk(engine, nodes, edges, context={"seed": "s"})

        assert outcome.status == ExecutionStatus.COMPLETED
        assert visited(outcome) == ["a", "b"]
        assert outcome.results[1].result["seen"] == ["first"]
        assert outcome.context.to_dict() == {
            "seed": "s",
            "first": 1,
            "second": 2,
            "seen": ["first", "second"],
        }
        assert outcome.context.version == 2

    async def test_template_references_resolve(self, engine):
        nodes = [
            set_node("a", "name", "Ada"),
            {"id": "b", "label": "test.set", "config": {"key": "greeting", "value": "Hi {{name}}"}},
        ]
        outcome = await walk(engine, nodes, [{"source": "a", "target": "b"}])
        assert outcome.context["greeting"] == "Hi Ada"

    @pytest.mark.parametrize("flag, expected", [(True, ["c", "yes"]), (False, ["c", "no"])])
    async def test_condition_picks_branch(self, engine, flag, expected):
        nodes = [
            {"id": "c", "label": "test.flag", "config": {"value": flag}},
            set_node("yes", "took_true"),
            set_node("no", "took_false"),
        ]
        edges = [
            {"source": "c", "target": "yes", "sourceHandle": "yes"},
            {"source": "c", "target": "no", "sourceHandle": "no"},
        ]
        outcome = await walk(engine, nodes, edges)
        assert visited(outcome) == expected

    async def test_failed_condition_takes_false_branch(self, engine):
        nodes = [
            {"id": "c", "label": "test.flag", "config": {"explode": True}},
            set_node("yes", "took_true"),
            set_node("no", "took_false"),
        ]
        edges = [
            {"source": "c", "target": "yes", "branch": "true"},
            {"source": "c", "target": "no", "branch": "false"},
        ]
        outcome = await walk(engine, nodes, edges)

        assert visited(outcome) == ["c", "no"]
        assert outcome.results[0].result["success"] is False
        assert outcome.results[0].result["error"] == "cannot decide"
        assert outcome.status == ExecutionStatus.COMPLETED

    async def test_unlabeled_edge_is_condition_fallback(self, engine):
        nodes = [
            {"id": "c", "label": "test.flag", "config": {"value": False}},
            set_node("yes", "took_true"),
            set_node("other", "fallback"),
        ]
        edges = [
            {"source": "c", "target": "yes", "branch": "true"},
            {"source": "c", "target": "other"},
        ]
        outcome = await walk(engine, nodes, edges)
        assert visited(outcome) == ["c", "other"]

    async def test_failed_action_continues_walk(self, engine):
        nodes = [{"id": "f", "label": "test.fail"}, set_node("after", "reached")]
        outcome = await walk(engine, nodes, [{"source": "f", "target": "after"}])

        assert visited(outcome) == ["f", "after"]
        assert outcome.results[0].to_dict() == {
            "nodeId": "f",
            "result": {
                "type": "test.fail",
                "success": False,
                "error": "boom",
                "errorCode": "EXECUTION_ERROR",
            },
        }
        assert outcome.status == ExecutionStatus.COMPLETED
        assert not outcome.all_succeeded

    async def test_nodes_visited_once(self, engine):
        nodes = [set_node("s", "start"), set_node("a", "a"), set_node("b", "b")]
        edges = [
            {"source": "s", "target": "a"},
            {"source": "a", "target": "b"},
            {"source": "b", "target": "a"},
        ]
        outcome = await walk(engine, nodes, edges)
        assert visited(outcome) == ["s", "a", "b"]

    async def test_start_nodes_in_declaration_order(self, engine):
        nodes = [set_node("one", "one"), set_node("two", "two")]
        outcome = await walk(engine, nodes, [])
        assert visited(outcome) == ["one", "two"]

    async def test_entry_label_selects_start_nodes(self, engine):
        nodes = [
            {"id": "click", "label": "onClick", "config": {}},
            set_node("other", "other"),
            set_node("after", "after"),
        ]
        edges = [{"source": "click", "target": "after"}]
        outcome = await walk(engine, nodes, edges, entry_label="onClick")
        assert visited(outcome) == ["click", "after"]

    async def test_max_steps(self, registry):
        engine = WorkflowExecutionEngine(registry=registry, max_steps=2, timeout=5)
        nodes = [set_node("a", "a"), set_node("b", "b"), set_node("c", "c")]
        edges = [{"source": "a", "target": "b"}, {"source": "b", "target": "c"}]

        outcome = await walk(engine, nodes, edges)

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.error_code == "MAX_STEPS_EXCEEDED"
        assert visited(outcome) == ["a", "b"]

    async def test_timeout_abandons_running_block(self, registry):
        engine = WorkflowExecutionEngine(registry=registry, max_steps=50, timeout=0.2)
        nodes = [set_node("a", "a"), {"id": "slow", "label": "test.sleep", "config": {"seconds": 5}}]

        outcome = await walk(engine, nodes, [{"source": "a", "target": "slow"}])

        assert outcome.status == ExecutionStatus.TIMEOUT
        assert outcome.error_code == "TIMEOUT"
        assert outcome.results[-1].result["errorCode"] == "TIMEOUT"
        assert outcome.context["a"] is True

    async def test_cancellation_mid_block(self, engine):
        token = CancellationToken()
        nodes = [
            {"id": "slow", "label": "test.sleep", "config": {"seconds": 5}},
            set_node("after", "after"),
        ]
        task = asyncio.create_task(
            walk(engine, nodes, [{"source": "slow", "target": "after"}], token=token)
        )
        await asyncio.sleep(0.05)
        token.cancel("Stopped by user")
        outcome = await asyncio.wait_for(task, timeout=2)

        assert outcome.status == ExecutionStatus.CANCELLED
        assert outcome.error == "Stopped by user"
        assert visited(outcome) == ["slow"]

    async def test_cancelled_before_start(self, engine):
        token = CancellationToken()
        token.cancel()
        outcome = await walk(engine, [set_node("a", "a")], [], token=token)
        assert outcome.status == ExecutionStatus.CANCELLED
        assert outcome.results == []

    async def test_outcome_rendering(self, engine):
        outcome = await walk(engine, [set_node("a", "a", 1)], [])
        rendered = outcome.to_dict()
        assert rendered["status"] == "completed"
        assert rendered["results"][0]["nodeId"] == "a"
        assert rendered["context"]["a"] == 1
        assert "error" not in rendered

    async def test_caller_cancellation_stops_running_block(self, engine):
        RecordingSleepBlock.finished.clear()
        nodes = [{"id": "slow", "label": "test.record", "config": {"seconds": 0.2, "name": "slow"}}]

        task = asyncio.create_task(walk(engine, nodes, []))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.3)

        assert RecordingSleepBlock.finished == []
