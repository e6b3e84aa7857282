"""Workflow execution engine.

Walks a node/edge graph one node at a time, dispatching each node to its
block and threading a versioned context from one block to the next.

Traversal rules:
    - Start nodes are nodes without incoming edges, in declaration order.
      When an entry label is given only start nodes with that label run.
    - After a condition, the edge whose ``branch`` matches the decision is
      followed; a failed condition takes the ``false`` (or ``default``)
      branch. An unlabeled edge from a condition is its fallback.
    - Any other node follows its single outgoing edge, whether it
      succeeded or failed.
    - Every node is visited at most once.
"""

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import structlog

from blockflow.blocks.base import BlockContext, BlockOutcome, BlockServices
from blockflow.blocks.registry import BlockRegistry, get_block_registry
from blockflow.config import settings
from blockflow.core.context import ExecutionContext
from blockflow.models.execution import ExecutionStatus
from blockflow.models.node import BlockCategory, NodeResult, WorkflowEdge, WorkflowNode

logger = structlog.get_logger()

FAILED_CONDITION_BRANCHES = ("false", "default")


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ExecutionError(Exception):
    """Base exception for execution errors."""

    def __init__(self, message: str, error_code: str = "EXECUTION_ERROR") -> None:
        super().__init__(message)
        self.error_code = error_code


class GraphValidationError(ExecutionError):
    """Graph rejected before execution; ``errors`` lists every problem."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid workflow graph: {'; '.join(errors)}", "INVALID_GRAPH")
        self.errors = errors


class ExecutionTimeoutError(ExecutionError):
    """Execution exceeded its deadline."""

    def __init__(self, message: str = "Execution timed out") -> None:
        super().__init__(message, "TIMEOUT")


class CancellationToken:
    """Cooperative cancellation shared between a run and whoever controls it.

    The engine checks the token between nodes and abandons the running
    block as soon as it is cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Execution cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class WorkflowGraph:
    """Parsed nodes and edges, with adjacency in declaration order."""

    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]

    def __post_init__(self) -> None:
        self._by_id = {node.id: node for node in self.nodes}
        self._outgoing: dict[str, list[WorkflowEdge]] = {node.id: [] for node in self.nodes}
        self._incoming: dict[str, int] = {node.id: 0 for node in self.nodes}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            if edge.target in self._incoming:
                self._incoming[edge.target] += 1

    def node(self, node_id: str) -> WorkflowNode | None:
        return self._by_id.get(node_id)

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return self._outgoing.get(node_id, [])

    def start_nodes(self, entry_label: str | None = None) -> list[WorkflowNode]:
        starts = [node for node in self.nodes if self._incoming.get(node.id, 0) == 0]
        if entry_label:
            starts = [node for node in starts if node.label == entry_label]
        return starts

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }


def parse_graph(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    registry: BlockRegistry | None = None,
) -> WorkflowGraph:
    """Parse raw node and edge dictionaries and validate the result.

    Nodes without a category take the category of their block.

    Raises:
        GraphValidationError: With every malformed node or edge and every
            rule :func:`validate_graph` reports
    """
    registry = registry or get_block_registry()
    errors: list[str] = []
    parsed_nodes: list[WorkflowNode] = []
    parsed_edges: list[WorkflowEdge] = []

    for index, raw in enumerate(nodes or []):
        if not isinstance(raw, dict):
            errors.append(f"Node #{index} must be an object")
            continue
        raw = dict(raw)
        data = raw.get("data") if isinstance(raw.get("data"), dict) else raw
        label = data.get("label") or raw.get("label")
        if not data.get("category") and not raw.get("category"):
            definition = registry.get_definition(str(label)) if label else None
            if definition is not None:
                if data is raw:
                    raw["category"] = definition.category.value
                else:
                    raw["data"] = {**data, "category": definition.category.value}
        try:
            parsed_nodes.append(WorkflowNode.from_dict(raw))
        except (KeyError, ValueError) as e:
            errors.append(f"Node #{index}: {e}")

    for index, raw in enumerate(edges or []):
        if not isinstance(raw, dict):
            errors.append(f"Edge #{index} must be an object")
            continue
        try:
            parsed_edges.append(WorkflowEdge.from_dict(raw))
        except KeyError as e:
            errors.append(f"Edge #{index} is missing {e}")

    if errors:
        raise GraphValidationError(errors)

    graph = WorkflowGraph(parsed_nodes, parsed_edges)
    validate_graph(graph, registry)
    return graph


def validate_graph(graph: WorkflowGraph, registry: BlockRegistry | None = None) -> None:
    """Check a graph against the registry and the traversal rules.

    Rejected: duplicate node ids, unknown block labels, edges to or from
    unknown nodes, more than one outgoing edge from a non-condition node
    (fan-out), and two edges with the same branch (or two unlabeled edges)
    from one condition.

    Raises:
        GraphValidationError: With every problem found
    """
    registry = registry or get_block_registry()
    errors: list[str] = []

    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(f"Duplicate node id: {node.id}")
        seen.add(node.id)
        if node.label not in registry:
            errors.append(f"Unknown block '{node.label}' on node {node.id}")

    for edge in graph.edges:
        if edge.source not in seen:
            errors.append(f"Edge source {edge.source} is not a node")
        if edge.target not in seen:
            errors.append(f"Edge target {edge.target} is not a node")

    for node in graph.nodes:
        outgoing = graph.outgoing(node.id)
        block = registry.get(node.label)
        if block is None or len(outgoing) < 2:
            continue
        if block.category != BlockCategory.CONDITION:
            errors.append(
                f"Node {node.id} has {len(outgoing)} outgoing edges; "
                "only condition blocks may branch"
            )
            continue
        branches = [edge.branch for edge in outgoing]
        duplicates = sorted({str(b) for b in branches if branches.count(b) > 1})
        if duplicates:
            errors.append(f"Condition {node.id} has more than one edge for branch {', '.join(duplicates)}")

    if errors:
        raise GraphValidationError(errors)


@dataclass
class ExecutionOutcome:
    """Everything a run produced.

    ``status`` is ``completed`` even when individual blocks failed; only
    cancellation, timeout and engine-level failures change it.
    """

    execution_id: str
    results: list[NodeResult] = field(default_factory=list)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    error: str | None = None
    error_code: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def all_succeeded(self) -> bool:
        return all(result.success for result in self.results)

    def to_dict(self) -> dict[str, Any]:
        """Render the execution response: ``{results, context, ...}``."""
        data: dict[str, Any] = {
            "executionId": self.execution_id,
            "status": self.status.value,
            "results": [result.to_dict() for result in self.results],
            "context": self.context.to_dict(),
        }
        if self.error is not None:
            data["error"] = self.error
            data["errorCode"] = self.error_code
        return data


class WorkflowExecutionEngine:
    """Sequential graph interpreter.

    Example usage:
        engine = WorkflowExecutionEngine()
        graph = engine.parse_graph(nodes, edges)
        outcome = await engine.run(graph, {"formData": {...}}, services, app_id=7, user_id=uid)
        outcome.to_dict()  # {"results": [...], "context": {...}, ...}
    """

    def __init__(
        self,
        registry: BlockRegistry | None = None,
        max_steps: int | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the execution engine.

        Args:
            registry: Block registry (defaults to the builtin registry)
            max_steps: Maximum node visits (defaults to settings.execution_max_steps)
            timeout: Run deadline in seconds (defaults to settings.execution_timeout)
        """
        self.registry = registry or get_block_registry()
        self.max_steps = max_steps or settings.execution_max_steps
        self.timeout = timeout or settings.execution_timeout

    def parse_graph(self, nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> WorkflowGraph:
        return parse_graph(nodes, edges, self.registry)

    async def run(
        self,
        graph: WorkflowGraph,
        context: dict[str, Any] | ExecutionContext | None,
        services: BlockServices,
        app_id: int,
        user_id: str,
        execution_id: str | None = None,
        entry_label: str | None = None,
        token: CancellationToken | None = None,
    ) -> ExecutionOutcome:
        """Walk the graph and return the result log and final context.

        Block failures never raise; they are recorded and the walk goes on
        along the graph's edges.

        Args:
            graph: Parsed and validated graph
            context: Initial context
            services: Collaborators for blocks
            app_id: App the run belongs to
            user_id: User the run acts for
            execution_id: Identifier for logs (generated when omitted)
            entry_label: Only start from start nodes with this label
            token: Cancellation token checked between and during blocks

        Returns:
            ExecutionOutcome with results in visit order
        """
        execution_id = execution_id or str(uuid4())
        token = token or CancellationToken()
        data = context if isinstance(context, ExecutionContext) else ExecutionContext(context)
        outcome = ExecutionOutcome(execution_id=execution_id, context=data)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        logger.info(
            "execution_starting",
            execution_id=execution_id,
            app_id=app_id,
            node_count=len(graph.nodes),
            entry_label=entry_label,
        )

        pending: deque[WorkflowNode] = deque(graph.start_nodes(entry_label))
        visited: set[str] = set()

        while pending:
            node = pending.popleft()
            if node.id in visited:
                continue

            if token.cancelled:
                self._stop(outcome, ExecutionStatus.CANCELLED, token.reason or "Execution cancelled", "CANCELLED")
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                self._stop(outcome, ExecutionStatus.TIMEOUT, "Execution timed out", "TIMEOUT")
                break
            if len(visited) >= self.max_steps:
                self._stop(
                    outcome,
                    ExecutionStatus.FAILED,
                    f"Execution exceeded maximum steps ({self.max_steps})",
                    "MAX_STEPS_EXCEEDED",
                )
                break

            visited.add(node.id)
            block = self.registry.get(node.label)
            ctx = BlockContext(
                app_id=app_id,
                user_id=user_id,
                execution_id=execution_id,
                data=outcome.context,
                services=services,
            )

            interrupted: ExecutionStatus | None = None
            try:
                block_outcome = await self._dispatch(block, node, ctx, remaining, token)
            except ExecutionTimeoutError:
                interrupted = ExecutionStatus.TIMEOUT
                block_outcome = BlockOutcome.failure("Execution timed out", "TIMEOUT")
            except asyncio.CancelledError:
                if not token.cancelled:
                    raise
                interrupted = ExecutionStatus.CANCELLED
                block_outcome = BlockOutcome.failure(
                    token.reason or "Execution cancelled", "CANCELLED"
                )

            outcome.results.append(NodeResult(node.id, block_outcome.to_result(node.label)))
            outcome.context = outcome.context.merge(block_outcome.context_updates)

            if interrupted is not None:
                self._stop(outcome, interrupted, block_outcome.error, str(block_outcome.error_code))
                break

            for successor in self._successors(graph, node, block_outcome):
                if successor.id not in visited:
                    pending.append(successor)

        outcome.completed_at = utc_now()
        logger.info(
            "execution_finished",
            execution_id=execution_id,
            status=outcome.status.value,
            nodes_visited=len(outcome.results),
            failed_nodes=sum(1 for r in outcome.results if not r.success),
        )
        return outcome

    async def _dispatch(
        self,
        block,
        node: WorkflowNode,
        ctx: BlockContext,
        remaining: float,
        token: CancellationToken,
    ) -> BlockOutcome:
        """Run one block, bounded by the deadline and the cancellation token.

        Raises:
            ExecutionTimeoutError: If the block outlives the deadline
            asyncio.CancelledError: If the token is cancelled mid-block
        """
        if block is None:
            return BlockOutcome.failure(f"Unknown block: {node.label}", "UNKNOWN_BLOCK")

        task = asyncio.ensure_future(block.run(node, ctx))
        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if task in done:
            return task.result()

        if token.cancelled:
            logger.info("execution_cancelled_mid_block", node_id=node.id, execution_id=ctx.execution_id)
            raise asyncio.CancelledError()
        logger.warning("block_timed_out", node_id=node.id, execution_id=ctx.execution_id)
        raise ExecutionTimeoutError()

    def _successors(
        self,
        graph: WorkflowGraph,
        node: WorkflowNode,
        block_outcome: BlockOutcome,
    ) -> list[WorkflowNode]:
        edges = graph.outgoing(node.id)
        block = self.registry.get(node.label)
        if block is not None and block.category == BlockCategory.CONDITION:
            wanted = (block_outcome.branch,) if block_outcome.branch else FAILED_CONDITION_BRANCHES
            chosen = [edge for branch in wanted for edge in edges if edge.branch == branch][:1]
            if not chosen:
                chosen = [edge for edge in edges if edge.branch is None][:1]
            edges = chosen

        successors = []
        for edge in edges:
            target = graph.node(edge.target)
            if target is not None:
                successors.append(target)
        return successors

    @staticmethod
    def _stop(
        outcome: ExecutionOutcome,
        status: ExecutionStatus,
        error: str | None,
        error_code: str,
    ) -> None:
        outcome.status = status
        outcome.error = error
        outcome.error_code = error_code
        logger.info("execution_stopped", execution_id=outcome.execution_id, status=status.value)
