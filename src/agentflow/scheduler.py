"""DAG Scheduler: pure graph logic for workflow execution.

Validates definitions, detects cycles, and computes which nodes are ready to
run given the committed history of an execution. The scheduler never mutates
state; the engine feeds it the current ``ExecutionState`` and dispatches
whatever frontier it returns.

Readiness is computed from commit sequences rather than a visited set, which
is what allows iteration-capped cycles:

* every history entry records ``sequence`` (its commit number) and
  ``watermark`` (the commit number when the node was dispatched)
* an edge ``s -> t`` is *fresh* when ``s`` completed after ``t`` was last
  dispatched
* a join is ready once per fork epoch, i.e. once per completion of the
  nearest upstream ``parallel`` node
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentflow.errors import (
    CycleError,
    CycleIterationExceeded,
    DanglingEdgeError,
    DefinitionValidationError,
    ExpressionError,
)
from agentflow.expressions import build_scope, compile_expression, evaluate_bool, resolve_path
from agentflow.models import (
    ConditionType,
    EdgeDefinition,
    ExecutionState,
    JoinStrategy,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
)

if TYPE_CHECKING:
    from agentflow.backend import ConditionEvaluator

logger = logging.getLogger("agentflow.scheduler")

# Colors for the depth-first cycle search
_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class GraphAnalysis:
    """Result of validating a workflow graph."""

    start_node: str
    end_nodes: list[str]
    cycle_nodes: list[str] = field(default_factory=list)
    # join id -> parallel nodes upstream of it
    fork_map: dict[str, list[str]] = field(default_factory=dict)
    topological_order: list[str] | None = None

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycle_nodes)


@dataclass
class JoinSettings:
    strategy: JoinStrategy = JoinStrategy.ALL
    count: int | None = None


def join_settings(node: NodeDefinition) -> JoinSettings:
    """Read the aggregation strategy of a join node from its config."""
    raw = node.config.get("strategy", JoinStrategy.ALL.value)
    try:
        strategy = JoinStrategy(raw)
    except ValueError as exc:
        msg = f"Join node '{node.id}' has unknown strategy '{raw}'"
        raise DefinitionValidationError(msg) from exc
    count = node.config.get("count")
    return JoinSettings(strategy=strategy, count=int(count) if count is not None else None)


class DAGScheduler:
    """Graph validation and frontier computation.

    Args:
        default_max_iterations: Cycle cap used when neither the node nor the
            workflow config sets one.
        llm_timeout: Seconds an ``llm`` edge condition may take before it is
            treated as false.
    """

    def __init__(self, default_max_iterations: int = 10, llm_timeout: float = 30.0):
        self.default_max_iterations = default_max_iterations
        self.llm_timeout = llm_timeout

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self, definition: WorkflowDefinition) -> GraphAnalysis:
        """Validate a definition and analyze its graph.

        Raises:
            DanglingEdgeError: If any edge references an unknown node.
            DefinitionValidationError: For every other structural problem.
            CycleError: If the graph is cyclic and ``allow_cycles`` is off.
        """
        dangling = definition.dangling_edges()
        if dangling:
            raise DanglingEdgeError(dangling)

        errors = definition.validate_structure()
        for edge in definition.edges:
            if edge.condition.type == ConditionType.EXPRESSION:
                try:
                    compile_expression(edge.condition.expression or "")
                except ExpressionError as exc:
                    errors.append(f"Edge '{edge.id}': {exc.message}")

        for node in definition.nodes_of_type(NodeType.JOIN):
            try:
                settings = join_settings(node)
            except DefinitionValidationError as exc:
                errors.extend(exc.errors)
                continue
            if settings.strategy == JoinStrategy.COUNT and not settings.count:
                errors.append(f"Join node '{node.id}' uses strategy 'count' without 'count'")
            if not definition.incoming(node.id):
                continue
            sources = {e.source for e in definition.incoming(node.id)}
            if settings.count and settings.count > len(sources):
                errors.append(
                    f"Join node '{node.id}' waits for {settings.count} branches "
                    f"but only has {len(sources)}"
                )

        if errors:
            raise DefinitionValidationError(errors)

        cycle_nodes = self.detect_cycles(definition)
        if cycle_nodes and not definition.config.allow_cycles:
            raise CycleError(cycle_nodes)
        if cycle_nodes:
            logger.info(
                "Workflow '%s' contains cycles through %s (capped at %d iterations)",
                definition.id,
                ", ".join(cycle_nodes),
                definition.config.max_iterations,
            )

        return GraphAnalysis(
            start_node=self.find_start_node(definition),
            end_nodes=self.find_end_nodes(definition),
            cycle_nodes=cycle_nodes,
            fork_map={
                join.id: self.upstream_forks(definition, join.id)
                for join in definition.nodes_of_type(NodeType.JOIN)
            },
            topological_order=None if cycle_nodes else self.topological_order(definition),
        )

    def detect_cycles(self, definition: WorkflowDefinition) -> list[str]:
        """Return every node that lies on a cycle, in definition order.

        Depth-first search with white/gray/black coloring; an edge into a gray
        node closes a cycle consisting of the gray path from that node.
        """
        adjacency = _adjacency(definition)
        color = {node.id: _WHITE for node in definition.nodes}
        on_cycle: set[str] = set()
        path: list[str] = []

        def visit(node_id: str) -> None:
            color[node_id] = _GRAY
            path.append(node_id)
            for target in adjacency.get(node_id, []):
                if color.get(target) == _GRAY:
                    on_cycle.update(path[path.index(target):])
                elif color.get(target) == _WHITE:
                    visit(target)
            path.pop()
            color[node_id] = _BLACK

        for node in definition.nodes:
            if color[node.id] == _WHITE:
                visit(node.id)

        return [n.id for n in definition.nodes if n.id in on_cycle]

    def topological_order(self, definition: WorkflowDefinition) -> list[str]:
        """Kahn's algorithm, ties broken by definition order.

        Raises:
            CycleError: If the graph has a cycle.
        """
        in_degree = {node.id: 0 for node in definition.nodes}
        for edge in definition.edges:
            in_degree[edge.target] = in_degree.get(edge.target, 0) + 1

        adjacency = _adjacency(definition)
        position = {node.id: i for i, node in enumerate(definition.nodes)}
        ready = [node.id for node in definition.nodes if in_degree[node.id] == 0]
        order: list[str] = []

        while ready:
            ready.sort(key=position.__getitem__)
            current = ready.pop(0)
            order.append(current)
            for target in adjacency.get(current, []):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    ready.append(target)

        if len(order) != len(definition.nodes):
            remaining = [n.id for n in definition.nodes if n.id not in order]
            raise CycleError(remaining)
        return order

    def find_start_node(self, definition: WorkflowDefinition) -> str:
        starts = definition.nodes_of_type(NodeType.START)
        if not starts:
            raise DefinitionValidationError("Workflow has no start node")
        return starts[0].id

    def find_end_nodes(self, definition: WorkflowDefinition) -> list[str]:
        return [n.id for n in definition.nodes_of_type(NodeType.END)]

    def upstream_forks(self, definition: WorkflowDefinition, node_id: str) -> list[str]:
        """Parallel nodes from which ``node_id`` is reachable."""
        reverse: dict[str, list[str]] = {}
        for edge in definition.edges:
            reverse.setdefault(edge.target, []).append(edge.source)

        seen: set[str] = set()
        stack = list(reverse.get(node_id, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(reverse.get(current, []))

        return [
            n.id for n in definition.nodes if n.id in seen and n.type == NodeType.PARALLEL
        ]

    # ── Frontier ─────────────────────────────────────────────────────────────

    def max_iterations_for(self, definition: WorkflowDefinition, node: NodeDefinition) -> int:
        if node.execution.max_iterations is not None:
            return node.execution.max_iterations
        return definition.config.max_iterations or self.default_max_iterations

    async def next_frontier(
        self,
        definition: WorkflowDefinition,
        state: ExecutionState,
        evaluator: ConditionEvaluator | None = None,
    ) -> list[str]:
        """Return the ids of all nodes ready to execute, in definition order.

        The result depends only on ``definition`` and ``state``.

        Raises:
            CycleIterationExceeded: If a ready node already ran as many times
                as its iteration cap allows.
        """
        frontier: list[str] = []
        for node in definition.nodes:
            if node.id in state.pending_activations:
                ready = True
            elif node.type == NodeType.START:
                ready = state.latest_entry(node.id) is None
            elif node.type == NodeType.JOIN:
                ready = await self._join_ready(definition, node, state, evaluator)
            else:
                ready = await self._node_ready(definition, node, state, evaluator)

            if not ready:
                continue

            limit = self.max_iterations_for(definition, node)
            if state.iterations.get(node.id, 0) >= limit:
                raise CycleIterationExceeded(node.id, limit)
            frontier.append(node.id)

        return frontier

    def _fresh_edges(
        self, definition: WorkflowDefinition, node: NodeDefinition, state: ExecutionState
    ) -> list[EdgeDefinition]:
        last = state.latest_entry(node.id)
        mark = last.watermark if last else -1
        fresh = []
        for edge in definition.incoming(node.id):
            if not self._edge_active(definition, edge):
                continue
            completion = state.latest_completion(edge.source)
            if completion is not None and completion.sequence > mark:
                fresh.append(edge)
        return fresh

    def _edge_active(self, definition: WorkflowDefinition, edge: EdgeDefinition) -> bool:
        """Parallel nodes that declare ``branches`` only activate those targets."""
        source = definition.get_node(edge.source)
        if source is None or source.type != NodeType.PARALLEL:
            return True
        branches = source.config.get("branches")
        if not branches:
            return True
        return edge.target in branches or edge.id in branches

    async def _node_ready(
        self,
        definition: WorkflowDefinition,
        node: NodeDefinition,
        state: ExecutionState,
        evaluator: ConditionEvaluator | None,
    ) -> bool:
        fresh = self._fresh_edges(definition, node, state)
        if not fresh:
            return False
        for edge in fresh:
            if not await self.evaluate_condition(edge, state, evaluator):
                return False
        return True

    async def _join_ready(
        self,
        definition: WorkflowDefinition,
        node: NodeDefinition,
        state: ExecutionState,
        evaluator: ConditionEvaluator | None,
    ) -> bool:
        epoch = self.fork_epoch(definition, node.id, state)
        last = state.latest_entry(node.id)
        if last is not None and last.watermark >= epoch:
            return False  # already fired for this fork

        arrived = await self.arrived_sources(definition, node, state, evaluator, epoch)
        sources = {e.source for e in definition.incoming(node.id) if self._edge_active(definition, e)}
        if not sources:
            return False

        settings = join_settings(node)
        match settings.strategy:
            case JoinStrategy.RACE:
                return len(arrived) >= 1
            case JoinStrategy.COUNT:
                return len(arrived) >= min(settings.count or len(sources), len(sources))
            case _:
                return len(arrived) == len(sources)

    def fork_epoch(self, definition: WorkflowDefinition, join_id: str, state: ExecutionState) -> int:
        """Commit sequence of the latest completion of any upstream fork (0 if none)."""
        epoch = 0
        for fork_id in self.upstream_forks(definition, join_id):
            completion = state.latest_completion(fork_id)
            if completion is not None:
                epoch = max(epoch, completion.sequence)
        return epoch

    async def arrived_sources(
        self,
        definition: WorkflowDefinition,
        node: NodeDefinition,
        state: ExecutionState,
        evaluator: ConditionEvaluator | None = None,
        epoch: int | None = None,
    ) -> list[str]:
        """Incoming sources that completed (with a truthy edge) in the current epoch."""
        if epoch is None:
            epoch = self.fork_epoch(definition, node.id, state)
        arrived: list[str] = []
        for edge in definition.incoming(node.id):
            if edge.source in arrived or not self._edge_active(definition, edge):
                continue
            completion = state.latest_completion(edge.source)
            if completion is None or completion.sequence <= epoch:
                continue
            if await self.evaluate_condition(edge, state, evaluator):
                arrived.append(edge.source)
        return arrived

    # ── Conditions ───────────────────────────────────────────────────────────

    async def evaluate_condition(
        self,
        edge: EdgeDefinition,
        state: ExecutionState,
        evaluator: ConditionEvaluator | None = None,
    ) -> bool:
        """Decide whether an edge is traversed.

        Expression failures and llm timeouts count as ``False``; they are
        logged, never raised.
        """
        condition = edge.condition
        scope = build_scope(state, result=state.node_results.get(edge.source))

        match condition.type:
            case ConditionType.ALWAYS:
                return True
            case ConditionType.NEVER:
                return False
            case ConditionType.EXPRESSION:
                try:
                    return evaluate_bool(condition.expression or "", scope)
                except ExpressionError as exc:
                    logger.warning(
                        "Condition on edge '%s' failed to evaluate: %s", edge.id, exc.message
                    )
                    return False
            case ConditionType.EQUALS:
                return _loose_equals(resolve_path(scope, condition.field or ""), condition.value)
            case ConditionType.CONTAINS:
                return _contains(resolve_path(scope, condition.field or ""), condition.value)
            case ConditionType.EXISTS:
                exists = resolve_path(scope, condition.field or "") is not None
                return exists if condition.value is None else exists == bool(condition.value)
            case ConditionType.LLM:
                return await self._evaluate_llm(edge, state, evaluator)

        return False

    async def _evaluate_llm(
        self,
        edge: EdgeDefinition,
        state: ExecutionState,
        evaluator: ConditionEvaluator | None,
    ) -> bool:
        if evaluator is None:
            logger.warning("Edge '%s' has an llm condition but no evaluator is configured", edge.id)
            return False
        prompt = edge.condition.llm_prompt or edge.condition.expression or ""
        try:
            result = await asyncio.wait_for(
                evaluator.evaluate(prompt, state), timeout=self.llm_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "LLM condition on edge '%s' timed out after %.1fs", edge.id, self.llm_timeout
            )
            return False
        except Exception:
            logger.exception("LLM condition on edge '%s' failed", edge.id)
            return False
        return bool(result)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _adjacency(definition: WorkflowDefinition) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {}
    for edge in definition.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
    return adjacency


def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    if actual is None or expected is None:
        return False
    return str(actual) == str(expected)


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return item is not None and str(item) in container
    if isinstance(container, (list, tuple, set, dict)):
        return item in container
    return False
