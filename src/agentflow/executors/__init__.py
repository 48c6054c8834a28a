"""Node executors: one per node type, resolved through a static table.

Key exports:
    EXECUTOR_TYPES: NodeType -> executor class (closed over NodeType)
    ExecutorRegistry: instantiated table with per-definition config checks
    BaseNodeExecutor, NodeResult, ExecutionContext: the executor contract
"""

from __future__ import annotations

import logging

from agentflow.executors.agent import AgentConfig, AgentNodeExecutor
from agentflow.executors.base import (
    BaseNodeExecutor,
    ExecutionContext,
    NodeConfig,
    NodeResult,
)
from agentflow.executors.decision import DecisionConfig, DecisionNodeExecutor
from agentflow.executors.end import EndConfig, EndNodeExecutor
from agentflow.executors.human import HumanConfig, HumanNodeExecutor
from agentflow.executors.memory import MemoryConfig, MemoryNodeExecutor
from agentflow.executors.parallel import (
    JoinConfig,
    JoinNodeExecutor,
    ParallelConfig,
    ParallelNodeExecutor,
)
from agentflow.executors.start import StartConfig, StartNodeExecutor
from agentflow.executors.tool import ToolConfig, ToolNodeExecutor
from agentflow.executors.transform import TransformConfig, TransformNodeExecutor
from agentflow.models import NodeType, WorkflowDefinition

logger = logging.getLogger("agentflow.executors")

EXECUTOR_TYPES: dict[NodeType, type[BaseNodeExecutor]] = {
    NodeType.START: StartNodeExecutor,
    NodeType.END: EndNodeExecutor,
    NodeType.AGENT: AgentNodeExecutor,
    NodeType.TOOL: ToolNodeExecutor,
    NodeType.DECISION: DecisionNodeExecutor,
    NodeType.PARALLEL: ParallelNodeExecutor,
    NodeType.JOIN: JoinNodeExecutor,
    NodeType.HUMAN: HumanNodeExecutor,
    NodeType.TRANSFORM: TransformNodeExecutor,
    NodeType.MEMORY: MemoryNodeExecutor,
}


class ExecutorRegistry:
    """Executor instances for every node type, built once at startup.

    ``overrides`` replaces individual executors (e.g. in tests); the result
    must still cover every ``NodeType``.
    """

    def __init__(
        self,
        overrides: dict[NodeType, BaseNodeExecutor] | None = None,
        table: dict[NodeType, type[BaseNodeExecutor]] | None = None,
    ):
        table = EXECUTOR_TYPES if table is None else table
        self._executors: dict[NodeType, BaseNodeExecutor] = {
            node_type: executor_cls() for node_type, executor_cls in table.items()
        }
        self._executors.update(overrides or {})

        missing = [t.value for t in NodeType if t not in self._executors]
        if missing:
            msg = f"No executor registered for node types: {', '.join(missing)}"
            raise ValueError(msg)
        logger.debug("Executor registry ready (%d node types)", len(self._executors))

    def get(self, node_type: NodeType) -> BaseNodeExecutor:
        return self._executors[node_type]

    def types(self) -> list[NodeType]:
        return list(self._executors)

    def validate_definition(self, definition: WorkflowDefinition) -> list[str]:
        """Validate every node's type-specific config."""
        errors: list[str] = []
        for node in definition.nodes:
            errors.extend(self.get(node.type).validate_config(node))
        return errors


__all__ = [
    "EXECUTOR_TYPES",
    "ExecutorRegistry",
    # Contract
    "BaseNodeExecutor",
    "ExecutionContext",
    "NodeConfig",
    "NodeResult",
    # Executors
    "AgentNodeExecutor",
    "DecisionNodeExecutor",
    "EndNodeExecutor",
    "HumanNodeExecutor",
    "JoinNodeExecutor",
    "MemoryNodeExecutor",
    "ParallelNodeExecutor",
    "StartNodeExecutor",
    "ToolNodeExecutor",
    "TransformNodeExecutor",
    # Config models
    "AgentConfig",
    "DecisionConfig",
    "EndConfig",
    "HumanConfig",
    "JoinConfig",
    "MemoryConfig",
    "ParallelConfig",
    "StartConfig",
    "ToolConfig",
    "TransformConfig",
]
