"""Fork and join nodes.

Both are thin: activating branches and deciding when a join may fire is
scheduler logic. The parallel node only reports which branches it opened;
the join node collects the outputs of the branches that arrived.
"""

from __future__ import annotations

import logging

from pydantic import Field

from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.models import ExecutionState, JoinStrategy, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")


class ParallelConfig(NodeConfig):
    # Target node ids (or edge ids) to activate; empty means every outgoing edge
    branches: list[str] = []


class JoinConfig(NodeConfig):
    strategy: JoinStrategy = JoinStrategy.ALL
    count: int | None = Field(None, ge=1)
    output_variable: str | None = None


class ParallelNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.PARALLEL
    config_model = ParallelConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: ParallelConfig = self.parse_config(node)
        outgoing = context.definition.outgoing(node.id)
        activated = [
            e.target
            for e in outgoing
            if not config.branches or e.target in config.branches or e.id in config.branches
        ]
        logger.info("Parallel node '%s' forking into %s", node.id, ", ".join(activated))
        return NodeResult.completed({"branches": activated})


class JoinNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.JOIN
    config_model = JoinConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: JoinConfig = self.parse_config(node)
        if context.scheduler is not None:
            arrived = await context.scheduler.arrived_sources(context.definition, node, state)
        else:
            arrived = [
                e.source
                for e in context.definition.incoming(node.id)
                if state.latest_completion(e.source) is not None
            ]

        results = {
            source: state.node_results.get(source, {}).get("output") for source in arrived
        }
        logger.info(
            "Join node '%s' (%s) collected %d branches", node.id, config.strategy.value, len(arrived)
        )
        updates = {config.output_variable: results} if config.output_variable else {}
        return NodeResult.completed(
            {"strategy": config.strategy.value, "arrived": arrived, "results": results},
            state_updates=updates,
        )
