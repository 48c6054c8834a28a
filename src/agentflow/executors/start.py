"""Start node: seeds ``data`` from the execution input."""

from __future__ import annotations

import logging
from typing import Any

from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, resolve_path
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")


class StartConfig(NodeConfig):
    required_inputs: list[str] = []
    defaults: dict[str, Any] = {}
    # target variable -> "$.input.x" path or literal value
    input_mapping: dict[str, Any] | None = None


class StartNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.START
    config_model = StartConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: StartConfig = self.parse_config(node)
        initial = state.input

        missing = [
            name for name in config.required_inputs if initial.get(name) in (None, "")
        ]
        if missing:
            return NodeResult.failed(
                f"Start node '{node.id}' is missing required inputs: {', '.join(missing)}",
                code="missing_inputs",
            )

        updates: dict[str, Any] = dict(config.defaults)
        if config.input_mapping is not None:
            scope = build_scope(state)
            for target, source in config.input_mapping.items():
                if isinstance(source, str) and source.startswith("$"):
                    value = resolve_path(scope, source)
                    if value is not None:
                        updates[target] = value
                else:
                    updates[target] = source
        else:
            updates.update(initial)

        logger.info("Start node '%s' mapped %d variables", node.id, len(updates))
        return NodeResult.completed(
            {
                "initialized": True,
                "input_fields": sorted(initial),
                "mapped_fields": sorted(updates),
            },
            state_updates=updates,
        )
