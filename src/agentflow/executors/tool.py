"""Tool node: invokes one tool on the execution backend."""

from __future__ import annotations

import logging
from typing import Any

from agentflow.errors import BackendError
from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, render_template
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")


class ToolConfig(NodeConfig):
    tool_id: str
    parameters: dict[str, Any] = {}
    output_variable: str | None = None
    # Failures become the node output instead of failing the node
    optional: bool = False
    # error code / message fragment / "default" -> output used on failure
    error_mapping: dict[str, Any] | None = None


class ToolNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.TOOL
    config_model = ToolConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: ToolConfig = self.parse_config(node)
        backend = context.require_backend()
        params = render_template(config.parameters, build_scope(state))

        logger.info("Tool node '%s' calling %s", node.id, config.tool_id)
        try:
            result = await backend.call_tool(
                config.tool_id,
                params,
                {
                    "execution_id": context.execution_id,
                    "node_id": node.id,
                    "owner_id": context.owner_id,
                },
            )
        except BackendError as exc:
            return self._handle_error(node, config, exc.message, exc.code)

        return NodeResult.completed(result, state_updates=_updates(config, result))

    def _handle_error(
        self, node: NodeDefinition, config: ToolConfig, message: str, code: str | None
    ) -> NodeResult:
        logger.error("Tool '%s' failed in node '%s': %s", config.tool_id, node.id, message)
        if not config.optional:
            return NodeResult.failed(f"Tool '{config.tool_id}' failed: {message}", code=code)

        logger.info("Optional tool '%s' failed, continuing workflow", config.tool_id)
        output = map_error(message, code, config.error_mapping)
        if output is None:
            output = {"error": True, "message": message, "tool_id": config.tool_id}
        return NodeResult.completed(output, state_updates=_updates(config, output))


def _updates(config: ToolConfig, value: Any) -> dict[str, Any]:
    return {config.output_variable: value} if config.output_variable else {}


def map_error(message: str, code: str | None, mapping: dict[str, Any] | None) -> Any:
    """Pick the mapped output for an error: by code, then message fragment, then default."""
    if not mapping:
        return None
    if code and code in mapping:
        return mapping[code]
    for pattern, output in mapping.items():
        if pattern != "default" and pattern in message:
            return output
    return mapping.get("default")
