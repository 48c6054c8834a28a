"""End node: builds the execution's final output and terminates the run."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, render_template, resolve_path
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")


class EndConfig(NodeConfig):
    output_mapping: dict[str, Any] | None = None
    include_fields: list[str] | None = None
    exclude_fields: list[str] | None = None
    output_variables: list[str] | None = None
    include_node_outputs: bool = False
    output_format: Literal["json", "text", "raw"] = "json"


class EndNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.END
    config_model = EndConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: EndConfig = self.parse_config(node)
        data = state.data

        if config.output_mapping is not None:
            scope = build_scope(state)
            output: dict[str, Any] = {}
            for key, source in config.output_mapping.items():
                if isinstance(source, str) and source.startswith("$"):
                    value = resolve_path(scope, source)
                    if value is not None:
                        output[key] = value
                else:
                    output[key] = render_template(source, scope)
        elif config.include_fields is not None:
            output = {k: data[k] for k in config.include_fields if k in data}
        elif config.exclude_fields is not None:
            output = {k: v for k, v in data.items() if k not in config.exclude_fields}
        elif config.output_variables is not None:
            output = {k: data[k] for k in config.output_variables if k in data}
        else:
            # Internal variables start with an underscore
            output = {k: v for k, v in data.items() if not k.startswith("_")}

        if config.include_node_outputs:
            output["_node_outputs"] = {
                node_id: result.get("output") for node_id, result in state.node_results.items()
            }

        logger.info("End node '%s' reached, workflow finished", node.id)
        return NodeResult.completed(format_output(output, config.output_format), terminal=True)


def format_output(output: dict[str, Any], output_format: str) -> Any:
    match output_format:
        case "text":
            for key in ("content", "text", "message"):
                if isinstance(output.get(key), str):
                    return output[key]
            return json.dumps(output, indent=2, default=str)
        case "raw":
            if len(output) == 1:
                return next(iter(output.values()))
            return output
        case _:
            return output
