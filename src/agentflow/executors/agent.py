"""Agent node: an LLM call with an optional tool-calling loop.

The loop alternates completions and tool calls until the model answers
without tool calls or ``max_iterations`` is reached. Cancellation is checked
between iterations.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import Field

from agentflow.backend import CompletionRequest, CompletionResponse, ExecutionBackend, ToolCall
from agentflow.errors import BackendError
from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, render_template
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class AgentConfig(NodeConfig):
    system: str | None = None
    prompt: str | None = None
    tools: list[str] = []
    model_id: str | None = None
    max_iterations: int = Field(10, ge=1, le=50)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int | None = None
    output_variable: str | None = None
    output_schema: dict[str, Any] | None = None


class AgentNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.AGENT
    config_model = AgentConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: AgentConfig = self.parse_config(node)
        backend = context.require_backend()
        messages = self._build_messages(config, state)
        if not messages:
            return NodeResult.failed(f"Agent node '{node.id}' has no prompt", code="no_prompt")

        model = config.model_id or context.definition.config.default_model_id
        tools = [_tool_spec(tool_id) for tool_id in config.tools]

        content = ""
        iterations = 0
        tool_calls_made = 0
        while iterations < config.max_iterations:
            if context.cancelled:
                return NodeResult.failed("Cancelled", code="cancelled")
            iterations += 1
            response = await backend.complete(
                CompletionRequest(
                    messages=messages,
                    model=model,
                    tools=tools,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    metadata={"execution_id": context.execution_id, "node_id": node.id},
                )
            )
            content += response.content
            if not response.tool_calls:
                break

            messages.append(_assistant_message(response))
            for call in response.tool_calls:
                messages.append(await self._run_tool(backend, call, node, context))
                tool_calls_made += 1
        else:
            logger.warning(
                "Agent node '%s' reached max iterations (%d)", node.id, config.max_iterations
            )

        output: Any = content
        if config.output_schema is not None:
            output = parse_structured_output(content)

        logger.info(
            "Agent node '%s' completed (%d iterations, %d tool calls)",
            node.id,
            iterations,
            tool_calls_made,
        )
        updates = {config.output_variable: output} if config.output_variable else {}
        return NodeResult.completed(output, state_updates=updates)

    def _build_messages(self, config: AgentConfig, state: ExecutionState) -> list[dict[str, Any]]:
        scope = build_scope(state)
        messages: list[dict[str, Any]] = []
        if config.system:
            messages.append({"role": "system", "content": render_template(config.system, scope)})

        if config.prompt:
            user_content = render_template(config.prompt, scope)
        else:
            user_content = state.data.get("input") or state.data.get("message")
        if user_content:
            if not isinstance(user_content, str):
                user_content = json.dumps(user_content, default=str)
            messages.append({"role": "user", "content": user_content})
        return messages

    async def _run_tool(
        self,
        backend: ExecutionBackend,
        call: ToolCall,
        node: NodeDefinition,
        context: ExecutionContext,
    ) -> dict[str, Any]:
        try:
            result = await backend.call_tool(
                call.name,
                call.arguments,
                {
                    "execution_id": context.execution_id,
                    "node_id": node.id,
                    "owner_id": context.owner_id,
                },
            )
            content = json.dumps(result, default=str)
        except BackendError as exc:
            logger.error("Tool call %s failed in agent node '%s': %s", call.name, node.id, exc)
            content = json.dumps({"error": True, "message": exc.message})
        return {"role": "tool", "tool_call_id": call.id, "name": call.name, "content": content}


def _tool_spec(tool_id: str) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {"name": tool_id, "parameters": {"type": "object", "properties": {}}},
    }


def _assistant_message(response: CompletionResponse) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": response.content or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in response.tool_calls
        ],
    }


def parse_structured_output(content: str) -> Any:
    """Extract JSON from a model reply (bare or fenced); fall back to the raw text."""
    if not content:
        return None
    text = content.strip()
    fenced = _FENCED_JSON.search(text)
    candidates = [fenced.group(1).strip()] if fenced else []
    candidates.append(text)
    for start, end in (("{", "}"), ("[", "]")):
        i, j = text.find(start), text.rfind(end)
        if i != -1 and j > i:
            candidates.append(text[i : j + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    logger.warning("Agent output is not valid JSON, keeping raw text")
    return content
