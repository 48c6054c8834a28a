"""Human node: pauses the execution until one external response arrives.

``execute`` builds a ``HumanCheckpoint`` and returns ``paused`` right away; no
worker waits on the human. ``resume`` validates the response against the
declared options and input schema and completes the step, using the response
value as the branch token.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, render_template, resolve_path
from agentflow.models import (
    ExecutionState,
    HumanCheckpoint,
    HumanOption,
    LocalizedText,
    NodeDefinition,
    NodeType,
    localize,
    utcnow,
)

logger = logging.getLogger("agentflow.executors")

DEFAULT_OPTIONS = [HumanOption(value="continue", label="Continue", style="primary")]


class HumanOptionConfig(NodeConfig):
    value: str
    label: LocalizedText = ""
    style: str = "secondary"
    description: LocalizedText | None = None


class HumanConfig(NodeConfig):
    message: LocalizedText
    options: list[HumanOptionConfig] | None = None
    input_schema: dict[str, Any] | None = None
    show_data: list[str] | None = None
    timeout_ms: int | None = Field(
        None, ge=1, validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout")
    )

    @field_validator("message")
    @classmethod
    def message_not_empty(cls, v: LocalizedText) -> LocalizedText:
        if not v:
            raise ValueError("human nodes require a message")
        return v


def response_key(node_id: str) -> str:
    return f"human_response_{node_id}"


class HumanNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.HUMAN
    config_model = HumanConfig
    resumable = True

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: HumanConfig = self.parse_config(node)
        language = context.language
        scope = build_scope(state)

        display_data: dict[str, Any] = {}
        for path in config.show_data or []:
            value = resolve_path(scope, path)
            if value is not None:
                display_data[path.removeprefix("$.").replace(".", "_")] = value

        created_at = utcnow()
        checkpoint = HumanCheckpoint(
            id=f"ckpt-{uuid.uuid4().hex}",
            node_id=node.id,
            node_name=node.display_name(language),
            message=render_template(localize(config.message, language), scope),
            options=self._options(config, language),
            input_schema=config.input_schema,
            display_data=display_data,
            human_in_loop=context.definition.config.human_in_loop,
            created_at=created_at,
            expires_at=(
                created_at + timedelta(milliseconds=config.timeout_ms)
                if config.timeout_ms
                else None
            ),
        )
        logger.info(
            "Human checkpoint %s created for node '%s' (execution %s)",
            checkpoint.id,
            node.id,
            context.execution_id,
        )
        return NodeResult.paused(
            checkpoint, output={"awaiting_human": True, "checkpoint_id": checkpoint.id}
        )

    def _options(self, config: HumanConfig, language: str) -> list[HumanOption]:
        if not config.options:
            return list(DEFAULT_OPTIONS)
        return [
            HumanOption(
                value=opt.value,
                label=localize(opt.label, language) or opt.value,
                style=opt.style,
                description=localize(opt.description, language) if opt.description else None,
            )
            for opt in config.options
        ]

    async def resume(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        external_input: dict[str, Any],
        context: ExecutionContext,
    ) -> NodeResult:
        config: HumanConfig = self.parse_config(node)
        response = external_input.get("response")
        data = external_input.get("data")

        if config.options:
            valid = [opt.value for opt in config.options]
            if response not in valid:
                return NodeResult.failed(
                    f"Invalid response '{response}'. Valid options: {', '.join(valid)}",
                    code="invalid_response",
                )

        if config.input_schema:
            problem = validate_input(data, config.input_schema)
            if problem:
                return NodeResult.failed(f"Invalid input data: {problem}", code="invalid_input")

        record = {
            "checkpoint_id": external_input.get("checkpoint_id"),
            "node_id": node.id,
            "response": response,
            "data": data,
            "responded_at": utcnow().isoformat(),
        }
        logger.info("Human response '%s' accepted for node '%s'", response, node.id)
        return NodeResult.completed(
            {**record, "branch": response},
            state_updates={response_key(node.id): record},
            branch=str(response) if response is not None else None,
        )


def validate_input(data: Any, schema: dict[str, Any]) -> str | None:
    """Minimal schema check: object type and required fields."""
    required = schema.get("required") or []
    if schema.get("type") == "object" or required:
        if not isinstance(data, dict):
            return "expected an object"
        missing = [name for name in required if name not in data]
        if missing:
            return f"missing required fields: {', '.join(missing)}"
    return None
