"""Decision node: evaluates routing logic and returns a branch token.

Outgoing edges pick the branch up through ``result.branch``, e.g.::

    condition: {type: equals, field: result.branch, value: "true"}

Decision types:
    expression: sandboxed boolean expression; branch ``"true"``/``"false"``
    switch: first matching case of ``variable``; else ``default_branch``
    llm: asks the backend to pick one of ``branches``
"""

from __future__ import annotations

import logging
import re
from typing import Any, Literal

from pydantic import model_validator

from agentflow.backend import CompletionRequest
from agentflow.errors import ExpressionError
from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, evaluate_bool, render_template, resolve_path
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")

# Operators in evaluation order; a case uses the first one it sets.
SWITCH_OPERATORS = (
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "contains",
    "matches",
    "in_",
    "not_in",
)


class SwitchCase(NodeConfig):
    branch: str
    equals: Any = None
    not_equals: Any = None
    greater_than: Any = None
    less_than: Any = None
    greater_than_or_equal: Any = None
    less_than_or_equal: Any = None
    contains: Any = None
    matches: str | None = None
    in_: list[Any] | None = None
    not_in: list[Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def rename_in(cls, data: Any) -> Any:
        if isinstance(data, dict) and "in" in data:
            data = dict(data)
            data["in_"] = data.pop("in")
        return data

    def matches_value(self, value: Any) -> bool:
        for op in SWITCH_OPERATORS:
            if op in self.model_fields_set:
                return _compare(op, value, getattr(self, op))
        return False


def _compare(op: str, value: Any, expected: Any) -> bool:
    try:
        match op:
            case "equals":
                return value == expected
            case "not_equals":
                return value != expected
            case "greater_than":
                return value > expected
            case "less_than":
                return value < expected
            case "greater_than_or_equal":
                return value >= expected
            case "less_than_or_equal":
                return value <= expected
            case "contains":
                return isinstance(value, (str, list, dict)) and expected in value
            case "matches":
                return isinstance(value, str) and re.search(expected, value) is not None
            case "in_":
                return value in (expected or [])
            case "not_in":
                return value not in (expected or [])
    except (TypeError, re.error):
        return False
    return False


class DecisionConfig(NodeConfig):
    type: Literal["expression", "switch", "llm"] = "expression"
    expression: str | None = None
    variable: str | None = None
    conditions: list[SwitchCase] = []
    default_branch: str = "default"
    prompt: str | None = None
    branches: list[str] = []
    model_id: str | None = None

    @model_validator(mode="after")
    def check_type_fields(self) -> DecisionConfig:
        if self.type == "switch" and not self.variable:
            raise ValueError("switch decisions require 'variable'")
        if self.type == "llm" and not (self.prompt and self.branches):
            raise ValueError("llm decisions require 'prompt' and 'branches'")
        return self


class DecisionNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.DECISION
    config_model = DecisionConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: DecisionConfig = self.parse_config(node)

        match config.type:
            case "switch":
                result = self._switch(config, state)
            case "llm":
                result = await self._llm(config, state, context)
            case _:
                result = self._expression(node, config, state)

        logger.info("Decision node '%s' chose branch '%s'", node.id, result["branch"])
        return NodeResult.completed(result, branch=result["branch"])

    def _expression(
        self, node: NodeDefinition, config: DecisionConfig, state: ExecutionState
    ) -> dict[str, Any]:
        if not config.expression:
            logger.warning("Decision node '%s' has no expression, defaulting to false", node.id)
            return {"branch": "false", "value": False}
        try:
            value = evaluate_bool(config.expression, build_scope(state))
        except ExpressionError as exc:
            logger.error("Decision node '%s' expression failed: %s", node.id, exc.message)
            return {"branch": "false", "value": False, "error": exc.message}
        return {"branch": "true" if value else "false", "value": value, "expression": config.expression}

    def _switch(self, config: DecisionConfig, state: ExecutionState) -> dict[str, Any]:
        value = resolve_path(build_scope(state), config.variable or "")
        for case in config.conditions:
            if case.matches_value(value):
                return {"branch": case.branch, "value": value, "matched": True}
        return {"branch": config.default_branch, "value": value, "matched": False}

    async def _llm(
        self, config: DecisionConfig, state: ExecutionState, context: ExecutionContext
    ) -> dict[str, Any]:
        backend = context.require_backend()
        prompt = render_template(config.prompt or "", build_scope(state))
        response = await backend.complete(
            CompletionRequest(
                model=config.model_id or context.definition.config.default_model_id,
                temperature=0.0,
                messages=[
                    {
                        "role": "system",
                        "content": "Choose exactly one of these branches and reply with its name only: "
                        + ", ".join(config.branches),
                    },
                    {"role": "user", "content": prompt},
                ],
            )
        )
        reply = response.content.strip().lower()
        for branch in config.branches:
            if branch.lower() == reply:
                return {"branch": branch, "value": response.content, "matched": True}
        for branch in config.branches:
            if branch.lower() in reply:
                return {"branch": branch, "value": response.content, "matched": True}
        return {"branch": config.default_branch, "value": response.content, "matched": False}
