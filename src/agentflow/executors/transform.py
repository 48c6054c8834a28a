"""Transform node: deterministic data manipulation without side effects.

Each operation reads from ``data`` merged with the updates produced by the
earlier operations of the same node, so a list of operations behaves like a
small script::

    operations:
      - {set: counter, value: 0}
      - {increment: counter, by: 2}
      - {push: counter, to: history}
      - {condition: "counter > 1", to: status, then: big, else: small}

Supported: set, copy, increment, push, merge, array_get, length_of, condition.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from pydantic import field_validator

from agentflow.errors import ExpressionError
from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import (
    build_scope,
    evaluate_bool,
    path_keys,
    render_template,
    resolve_path,
    set_in,
)
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")

OPERATION_KEYS = {
    "set": (),
    "copy": ("to",),
    "increment": (),
    "push": ("to",),
    "merge": ("into",),
    "array_get": ("index", "to"),
    "length_of": ("to",),
    "condition": ("to",),
}

_CAMEL_KEYS = {"arrayGet": "array_get", "lengthOf": "length_of"}


class TransformConfig(NodeConfig):
    operations: list[dict[str, Any]] = []

    @field_validator("operations")
    @classmethod
    def validate_operations(cls, ops: list[dict[str, Any]]) -> list[dict[str, Any]]:
        normalized = []
        for i, op in enumerate(ops):
            op = {_CAMEL_KEYS.get(k, k): v for k, v in op.items()}
            kind = next((k for k in OPERATION_KEYS if k in op), None)
            if kind is None:
                msg = f"operation {i} has none of {', '.join(OPERATION_KEYS)}"
                raise ValueError(msg)
            missing = [k for k in OPERATION_KEYS[kind] if k not in op]
            if missing:
                msg = f"operation {i} ({kind}) is missing {', '.join(missing)}"
                raise ValueError(msg)
            normalized.append(op)
        return normalized


class _Changes:
    """Writes made by one transform node and the data view they produce.

    A single-key path replaces the whole variable; a nested path is kept as a
    single-key update so branches writing siblings of one variable commute.
    """

    def __init__(self, data: dict[str, Any]):
        self.view = dict(data)
        self.variables: dict[str, Any] = {}
        self.nested: dict[tuple[str, ...], Any] = {}

    def write(self, path: str, value: Any) -> None:
        keys = path_keys(path)
        if not keys:
            return
        value = copy.deepcopy(value)
        set_in(self.view, keys, value)

        top = keys[0]
        if len(keys) == 1:
            self.variables[top] = value
            self.nested = {k: v for k, v in self.nested.items() if k[0] != top}
        elif top in self.variables:
            set_in(self.variables, keys, value)
        else:
            # Drop earlier writes at or below this path; parents stay ahead of children
            self.nested = {k: v for k, v in self.nested.items() if k[: len(keys)] != keys}
            self.nested[keys] = value

    def touched(self) -> list[str]:
        return sorted(set(self.variables) | {keys[0] for keys in self.nested})


class TransformNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.TRANSFORM
    config_model = TransformConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: TransformConfig = self.parse_config(node)
        changes = _Changes(state.data)

        try:
            for op in config.operations:
                self._apply(op, state, changes)
        except ExpressionError as exc:
            return NodeResult.failed(f"Transform failed: {exc.message}", code="expression")

        touched = changes.touched()
        logger.info("Transform node '%s' updated %s", node.id, ", ".join(touched) or "nothing")
        return NodeResult.completed(
            {"transformed_variables": touched},
            state_updates=changes.variables,
            path_updates=list(changes.nested.items()),
        )

    def _apply(self, op: dict[str, Any], state: ExecutionState, changes: _Changes) -> None:
        current = changes.view

        def read(path: str) -> Any:
            return resolve_path(current, path)

        write = changes.write

        if "set" in op:
            value = op.get("value")
            if isinstance(value, str):
                value = render_template(value, _scope(state, current))
            write(op["set"], value)

        elif "copy" in op:
            value = read(op["copy"])
            if value is not None:
                write(op["to"], value)

        elif "increment" in op:
            existing = read(op["increment"])
            numeric = isinstance(existing, (int, float)) and not isinstance(existing, bool)
            base = existing if numeric else 0
            write(op["increment"], base + op.get("by", 1))

        elif "push" in op:
            item = read(op["push"])
            if item is None:
                return
            target = read(op["to"])
            write(op["to"], [*(target if isinstance(target, list) else []), item])

        elif "merge" in op:
            source = read(op["merge"])
            if not isinstance(source, dict):
                return
            target = read(op["into"])
            write(op["into"], {**(target if isinstance(target, dict) else {}), **source})

        elif "array_get" in op:
            array = read(op["array_get"])
            index = op["index"]
            if isinstance(index, str):
                index = read(index)
            try:
                index = int(index)
            except (TypeError, ValueError):
                index = -1
            if isinstance(array, list) and 0 <= index < len(array):
                write(op["to"], array[index])
            else:
                write(op["to"], "")

        elif "length_of" in op:
            value = read(op["length_of"])
            write(op["to"], len(value) if isinstance(value, (list, str, dict)) else 0)

        elif "condition" in op:
            ok = evaluate_bool(op["condition"], _scope(state, current))
            write(op["to"], op.get("then") if ok else op.get("else"))


def _scope(state: ExecutionState, current: dict[str, Any]) -> dict[str, Any]:
    return build_scope(state, extra={**current, "data": current})
