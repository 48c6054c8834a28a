"""Memory node: read/write/append/delete named values.

``scope: execution`` keeps values inside the execution's ``data`` under
``_memory.<namespace>``; ``scope: owner`` uses the injected ``MemoryStore``
so values survive across executions of the same owner.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Literal

from pydantic import model_validator

from agentflow.errors import NodeExecutionError
from agentflow.executors.base import BaseNodeExecutor, ExecutionContext, NodeConfig, NodeResult
from agentflow.expressions import build_scope, render_template
from agentflow.memory import append_value
from agentflow.models import ExecutionState, NodeDefinition, NodeType

logger = logging.getLogger("agentflow.executors")

EXECUTION_MEMORY_KEY = "_memory"


class MemoryConfig(NodeConfig):
    operation: Literal["read", "write", "append", "delete"] = "read"
    key: str
    value: Any = None
    scope: Literal["execution", "owner"] = "execution"
    namespace: str = "default"
    output_variable: str | None = None
    default: Any = None

    @model_validator(mode="after")
    def check_value(self) -> MemoryConfig:
        if self.operation in ("write", "append") and "value" not in self.model_fields_set:
            msg = f"memory '{self.operation}' requires 'value'"
            raise ValueError(msg)
        return self


class MemoryNodeExecutor(BaseNodeExecutor):
    node_type = NodeType.MEMORY
    config_model = MemoryConfig

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        config: MemoryConfig = self.parse_config(node)
        scope = build_scope(state)
        key = str(render_template(config.key, scope))
        value = render_template(config.value, scope)

        path_updates: list[tuple[tuple[str, ...], Any]] = []
        removals: list[tuple[str, ...]] = []
        if config.scope == "owner":
            result = await self._owner(config, key, value, context)
        else:
            result = self._execution(config, key, value, state, path_updates, removals)

        updates: dict[str, Any] = {}
        if config.operation == "read" and config.output_variable:
            updates[config.output_variable] = result

        logger.info(
            "Memory node '%s': %s %s/%s (%s scope)",
            node.id,
            config.operation,
            config.namespace,
            key,
            config.scope,
        )
        return NodeResult.completed(
            {"operation": config.operation, "key": key, "value": result},
            state_updates=updates,
            path_updates=path_updates,
            removals=removals,
        )

    def _execution(
        self,
        config: MemoryConfig,
        key: str,
        value: Any,
        state: ExecutionState,
        path_updates: list[tuple[tuple[str, ...], Any]],
        removals: list[tuple[str, ...]],
    ) -> Any:
        memory = state.data.get(EXECUTION_MEMORY_KEY)
        bucket = memory.get(config.namespace) if isinstance(memory, dict) else None
        if not isinstance(bucket, dict):
            bucket = {}
        keys = (EXECUTION_MEMORY_KEY, config.namespace, key)

        match config.operation:
            case "read":
                return bucket.get(key, config.default)
            case "write":
                result = copy.deepcopy(value)
            case "append":
                result = append_value(copy.deepcopy(bucket.get(key)), value)
            case _:
                removals.append(keys)
                return key in bucket

        path_updates.append((keys, result))
        return result

    async def _owner(
        self, config: MemoryConfig, key: str, value: Any, context: ExecutionContext
    ) -> Any:
        store = context.memory
        if store is None:
            raise NodeExecutionError("No owner memory store configured")
        owner = context.owner_id

        match config.operation:
            case "read":
                result = await store.get(owner, config.namespace, key)
                return config.default if result is None else result
            case "write":
                await store.set(owner, config.namespace, key, value)
                return value
            case "append":
                return await store.append(owner, config.namespace, key, value)
            case _:
                return await store.delete(owner, config.namespace, key)
