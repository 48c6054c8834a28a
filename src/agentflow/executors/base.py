"""Base node executor: the contract every node type implements.

An executor receives the node definition, a read-only view of the execution
state and an ``ExecutionContext``, and returns a ``NodeResult``. Executors
never mutate ``state``; everything they want changed goes into
``NodeResult.state_updates`` (whole top-level variables) or
``NodeResult.path_updates`` / ``removals`` (single nested keys) and is
committed by the StateManager.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel

from agentflow.errors import BackendError, NodeExecutionError
from agentflow.expressions import build_scope
from agentflow.models import (
    ExecutionState,
    HumanCheckpoint,
    NodeDefinition,
    NodeStatus,
    NodeType,
    WorkflowDefinition,
)

if TYPE_CHECKING:
    from agentflow.backend import ExecutionBackend
    from agentflow.config import EngineSettings
    from agentflow.events import EventChannel
    from agentflow.memory import MemoryStore
    from agentflow.scheduler import DAGScheduler

logger = logging.getLogger("agentflow.executors")


class NodeConfig(BaseModel):
    """Base for per-type config models (camelCase or snake_case keys)."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "ignore"}


@dataclass
class NodeResult:
    """Outcome of one executor call. Exactly one status is always produced."""

    status: NodeStatus
    output: Any = None
    state_updates: dict[str, Any] = field(default_factory=dict)
    path_updates: list[tuple[tuple[str, ...], Any]] = field(default_factory=list)
    removals: list[tuple[str, ...]] = field(default_factory=list)
    branch: str | None = None
    checkpoint: HumanCheckpoint | None = None
    pause_reason: str | None = None
    error: str | None = None
    error_code: str | None = None
    terminal: bool = False

    @classmethod
    def completed(
        cls,
        output: Any = None,
        *,
        state_updates: dict[str, Any] | None = None,
        path_updates: list[tuple[tuple[str, ...], Any]] | None = None,
        removals: list[tuple[str, ...]] | None = None,
        branch: str | None = None,
        terminal: bool = False,
    ) -> NodeResult:
        return cls(
            status=NodeStatus.COMPLETED,
            output=output,
            state_updates=state_updates or {},
            path_updates=path_updates or [],
            removals=removals or [],
            branch=branch,
            terminal=terminal,
        )

    @classmethod
    def failed(cls, error: str, *, output: Any = None, code: str | None = None) -> NodeResult:
        return cls(status=NodeStatus.FAILED, output=output, error=error, error_code=code)

    @classmethod
    def paused(
        cls, checkpoint: HumanCheckpoint, *, output: Any = None, reason: str = "human_input_required"
    ) -> NodeResult:
        return cls(
            status=NodeStatus.PAUSED, output=output, checkpoint=checkpoint, pause_reason=reason
        )


@dataclass
class ExecutionContext:
    """Everything an executor may use besides the node and the state."""

    execution_id: str
    definition: WorkflowDefinition
    owner_id: str = "anonymous"
    language: str = "en"
    backend: ExecutionBackend | None = None
    events: EventChannel | None = None
    memory: MemoryStore | None = None
    scheduler: DAGScheduler | None = None
    settings: EngineSettings | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    attempt: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def require_backend(self) -> ExecutionBackend:
        if self.backend is None:
            raise BackendError("No execution backend configured", code="no_backend")
        return self.backend


class BaseNodeExecutor:
    """Base class for node executors.

    Subclasses set ``node_type`` and ``config_model`` and implement
    ``execute``. Resumable types set ``resumable = True`` and implement
    ``resume``.
    """

    node_type: ClassVar[NodeType]
    config_model: ClassVar[type[NodeConfig]] = NodeConfig
    resumable: ClassVar[bool] = False

    def parse_config(self, node: NodeDefinition) -> Any:
        try:
            return self.config_model.model_validate(node.config)
        except ValidationError as exc:
            raise NodeExecutionError(
                f"Invalid config for node '{node.id}': {exc}", node_id=node.id
            ) from exc

    def validate_config(self, node: NodeDefinition) -> list[str]:
        """Return config problems for ``node`` (empty = valid)."""
        try:
            self.config_model.model_validate(node.config)
        except ValidationError as exc:
            return [
                f"Node '{node.id}' config: {'.'.join(str(p) for p in err['loc'])} {err['msg']}"
                for err in exc.errors()
            ]
        return []

    async def execute(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        raise NotImplementedError

    async def resume(
        self,
        node: NodeDefinition,
        state: ExecutionState,
        external_input: dict[str, Any],
        context: ExecutionContext,
    ) -> NodeResult:
        raise NodeExecutionError(f"Node type '{node.type.value}' cannot be resumed", node_id=node.id)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def scope(self, state: ExecutionState, **extra: Any) -> dict[str, Any]:
        return build_scope(state, extra=extra or None)
