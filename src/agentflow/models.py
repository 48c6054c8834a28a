"""Workflow Pydantic models: definitions and runtime state.

Key exports:
    Definition models: WorkflowDefinition, WorkflowConfig, NodeDefinition,
        NodeExecution, EdgeDefinition, EdgeCondition
    Runtime state models: ExecutionState, HistoryEntry, ErrorRecord,
        HumanCheckpoint, HumanOption, Checkpoint
    Registry models: RegistryEntry, RegistryPage
    Enums: NodeType, ConditionType, JoinStrategy, ExecutionStatus, NodeStatus,
        ObservabilityLevel, PersistenceLevel, ErrorPolicy, HumanInLoopMode,
        MergeStrategy
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ── Enums ────────────────────────────────────────────────────────────────────


class NodeType(str, Enum):
    """All supported workflow node types."""

    START = "start"
    END = "end"
    AGENT = "agent"
    TOOL = "tool"
    DECISION = "decision"
    PARALLEL = "parallel"
    JOIN = "join"
    HUMAN = "human"
    TRANSFORM = "transform"
    MEMORY = "memory"


class ConditionType(str, Enum):
    """How an edge decides whether it is traversed."""

    ALWAYS = "always"
    NEVER = "never"
    EXPRESSION = "expression"
    EQUALS = "equals"
    CONTAINS = "contains"
    EXISTS = "exists"
    LLM = "llm"


class JoinStrategy(str, Enum):
    """How a join node waits for its incoming branches."""

    ALL = "all"
    RACE = "race"
    COUNT = "count"


class ExecutionStatus(str, Enum):
    """Execution lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeStatus(str, Enum):
    """Outcome of a single node step."""

    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


class ObservabilityLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"


class PersistenceLevel(str, Enum):
    NONE = "none"
    SESSION = "session"
    LONG_TERM = "long_term"


class ErrorPolicy(str, Enum):
    """What the engine does when a node fails."""

    FAIL = "fail"
    RETRY = "retry"
    CONTINUE = "continue"
    LLM_RECOVERY = "llm_recovery"


class HumanInLoopMode(str, Enum):
    NONE = "none"
    APPROVAL_GATES = "approval_gates"
    REAL_TIME = "real_time"


class MergeStrategy(str, Enum):
    """How a node's state updates are merged into ``data``."""

    REPLACE = "replace"
    DEEP = "deep"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# ── ID validation ────────────────────────────────────────────────────────────

WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:-]*$")
SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

# Localized text is either a plain string or a {language: text} map.
LocalizedText = Union[str, dict[str, str]]


def localize(value: LocalizedText | None, language: str = "en") -> str:
    """Pick the best translation of a localized value."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return value.get(language) or value.get("en") or next(iter(value.values()), "")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


# ── Definition Models (parsed from YAML/JSON) ───────────────────────────────


class WorkflowConfig(BaseModel):
    """Global execution settings of a workflow."""

    observability: ObservabilityLevel = ObservabilityLevel.STANDARD
    persistence: PersistenceLevel = PersistenceLevel.SESSION
    error_handling: ErrorPolicy = ErrorPolicy.FAIL
    human_in_loop: HumanInLoopMode = HumanInLoopMode.NONE
    max_execution_time_ms: int = Field(
        300_000,
        ge=1,
        validation_alias=AliasChoices(
            "max_execution_time_ms", "maxExecutionTimeMs", "maxExecutionTime"
        ),
    )
    max_nodes: int = Field(20, ge=1)
    max_iterations: int = Field(10, ge=1)
    allow_cycles: bool = True
    default_model_id: str | None = None

    model_config = _CAMEL


class NodeExecution(BaseModel):
    """Per-node execution limits and failure behavior."""

    timeout_ms: int | None = Field(
        None,
        ge=1,
        le=3_600_000,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout"),
    )
    retries: int | None = Field(None, ge=0, le=5)
    retry_delay_ms: int = Field(
        1000,
        ge=0,
        le=60_000,
        validation_alias=AliasChoices("retry_delay_ms", "retryDelayMs", "retryDelay"),
    )
    error_handler: ErrorPolicy | None = None
    max_iterations: int | None = Field(None, ge=1)
    merge: MergeStrategy = MergeStrategy.REPLACE

    model_config = _CAMEL


class NodeDefinition(BaseModel):
    """A single node in a workflow graph.

    ``config`` is type-specific; the executor that owns the node type validates
    it against its own config model.
    """

    id: str
    type: NodeType
    name: LocalizedText = ""
    description: LocalizedText = ""
    config: dict[str, Any] = {}
    execution: NodeExecution = Field(default_factory=NodeExecution)
    position: dict[str, float] | None = None

    model_config = _CAMEL

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not NODE_ID_PATTERN.match(v):
            msg = f"Node ID '{v}' must match pattern {NODE_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return v

    @field_validator("config", mode="before")
    @classmethod
    def none_config(cls, v: Any) -> Any:
        return {} if v is None else v

    def display_name(self, language: str = "en") -> str:
        return localize(self.name, language) or self.id


class EdgeCondition(BaseModel):
    """Condition that decides whether an edge is traversed."""

    type: ConditionType = ConditionType.ALWAYS
    expression: str | None = None
    field: str | None = None
    value: Any = None
    llm_prompt: str | None = None

    model_config = _CAMEL

    @model_validator(mode="after")
    def validate_condition(self) -> EdgeCondition:
        match self.type:
            case ConditionType.EXPRESSION:
                # Older definitions carry the expression in ``value``
                if not self.expression and isinstance(self.value, str):
                    self.expression = self.value
                if not self.expression:
                    raise ValueError("expression conditions require 'expression'")
            case ConditionType.EQUALS | ConditionType.CONTAINS | ConditionType.EXISTS:
                if not self.field:
                    msg = f"{self.type.value} conditions require 'field'"
                    raise ValueError(msg)
            case ConditionType.LLM:
                if not self.llm_prompt and not self.expression:
                    raise ValueError("llm conditions require 'llm_prompt'")
        return self


class EdgeDefinition(BaseModel):
    """A directed connection between two nodes."""

    id: str = ""
    source: str
    target: str
    condition: EdgeCondition = Field(default_factory=EdgeCondition)
    label: LocalizedText | None = None
    source_handle: str | None = None
    target_handle: str | None = None

    model_config = _CAMEL

    @field_validator("condition", mode="before")
    @classmethod
    def none_condition(cls, v: Any) -> Any:
        return EdgeCondition() if v is None else v

    @model_validator(mode="after")
    def default_id(self) -> EdgeDefinition:
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self


class WorkflowDefinition(BaseModel):
    """Complete workflow definition. Treated as immutable once a run starts."""

    id: str
    name: LocalizedText
    description: LocalizedText = ""
    version: str = "1.0.0"
    enabled: bool = True
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    nodes: list[NodeDefinition] = Field(min_length=2)
    edges: list[EdgeDefinition] = []
    allowed_groups: list[str] = []
    sources: list[str] = []

    model_config = _CAMEL

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not WORKFLOW_ID_PATTERN.match(v):
            msg = f"Workflow ID '{v}' must match pattern {WORKFLOW_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not SEMVER_PATTERN.match(v):
            msg = f"Version '{v}' must be in semver format (e.g. 1.0.0)"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_unique_ids(self) -> WorkflowDefinition:
        ids = [n.id for n in self.nodes]
        dupes = [nid for nid in ids if ids.count(nid) > 1]
        if dupes:
            msg = f"Duplicate node IDs: {sorted(set(dupes))}"
            raise ValueError(msg)
        edge_ids = [e.id for e in self.edges]
        dupes = [eid for eid in edge_ids if edge_ids.count(eid) > 1]
        if dupes:
            msg = f"Duplicate edge IDs: {sorted(set(dupes))}"
            raise ValueError(msg)
        return self

    def display_name(self, language: str = "en") -> str:
        return localize(self.name, language) or self.id

    def get_node(self, node_id: str) -> NodeDefinition | None:
        """Look up a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> list[EdgeDefinition]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> list[EdgeDefinition]:
        return [e for e in self.edges if e.source == node_id]

    def nodes_of_type(self, node_type: NodeType) -> list[NodeDefinition]:
        return [n for n in self.nodes if n.type == node_type]

    def dangling_edges(self) -> list[str]:
        """Return an error message for every edge that points at a missing node."""
        valid_ids = {n.id for n in self.nodes}
        errors: list[str] = []
        for edge in self.edges:
            for end, node_id in (("source", edge.source), ("target", edge.target)):
                if node_id not in valid_ids:
                    errors.append(f"Edge '{edge.id}' references unknown {end} node '{node_id}'")
        return errors

    def validate_structure(self) -> list[str]:
        """Validate start/end nodes and reachability rules.

        Returns a list of error messages (empty = valid).
        """
        errors = self.dangling_edges()

        starts = self.nodes_of_type(NodeType.START)
        if len(starts) != 1:
            errors.append(f"Workflow must have exactly one start node, found {len(starts)}")
        if not self.nodes_of_type(NodeType.END):
            errors.append("Workflow must have at least one end node")

        targets = {e.target for e in self.edges}
        for node in self.nodes:
            if node.type == NodeType.START:
                if node.id in targets:
                    errors.append(f"Start node '{node.id}' must not have incoming edges")
            elif node.id not in targets:
                errors.append(f"Node '{node.id}' has no incoming edge and can never run")

        return errors


# ── Runtime State Models (persisted in checkpoints) ─────────────────────────


class HistoryEntry(BaseModel):
    """One committed node step. History is append-only."""

    sequence: int
    node_id: str
    node_type: NodeType
    status: NodeStatus
    watermark: int = 0  # state.sequence when the node was dispatched
    attempts: int = 1
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: Any = None
    error: str | None = None
    branch: str | None = None


class ErrorRecord(BaseModel):
    """A terminal (or policy-handled) error stored on the execution."""

    kind: str
    node_id: str | None = None
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class HumanOption(BaseModel):
    value: str
    label: str = ""
    style: str = "secondary"
    description: str | None = None


class HumanCheckpoint(BaseModel):
    """Payload of a paused human step, awaiting one external response."""

    id: str
    node_id: str
    node_name: str = ""
    message: str = ""
    options: list[HumanOption] = []
    input_schema: dict[str, Any] | None = None
    display_data: dict[str, Any] = {}
    human_in_loop: HumanInLoopMode = HumanInLoopMode.NONE
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None

    # Dispatch bookkeeping carried over to the resumed step
    watermark: int = 0
    started_at: datetime | None = None
    claimed: bool = False


class ExecutionState(BaseModel):
    """Runtime state of one workflow execution."""

    execution_id: str
    workflow_id: str
    workflow_name: str = ""
    owner_id: str = "anonymous"
    definition_snapshot: str = "{}"  # JSON-serialized WorkflowDefinition

    status: ExecutionStatus = ExecutionStatus.QUEUED
    current_nodes: list[str] = []

    input: dict[str, Any] = {}
    data: dict[str, Any] = {}
    node_results: dict[str, dict[str, Any]] = {}
    iterations: dict[str, int] = {}
    sequence: int = 0

    history: list[HistoryEntry] = []
    checkpoints: list[str] = []
    errors: list[ErrorRecord] = []

    pending_checkpoint: HumanCheckpoint | None = None
    pending_activations: list[str] = []
    output: Any = None
    cancel_reason: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def executed_count(self) -> int:
        """Total node dispatches so far (resumed steps are not counted twice)."""
        return sum(self.iterations.values())

    def latest_entry(self, node_id: str) -> HistoryEntry | None:
        for entry in reversed(self.history):
            if entry.node_id == node_id:
                return entry
        return None

    def latest_completion(self, node_id: str) -> HistoryEntry | None:
        for entry in reversed(self.history):
            if entry.node_id == node_id and entry.status == NodeStatus.COMPLETED:
                return entry
        return None

    def completed_nodes(self) -> list[str]:
        return [e.node_id for e in self.history if e.status == NodeStatus.COMPLETED]

    def get_definition(self) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate_json(self.definition_snapshot)


class Checkpoint(BaseModel):
    """Durable snapshot of an execution, written atomically."""

    id: str
    execution_id: str
    sequence: int
    reason: str = "auto"
    created_at: datetime = Field(default_factory=utcnow)
    state: ExecutionState


# ── Registry Models ─────────────────────────────────────────────────────────


class RegistryEntry(BaseModel):
    """Summary of one execution kept by the ExecutionRegistry."""

    execution_id: str
    owner_id: str = "anonymous"
    workflow_id: str
    workflow_name: str = ""
    status: ExecutionStatus = ExecutionStatus.QUEUED
    current_nodes: list[str] = []
    pending_checkpoint_id: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    def matches(self, search: str) -> bool:
        """Case-insensitive free-text match over id and names."""
        needle = search.lower()
        return any(
            needle in (value or "").lower()
            for value in (self.execution_id, self.workflow_id, self.workflow_name)
        )

    @classmethod
    def from_state(cls, state: ExecutionState) -> RegistryEntry:
        return cls(
            execution_id=state.execution_id,
            owner_id=state.owner_id,
            workflow_id=state.workflow_id,
            workflow_name=state.workflow_name,
            status=state.status,
            current_nodes=list(state.current_nodes),
            pending_checkpoint_id=(
                state.pending_checkpoint.id if state.pending_checkpoint else None
            ),
            error=state.errors[-1].message if state.errors else None,
            started_at=state.started_at or state.created_at,
            completed_at=state.completed_at,
            updated_at=state.updated_at,
        )


class RegistryPage(BaseModel):
    items: list[RegistryEntry] = []
    total: int = 0
    offset: int = 0
    limit: int = 50
