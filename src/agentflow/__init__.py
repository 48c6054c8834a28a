"""agentflow: embedded multi-agent workflow orchestration.

Runs declarative graphs of typed nodes (agent calls, tool invocations,
decisions, parallel forks and joins, human approval gates) to completion,
checkpointing every committed step so executions survive restarts.

Key exports:
    WorkflowEngine: start/resume/cancel executions
    DAGScheduler: graph validation and frontier computation
    StateManager, CheckpointStore: execution state and durable checkpoints
    ExecutionRegistry: SQLite-backed index of executions
    EventChannel: typed lifecycle events
    WorkflowDefinition, ExecutionState: definition and runtime models
"""

from agentflow.backend import (
    ConditionEvaluator,
    ExecutionBackend,
    HttpExecutionBackend,
    LLMConditionEvaluator,
    LLMRecoveryStrategy,
    RecoveryAction,
    RecoveryDecision,
    RecoveryStrategy,
)
from agentflow.config import (
    EngineSettings,
    load_settings,
    load_workflow_definition,
    load_workflow_definitions,
)
from agentflow.engine import WorkflowEngine
from agentflow.errors import (
    BackendError,
    CheckpointPersistError,
    CycleError,
    CycleIterationExceeded,
    DanglingEdgeError,
    DefinitionValidationError,
    ExecutionNotFoundError,
    ExpressionError,
    InvalidTransitionError,
    MaxExecutionTimeExceededError,
    MaxNodesExceededError,
    NodeExecutionError,
    NodeTimeoutError,
    ResumeRejectedError,
    WorkflowError,
)
from agentflow.events import EventChannel, EventType, WorkflowEvent
from agentflow.executors import (
    BaseNodeExecutor,
    ExecutionContext,
    ExecutorRegistry,
    NodeResult,
)
from agentflow.memory import InMemoryMemoryStore, MemoryStore, SqliteMemoryStore
from agentflow.models import (
    Checkpoint,
    EdgeCondition,
    EdgeDefinition,
    ExecutionState,
    ExecutionStatus,
    HistoryEntry,
    HumanCheckpoint,
    NodeDefinition,
    NodeType,
    RegistryEntry,
    RegistryPage,
    WorkflowConfig,
    WorkflowDefinition,
)
from agentflow.registry import ExecutionRegistry
from agentflow.scheduler import DAGScheduler, GraphAnalysis
from agentflow.state import CheckpointStore, StateDelta, StateManager

__version__ = "0.1.0"

__all__ = [
    # Engine
    "WorkflowEngine",
    "DAGScheduler",
    "GraphAnalysis",
    "StateManager",
    "StateDelta",
    "CheckpointStore",
    "ExecutionRegistry",
    # Events
    "EventChannel",
    "EventType",
    "WorkflowEvent",
    # Executors
    "BaseNodeExecutor",
    "ExecutionContext",
    "ExecutorRegistry",
    "NodeResult",
    # Collaborators
    "ExecutionBackend",
    "HttpExecutionBackend",
    "ConditionEvaluator",
    "LLMConditionEvaluator",
    "RecoveryStrategy",
    "LLMRecoveryStrategy",
    "RecoveryAction",
    "RecoveryDecision",
    "MemoryStore",
    "InMemoryMemoryStore",
    "SqliteMemoryStore",
    # Config
    "EngineSettings",
    "load_settings",
    "load_workflow_definition",
    "load_workflow_definitions",
    # Models
    "Checkpoint",
    "EdgeCondition",
    "EdgeDefinition",
    "ExecutionState",
    "ExecutionStatus",
    "HistoryEntry",
    "HumanCheckpoint",
    "NodeDefinition",
    "NodeType",
    "RegistryEntry",
    "RegistryPage",
    "WorkflowConfig",
    "WorkflowDefinition",
    # Errors
    "WorkflowError",
    "BackendError",
    "CheckpointPersistError",
    "CycleError",
    "CycleIterationExceeded",
    "DanglingEdgeError",
    "DefinitionValidationError",
    "ExecutionNotFoundError",
    "ExpressionError",
    "InvalidTransitionError",
    "MaxExecutionTimeExceededError",
    "MaxNodesExceededError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ResumeRejectedError",
]
