"""Workflow engine: drives executions from start to a terminal status.

Composes the DAGScheduler (what runs next), the executor table (how a node
runs), the StateManager (single writer + checkpoints), the ExecutionRegistry
(cross-execution index) and the EventChannel (lifecycle events).

One asyncio task runs the loop of each execution::

    frontier = scheduler.next_frontier(definition, state)
    dispatch frontier nodes concurrently, each under its own timeout
    apply + checkpoint every result as it arrives
    repeat until a terminal node, an empty frontier, a pause or a limit

A paused execution holds no task at all; ``resume`` starts a fresh loop.

Key exports:
    WorkflowEngine: start(), resume(), cancel(), get_state(), wait(),
        list_executions(), recover_executions(), shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite

from agentflow.backend import (
    ExecutionBackend,
    LLMConditionEvaluator,
    LLMRecoveryStrategy,
    RecoveryAction,
    RecoveryDecision,
    backend_from_settings,
)
from agentflow.config import EngineSettings
from agentflow.errors import (
    DefinitionValidationError,
    ExecutionNotFoundError,
    MaxExecutionTimeExceededError,
    MaxNodesExceededError,
    NodeExecutionError,
    NodeTimeoutError,
    ResumeRejectedError,
    WorkflowError,
)
from agentflow.events import (
    LIFECYCLE_EVENTS,
    EventChannel,
    EventType,
    create_event,
    sanitize_payload,
)
from agentflow.executors import ExecutionContext, ExecutorRegistry, NodeResult
from agentflow.memory import MemoryStore, SqliteMemoryStore
from agentflow.models import (
    ErrorPolicy,
    ErrorRecord,
    ExecutionState,
    ExecutionStatus,
    HumanCheckpoint,
    NodeDefinition,
    NodeStatus,
    NodeType,
    ObservabilityLevel,
    RegistryPage,
    WorkflowDefinition,
    utcnow,
)
from agentflow.registry import ExecutionRegistry
from agentflow.scheduler import DAGScheduler, GraphAnalysis
from agentflow.state import CheckpointStore, StateDelta, StateManager

if TYPE_CHECKING:
    from agentflow.backend import ConditionEvaluator, RecoveryStrategy

logger = logging.getLogger("agentflow.engine")


@dataclass
class _ActiveRun:
    """In-process handle of one execution (definition, abort signal, loop task)."""

    definition: WorkflowDefinition
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


@dataclass
class _Batch:
    """Outcome of dispatching one frontier."""

    watermark: int
    paused: HumanCheckpoint | None = None
    terminal: bool = False
    failure: ErrorRecord | None = None


# ── Workflow Engine ──────────────────────────────────────────────────────────


class WorkflowEngine:
    """Runs workflow executions.

    Usage:
        engine = await WorkflowEngine.from_settings(load_settings("agentflow.yaml"))
        state = await engine.start(definition, {"query": "x"}, owner_id="alice")
        state = await engine.wait(state.execution_id)
        if state.status == ExecutionStatus.PAUSED:
            await engine.resume(state.execution_id, state.pending_checkpoint.id, "approve")
        await engine.shutdown()

    Every collaborator is injectable; anything omitted gets an in-memory
    default, so ``WorkflowEngine()`` alone runs workflows without a backend,
    registry or checkpoint directory.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        state: StateManager | None = None,
        registry: ExecutionRegistry | None = None,
        scheduler: DAGScheduler | None = None,
        executors: ExecutorRegistry | None = None,
        backend: ExecutionBackend | None = None,
        events: EventChannel | None = None,
        memory: MemoryStore | None = None,
        condition_evaluator: ConditionEvaluator | None = None,
        recovery: RecoveryStrategy | None = None,
        language: str = "en",
    ):
        self.settings = settings or EngineSettings()
        self.state = state or StateManager()
        self.registry = registry
        self.scheduler = scheduler or DAGScheduler(
            default_max_iterations=self.settings.default_max_iterations,
            llm_timeout=self.settings.llm_timeout_s,
        )
        self.executors = executors or ExecutorRegistry()
        self.backend = backend
        self.events = events or EventChannel(self.settings.event_queue_size)
        self.memory = memory
        self.condition_evaluator = condition_evaluator
        if self.condition_evaluator is None and backend is not None:
            self.condition_evaluator = LLMConditionEvaluator(backend, self.settings.backend.model)
        self.recovery = recovery
        if self.recovery is None and backend is not None:
            self.recovery = LLMRecoveryStrategy(backend, self.settings.backend.model)
        self.language = language

        self._runs: dict[str, _ActiveRun] = {}
        # Resources opened by from_settings(), closed on shutdown
        self._db: aiosqlite.Connection | None = None
        self._owns_backend = False

    @classmethod
    async def from_settings(cls, settings: EngineSettings, **overrides: Any) -> WorkflowEngine:
        """Build an engine with on-disk checkpoints, a SQLite registry and the HTTP backend."""
        store = CheckpointStore(settings.checkpoint_dir, retention=settings.checkpoint_retention)
        state = StateManager(
            store,
            max_state_bytes=settings.max_state_bytes,
            checkpoint_retries=settings.checkpoint_retries,
            checkpoint_backoff_s=settings.checkpoint_backoff_s,
        )

        Path(settings.registry_db).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(settings.registry_db)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        registry = ExecutionRegistry(db)
        await registry.initialize()
        memory = SqliteMemoryStore(db)
        await memory.initialize()

        backend = overrides.pop("backend", None)
        owns_backend = False
        if backend is None:
            backend = backend_from_settings(settings)
            if backend is not None:
                await backend.start()
                owns_backend = True

        engine = cls(
            settings, state=state, registry=registry, memory=memory, backend=backend, **overrides
        )
        engine._db = db
        engine._owns_backend = owns_backend
        logger.info(
            "Workflow engine ready (checkpoints=%s, registry=%s, backend=%s)",
            settings.checkpoint_dir,
            settings.registry_db,
            settings.backend.base_url or "none",
        )
        return engine

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self, definition: WorkflowDefinition) -> GraphAnalysis:
        """Validate graph structure and every node's type-specific config.

        Raises:
            DefinitionValidationError: (or a subclass) listing every problem.
        """
        analysis = self.scheduler.validate(definition)
        errors = self.executors.validate_definition(definition)
        if errors:
            raise DefinitionValidationError(errors)
        return analysis

    # ── Public Operations ────────────────────────────────────────────────────

    async def start(
        self,
        definition: WorkflowDefinition,
        input_data: dict[str, Any] | None = None,
        *,
        owner_id: str = "anonymous",
        execution_id: str | None = None,
    ) -> ExecutionState:
        """Validate, create and launch an execution. Returns the running state."""
        if not definition.enabled:
            raise DefinitionValidationError(f"Workflow '{definition.id}' is disabled")
        self.validate(definition)

        state = await self.state.create(
            definition, input_data, owner_id=owner_id, execution_id=execution_id
        )
        execution_id = state.execution_id
        self._runs[execution_id] = _ActiveRun(definition=definition)
        if self.registry is not None:
            await self.registry.register(state)

        state = await self.state.transition(execution_id, ExecutionStatus.RUNNING)
        await self._checkpoint(execution_id, "start")
        await self._sync_registry(state)
        self._emit(
            EventType.START,
            execution_id,
            workflow_name=state.workflow_name,
            owner_id=owner_id,
            input=state.input,
        )
        logger.info(
            "Started execution %s of workflow '%s' (owner=%s)",
            execution_id,
            definition.id,
            owner_id,
        )

        self._spawn(execution_id)
        return state

    async def resume(
        self,
        execution_id: str,
        checkpoint_id: str,
        response: Any = None,
        data: dict[str, Any] | None = None,
    ) -> ExecutionState:
        """Answer the pending human checkpoint and continue the execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist.
            ResumeRejectedError: If it is not paused on ``checkpoint_id``, the
                checkpoint was already answered, the response is invalid, or
                the stored definition snapshot cannot be parsed.
        """
        state = await self.state.get(execution_id)
        pending = await self.state.claim_checkpoint(execution_id, checkpoint_id)
        try:
            run = self._ensure_run(state)
        except ValueError as exc:
            await self.state.release_checkpoint(execution_id)
            raise ResumeRejectedError(
                f"Execution {execution_id} has an invalid definition snapshot"
            ) from exc
        definition = run.definition

        node = definition.get_node(pending.node_id)
        if node is None:
            await self.state.release_checkpoint(execution_id)
            raise ResumeRejectedError(
                f"Paused node '{pending.node_id}' no longer exists", node_id=pending.node_id
            )

        run.cancel_event = asyncio.Event()
        context = self._context(state, run)
        external_input = {"checkpoint_id": checkpoint_id, "response": response, "data": data}
        try:
            result = await self.executors.get(node.type).resume(
                node, state, external_input, context
            )
        except WorkflowError as exc:
            result = NodeResult.failed(exc.message, code=exc.kind)
        except Exception as exc:
            logger.exception("Resume of node '%s' raised (execution %s)", node.id, execution_id)
            result = NodeResult.failed(f"{type(exc).__name__}: {exc}", code=NodeExecutionError.kind)

        if result.status != NodeStatus.COMPLETED:
            await self.state.release_checkpoint(execution_id)
            logger.info(
                "Rejected response for checkpoint %s (execution %s): %s",
                checkpoint_id,
                execution_id,
                result.error,
            )
            raise ResumeRejectedError(result.error or "Response rejected", node_id=node.id)

        await self.state.apply(
            execution_id,
            StateDelta(
                node_id=node.id,
                node_type=node.type,
                status=NodeStatus.COMPLETED,
                watermark=pending.watermark,
                output=result.output,
                state_updates=result.state_updates,
                path_updates=result.path_updates,
                removals=result.removals,
                merge=node.execution.merge,
                branch=result.branch,
                started_at=pending.started_at,
                terminal=result.terminal,
                resumed=True,
            ),
        )
        if isinstance(data, dict) and data:
            await self.state.update_data(execution_id, data)
        state = await self.state.transition(execution_id, ExecutionStatus.RUNNING)

        self._emit(
            EventType.HUMAN_RESPONDED,
            execution_id,
            node_id=node.id,
            checkpoint_id=checkpoint_id,
            response=response,
        )
        self._emit(EventType.RESUMED, execution_id, node_id=node.id, checkpoint_id=checkpoint_id)
        self._emit_node_complete(node, result, pending.started_at, execution_id, attempts=1)
        await self._checkpoint(execution_id, "resume")
        await self._sync_registry(state)
        logger.info(
            "Resumed execution %s at node '%s' (response=%r)", execution_id, node.id, response
        )

        self._spawn(execution_id)
        return state

    async def cancel(self, execution_id: str, reason: str = "cancelled") -> ExecutionState:
        """Abort an execution. A terminal execution is returned unchanged."""
        state = await self.state.get(execution_id)
        if state.is_terminal:
            return state

        run = self._runs.get(execution_id)
        if run is not None:
            run.cancel_event.set()
            task = run.task
            if task is not None and not task.done():
                task.cancel()
                await asyncio.wait({task}, timeout=self.settings.cancel_grace_s)
                if not task.done():
                    logger.warning(
                        "Execution %s did not stop within %.1fs of cancellation",
                        execution_id,
                        self.settings.cancel_grace_s,
                    )

        state = await self.state.get(execution_id)
        if state.is_terminal:
            return state

        state = await self.state.transition(execution_id, ExecutionStatus.CANCELLED, reason=reason)
        await self._checkpoint(execution_id, "cancel")
        await self._sync_registry(state)
        self._emit(EventType.CANCELLED, execution_id, reason=reason)
        logger.info("Cancelled execution %s: %s", execution_id, reason)
        return state

    async def get_state(self, execution_id: str) -> ExecutionState:
        """Current state, recovered from the latest checkpoint if not in memory."""
        return await self.state.get(execution_id)

    async def wait(self, execution_id: str, timeout: float | None = None) -> ExecutionState:
        """Wait until the execution's loop stops (terminal or paused) or ``timeout``."""
        run = self._runs.get(execution_id)
        if run is not None and run.task is not None and not run.task.done():
            await asyncio.wait({run.task}, timeout=timeout)
        return await self.state.get(execution_id)

    def list_executions(
        self,
        *,
        owner_id: str | None = None,
        status: ExecutionStatus | list[ExecutionStatus] | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> RegistryPage:
        if self.registry is None:
            raise RuntimeError("No execution registry configured")
        return self.registry.list(
            owner_id=owner_id, status=status, search=search, offset=offset, limit=limit
        )

    # ── Recovery & Shutdown ──────────────────────────────────────────────────

    async def recover_executions(self) -> int:
        """Restart the loops of executions that were running at the last shutdown.

        Returns the number of executions restarted. Paused executions need no
        loop; they are recovered lazily by ``resume``.
        """
        if self.registry is not None and self.state.store is not None:
            await self.registry.reconcile_with_checkpoints(self.state.store)

        if self.registry is not None:
            candidates = [e.execution_id for e in self.registry.get_active()]
        else:
            candidates = await self.state.list_recoverable()

        recovered = 0
        for execution_id in candidates:
            if execution_id in self._runs and self._runs[execution_id].task is not None:
                continue
            try:
                state = await self.state.recover(execution_id)
            except ExecutionNotFoundError:
                logger.warning("Cannot recover execution %s: no checkpoint", execution_id)
                continue
            await self._sync_registry(state)
            if state.status != ExecutionStatus.RUNNING:
                continue

            try:
                self._ensure_run(state)
            except ValueError:
                logger.warning(
                    "Cannot recover execution %s: invalid definition snapshot", execution_id
                )
                continue

            if state.current_nodes:
                logger.info(
                    "Execution %s had in-flight nodes at shutdown (%s); re-dispatching",
                    execution_id,
                    ", ".join(state.current_nodes),
                )
            self._spawn(execution_id)
            recovered += 1

        logger.info("Recovered %d running executions", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Stop every loop (state stays ``running`` for recovery) and flush the registry."""
        tasks = [run.task for run in self._runs.values() if run.task and not run.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Stopped %d execution loops", len(tasks))

        if self.registry is not None:
            await self.registry.flush()
        if self._owns_backend and self.backend is not None:
            await self.backend.close()  # type: ignore[attr-defined]
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ── Run Loop ─────────────────────────────────────────────────────────────

    def _ensure_run(self, state: ExecutionState) -> _ActiveRun:
        run = self._runs.get(state.execution_id)
        if run is None:
            run = _ActiveRun(definition=state.get_definition())
            self._runs[state.execution_id] = run
        return run

    def _spawn(self, execution_id: str) -> None:
        run = self._runs[execution_id]
        run.task = asyncio.create_task(
            self._run_loop(execution_id, run), name=f"agentflow-{execution_id}"
        )

    async def _run_loop(self, execution_id: str, run: _ActiveRun) -> None:
        """One run segment; the time ceiling applies per segment."""
        limit_ms = run.definition.config.max_execution_time_ms
        try:
            await asyncio.wait_for(self._drive(execution_id, run), timeout=limit_ms / 1000)
        except asyncio.TimeoutError:
            logger.error("Execution %s exceeded max execution time (%dms)", execution_id, limit_ms)
            await self._fail(execution_id, MaxExecutionTimeExceededError(limit_ms))
        except WorkflowError as exc:
            await self._fail(execution_id, exc)
        except asyncio.CancelledError:
            logger.debug("Run loop of %s cancelled", execution_id)
            raise
        except Exception as exc:
            logger.exception("Run loop of %s crashed", execution_id)
            await self._fail(
                execution_id, NodeExecutionError(f"Engine error: {type(exc).__name__}: {exc}")
            )

    async def _drive(self, execution_id: str, run: _ActiveRun) -> None:
        definition = run.definition
        max_nodes = definition.config.max_nodes

        while True:
            if run.cancel_event.is_set():
                return
            state = await self.state.get(execution_id)
            if state.status != ExecutionStatus.RUNNING:
                return

            frontier = await self.scheduler.next_frontier(
                definition, state, self.condition_evaluator
            )
            if not frontier:
                await self._complete(execution_id)
                return
            if state.executed_count + len(frontier) > max_nodes:
                raise MaxNodesExceededError(max_nodes)

            state = await self.state.set_frontier(execution_id, frontier)
            if self.registry is not None:
                self.registry.touch(execution_id, current_nodes=frontier)
            logger.debug("Execution %s dispatching %s", execution_id, ", ".join(frontier))

            batch = _Batch(watermark=state.sequence)
            outcomes = await asyncio.gather(
                *(
                    self._dispatch(execution_id, definition.get_node(node_id), state, run, batch)
                    for node_id in frontier
                ),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome

            if run.cancel_event.is_set():
                return
            if batch.failure is not None:
                await self._fail(execution_id, batch.failure)
                return
            if batch.paused is not None:
                await self._pause(execution_id, batch.paused)
                return
            if batch.terminal:
                await self._complete(execution_id)
                return

    async def _dispatch(
        self,
        execution_id: str,
        node: NodeDefinition,
        state: ExecutionState,
        run: _ActiveRun,
        batch: _Batch,
    ) -> None:
        """Run one node (with its retry/recovery policy) and commit the outcome."""
        definition = run.definition
        policy = node.execution.error_handler or definition.config.error_handling
        retries = (
            node.execution.retries
            if node.execution.retries is not None
            else self.settings.default_retries
        )
        started_at = utcnow()
        self._emit(EventType.NODE_START, execution_id, node_id=node.id, node_type=node.type.value)

        attempt = 0
        decision: RecoveryDecision | None = None
        while True:
            result = await self._invoke(node, state, self._context(state, run, attempt))
            if result.status != NodeStatus.FAILED or run.cancel_event.is_set():
                break
            self._emit(
                EventType.NODE_ERROR,
                execution_id,
                node_id=node.id,
                error=result.error,
                code=result.error_code,
                attempt=attempt + 1,
            )
            if policy == ErrorPolicy.RETRY and attempt < retries:
                delay_ms = node.execution.retry_delay_ms * 2**attempt
                logger.warning(
                    "Node '%s' failed (attempt %d/%d), retrying in %dms: %s",
                    node.id,
                    attempt + 1,
                    retries + 1,
                    delay_ms,
                    result.error,
                )
                await asyncio.sleep(delay_ms / 1000)
                attempt += 1
                continue
            if policy == ErrorPolicy.LLM_RECOVERY:
                decision = await self._propose_recovery(node, result, state, definition)
                if decision.action == RecoveryAction.RETRY and attempt < retries:
                    logger.info("Recovery strategy retries node '%s': %s", node.id, decision.reason)
                    attempt += 1
                    continue
            break

        if run.cancel_event.is_set():
            return

        attempts = attempt + 1
        delta = StateDelta(
            node_id=node.id,
            node_type=node.type,
            status=result.status,
            watermark=batch.watermark,
            output=result.output,
            state_updates=result.state_updates,
            path_updates=result.path_updates,
            removals=result.removals,
            merge=node.execution.merge,
            branch=result.branch,
            error=result.error,
            attempts=attempts,
            started_at=started_at,
            checkpoint=result.checkpoint,
            terminal=result.terminal,
        )

        fatal: ErrorRecord | None = None
        match result.status:
            case NodeStatus.PAUSED:
                if batch.paused is not None:
                    # One pending checkpoint per execution; this node runs again after resume
                    logger.info(
                        "Deferring pause of node '%s' until checkpoint %s is answered",
                        node.id,
                        batch.paused.id,
                    )
                    return
                if result.checkpoint is None:
                    delta.status = NodeStatus.FAILED
                    delta.error = "Node paused without a checkpoint"
                    fatal = _error_record(node, delta.error, NodeExecutionError.kind)
                else:
                    result.checkpoint.watermark = batch.watermark
                    result.checkpoint.started_at = started_at
                    batch.paused = result.checkpoint
            case NodeStatus.COMPLETED:
                batch.terminal = batch.terminal or result.terminal
            case NodeStatus.FAILED:
                fatal = self._handle_failure(node, result, policy, decision, delta)

        if fatal is not None and batch.failure is None:
            batch.failure = fatal

        await self.state.apply(execution_id, delta)
        if delta.status == NodeStatus.COMPLETED:
            self._emit_node_complete(node, result, started_at, execution_id, attempts=attempts)
        # The batch failure is recorded when the execution fails
        if delta.error and (fatal is None or fatal is not batch.failure):
            await self.state.record_error(
                execution_id, fatal or _error_record(node, delta.error, result.error_code)
            )
        await self._checkpoint(execution_id, f"node:{node.id}")

    def _handle_failure(
        self,
        node: NodeDefinition,
        result: NodeResult,
        policy: ErrorPolicy,
        decision: RecoveryDecision | None,
        delta: StateDelta,
    ) -> ErrorRecord | None:
        """Turn a final node failure into a delta according to the error policy.

        Returns the error record when the failure must fail the execution.
        """
        error = result.error or "Node failed"
        handled_output = {"error": error, "error_code": result.error_code, "output": result.output}

        if policy == ErrorPolicy.CONTINUE:
            logger.warning("Node '%s' failed, continuing: %s", node.id, error)
            delta.status = NodeStatus.COMPLETED
            delta.output = handled_output
            return None

        if decision is not None and decision.action == RecoveryAction.SKIP:
            logger.warning("Recovery strategy skips failed node '%s': %s", node.id, decision.reason)
            delta.status = NodeStatus.COMPLETED
            delta.output = handled_output
            return None

        if decision is not None and decision.action == RecoveryAction.GOTO and decision.target:
            logger.warning(
                "Recovery strategy routes failed node '%s' to '%s': %s",
                node.id,
                decision.target,
                decision.reason,
            )
            delta.activate = [decision.target]
            return None

        logger.error("Node '%s' failed: %s", node.id, error)
        return _error_record(node, error, result.error_code)

    async def _invoke(
        self, node: NodeDefinition, state: ExecutionState, context: ExecutionContext
    ) -> NodeResult:
        """Call the executor under the node timeout; always returns a result."""
        executor = self.executors.get(node.type)
        timeout_ms = node.execution.timeout_ms or self.settings.default_node_timeout_ms
        try:
            return await asyncio.wait_for(
                executor.execute(node, state, context), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            error = NodeTimeoutError(node.id, timeout_ms)
            logger.warning("Node '%s' timed out after %dms", node.id, timeout_ms)
            return NodeResult.failed(error.message, code=error.kind)
        except WorkflowError as exc:
            logger.error("Node '%s' failed: %s", node.id, exc.message)
            code = getattr(exc, "code", None) or exc.kind
            return NodeResult.failed(exc.message, code=code)
        except Exception as exc:
            logger.exception("Node '%s' raised an unexpected error", node.id)
            return NodeResult.failed(
                f"{type(exc).__name__}: {exc}", code=NodeExecutionError.kind
            )

    async def _propose_recovery(
        self,
        node: NodeDefinition,
        result: NodeResult,
        state: ExecutionState,
        definition: WorkflowDefinition,
    ) -> RecoveryDecision:
        if self.recovery is None:
            logger.warning("llm_recovery policy on node '%s' but no recovery strategy", node.id)
            return RecoveryDecision(RecoveryAction.FAIL, reason="No recovery strategy configured")
        try:
            return await asyncio.wait_for(
                self.recovery.propose(node, result.error or "", state, definition),
                timeout=self.settings.llm_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Recovery proposal for node '%s' timed out", node.id)
        except Exception:
            logger.exception("Recovery strategy failed for node '%s'", node.id)
        return RecoveryDecision(RecoveryAction.FAIL, reason="Recovery strategy unavailable")

    def _context(self, state: ExecutionState, run: _ActiveRun, attempt: int = 0) -> ExecutionContext:
        return ExecutionContext(
            execution_id=state.execution_id,
            definition=run.definition,
            owner_id=state.owner_id,
            language=self.language,
            backend=self.backend,
            events=self.events,
            memory=self.memory,
            scheduler=self.scheduler,
            settings=self.settings,
            cancel_event=run.cancel_event,
            attempt=attempt,
        )

    # ── Terminal Transitions ─────────────────────────────────────────────────

    async def _pause(self, execution_id: str, checkpoint: HumanCheckpoint) -> None:
        state = await self.state.transition(execution_id, ExecutionStatus.PAUSED)
        await self._checkpoint(execution_id, "pause")
        await self._sync_registry(state)
        self._emit(
            EventType.HUMAN_REQUIRED,
            execution_id,
            node_id=checkpoint.node_id,
            checkpoint=checkpoint.model_dump(mode="json", exclude={"watermark", "claimed"}),
        )
        self._emit(
            EventType.PAUSED, execution_id, node_id=checkpoint.node_id, checkpoint_id=checkpoint.id
        )
        logger.info(
            "Execution %s paused at node '%s' (checkpoint %s)",
            execution_id,
            checkpoint.node_id,
            checkpoint.id,
        )

    async def _complete(self, execution_id: str) -> None:
        state = await self.state.get(execution_id)
        definition = self._runs[execution_id].definition
        end_ids = {n.id for n in definition.nodes_of_type(NodeType.END)}
        if not end_ids.intersection(state.completed_nodes()):
            logger.warning(
                "Execution %s finished without reaching an end node", execution_id
            )

        state = await self.state.transition(execution_id, ExecutionStatus.COMPLETED)
        await self._checkpoint(execution_id, "complete")
        await self._sync_registry(state)
        self._emit(
            EventType.COMPLETE,
            execution_id,
            output=state.output,
            nodes_executed=state.executed_count,
            duration_ms=_duration_ms(state),
        )
        logger.info(
            "Execution %s completed (%d nodes, %dms)",
            execution_id,
            state.executed_count,
            _duration_ms(state),
        )

    async def _fail(self, execution_id: str, error: WorkflowError | ErrorRecord) -> None:
        state = self.state.peek(execution_id)
        if state is None or state.is_terminal:
            return
        record = (
            error
            if isinstance(error, ErrorRecord)
            else ErrorRecord(kind=error.kind, node_id=error.node_id, message=error.message)
        )
        await self.state.record_error(execution_id, record)
        state = await self.state.transition(execution_id, ExecutionStatus.FAILED)
        try:
            await self._checkpoint(execution_id, "failed")
        except WorkflowError:
            logger.exception("Could not persist failed state of execution %s", execution_id)
        await self._sync_registry(state)
        self._emit(
            EventType.FAILED,
            execution_id,
            node_id=record.node_id,
            kind=record.kind,
            error=record.message,
        )
        logger.error("Execution %s failed (%s): %s", execution_id, record.kind, record.message)

    # ── Persistence & Events ─────────────────────────────────────────────────

    async def _checkpoint(self, execution_id: str, reason: str) -> None:
        checkpoint = await self.state.checkpoint(execution_id, reason)
        if checkpoint is not None:
            self._emit(
                EventType.CHECKPOINT_SAVED,
                execution_id,
                checkpoint_id=checkpoint.id,
                sequence=checkpoint.sequence,
                reason=reason,
            )

    async def _sync_registry(self, state: ExecutionState) -> None:
        if self.registry is not None:
            await self.registry.sync(state)

    def _emit(
        self,
        event_type: EventType,
        execution_id: str,
        *,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        """Publish an event, filtered by the workflow's observability level."""
        run = self._runs.get(execution_id)
        level = run.definition.config.observability if run else ObservabilityLevel.STANDARD
        if event_type not in LIFECYCLE_EVENTS:
            if level == ObservabilityLevel.MINIMAL:
                return
            if event_type == EventType.CHECKPOINT_SAVED and level != ObservabilityLevel.FULL:
                return
        if level != ObservabilityLevel.FULL:
            data = {key: sanitize_payload(value) for key, value in data.items()}
        self.events.publish(
            create_event(
                event_type,
                execution_id,
                workflow_id=run.definition.id if run else None,
                node_id=node_id,
                **data,
            )
        )

    def _emit_node_complete(
        self,
        node: NodeDefinition,
        result: NodeResult,
        started_at: Any,
        execution_id: str,
        *,
        attempts: int,
    ) -> None:
        duration_ms = int((utcnow() - started_at).total_seconds() * 1000) if started_at else None
        self._emit(
            EventType.NODE_COMPLETE,
            execution_id,
            node_id=node.id,
            node_type=node.type.value,
            output=result.output,
            branch=result.branch,
            attempts=attempts,
            duration_ms=duration_ms,
        )


# ── Helpers ──────────────────────────────────────────────────────────────────


def _error_record(node: NodeDefinition, message: str, code: str | None) -> ErrorRecord:
    kind = code if code == NodeTimeoutError.kind else NodeExecutionError.kind
    return ErrorRecord(kind=kind, node_id=node.id, message=message)


def _duration_ms(state: ExecutionState) -> int:
    if state.started_at is None or state.completed_at is None:
        return 0
    return int((state.completed_at - state.started_at).total_seconds() * 1000)
