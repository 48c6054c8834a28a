"""State Manager: owns execution state, applies node deltas, persists checkpoints.

Every mutation goes through a per-execution ``asyncio.Lock``; this is the only
lock in the core. Mutations are copy-on-write: callers holding an earlier
``ExecutionState`` never observe it changing underneath them.

Checkpoints live on disk, one directory per execution::

    <root>/<execution_id>/latest.json          # authoritative for recovery
    <root>/<execution_id>/cp-000042-1a2b3c.json  # long_term persistence only

Every file is written to a temp file in the same directory, fsynced, then
moved into place with ``os.replace`` so a reader never sees a partial write.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from agentflow.errors import (
    CheckpointPersistError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    ResumeRejectedError,
    WorkflowError,
)
from agentflow.expressions import deep_merge, remove_in, set_in
from agentflow.models import (
    Checkpoint,
    ErrorRecord,
    ExecutionState,
    ExecutionStatus,
    HistoryEntry,
    HumanCheckpoint,
    MergeStrategy,
    NodeStatus,
    NodeType,
    PersistenceLevel,
    WorkflowDefinition,
    utcnow,
)

logger = logging.getLogger("agentflow.state")

# Allowed status transitions; running <-> paused is the only way back.
_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.QUEUED: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.PAUSED: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}

LATEST_FILE = "latest.json"


@dataclass
class StateDelta:
    """One node commit, produced by the engine from an executor result."""

    node_id: str
    node_type: NodeType
    status: NodeStatus
    watermark: int
    output: Any = None
    state_updates: dict[str, Any] = field(default_factory=dict)
    # Single nested keys, applied after ``state_updates`` so disjoint keys commute
    path_updates: list[tuple[tuple[str, ...], Any]] = field(default_factory=list)
    removals: list[tuple[str, ...]] = field(default_factory=list)
    merge: MergeStrategy = MergeStrategy.REPLACE
    branch: str | None = None
    error: str | None = None
    attempts: int = 1
    started_at: datetime | None = None
    checkpoint: HumanCheckpoint | None = None
    terminal: bool = False
    # Nodes to run next regardless of edges (llm recovery "goto")
    activate: list[str] = field(default_factory=list)
    # Completes a previously paused step; not counted as a new iteration
    resumed: bool = False


# ── Checkpoint Store ─────────────────────────────────────────────────────────


class CheckpointStore:
    """Durable per-execution checkpoint files."""

    def __init__(self, root: Path | str, retention: int = 10):
        self.root = Path(root)
        self.retention = retention

    def _dir(self, execution_id: str) -> Path:
        return self.root / execution_id

    async def save(self, checkpoint: Checkpoint, *, keep_history: bool = False) -> None:
        """Write ``checkpoint``; returns only after the worker thread finished.

        A cancelled caller still waits for the write, then re-raises
        ``CancelledError``, so writes made under the state lock land in order.
        """
        text = checkpoint.model_dump_json()
        write = asyncio.ensure_future(
            asyncio.to_thread(self._save_sync, checkpoint, text, keep_history)
        )
        interrupted = False
        while not write.done():
            try:
                await asyncio.wait({write})
            except asyncio.CancelledError:
                interrupted = True
        if interrupted:
            if not write.cancelled() and write.exception() is not None:
                logger.warning(
                    "Checkpoint %s failed while its caller was cancelled: %s",
                    checkpoint.id,
                    write.exception(),
                )
            raise asyncio.CancelledError
        write.result()

    def _save_sync(self, checkpoint: Checkpoint, text: str, keep_history: bool) -> None:
        directory = self._dir(checkpoint.execution_id)
        directory.mkdir(parents=True, exist_ok=True)
        if keep_history:
            _write_atomic(directory / f"{checkpoint.id}.json", text)
            self._prune(directory)
        _write_atomic(directory / LATEST_FILE, text)

    def _prune(self, directory: Path) -> None:
        snapshots = sorted(directory.glob("cp-*.json"), key=lambda p: p.name)
        for path in snapshots[: max(0, len(snapshots) - self.retention)]:
            path.unlink(missing_ok=True)

    async def load_latest(self, execution_id: str) -> Checkpoint | None:
        path = self._dir(execution_id) / LATEST_FILE
        return await asyncio.to_thread(_read_checkpoint, path)

    async def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        """Retained historical checkpoints, oldest first (long_term only)."""

        def _load_all() -> list[Checkpoint]:
            directory = self._dir(execution_id)
            if not directory.is_dir():
                return []
            loaded = [_read_checkpoint(p) for p in sorted(directory.glob("cp-*.json"))]
            return [c for c in loaded if c is not None]

        return await asyncio.to_thread(_load_all)

    async def delete(self, execution_id: str) -> None:
        await asyncio.to_thread(shutil.rmtree, self._dir(execution_id), True)

    async def list_ids(self) -> list[str]:
        def _scan() -> list[str]:
            if not self.root.is_dir():
                return []
            return sorted(p.parent.name for p in self.root.glob(f"*/{LATEST_FILE}"))

        return await asyncio.to_thread(_scan)


def _write_atomic(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via temp file, fsync and rename."""
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_checkpoint(path: Path) -> Checkpoint | None:
    if not path.is_file():
        return None
    try:
        return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError:
        logger.exception("Unreadable checkpoint file %s", path)
        return None


# ── State Manager ────────────────────────────────────────────────────────────


class StateManager:
    """Single writer for every ``ExecutionState`` it manages.

    Args:
        store: Checkpoint store; ``None`` keeps everything in memory.
        max_state_bytes: Serialized state ceiling checked on checkpoint.
        checkpoint_retries: Extra attempts for a failed checkpoint write.
        checkpoint_backoff_s: Base delay between attempts (doubles each time).
    """

    def __init__(
        self,
        store: CheckpointStore | None = None,
        *,
        max_state_bytes: int = 50 * 1024 * 1024,
        checkpoint_retries: int = 3,
        checkpoint_backoff_s: float = 0.1,
    ):
        self.store = store
        self.max_state_bytes = max_state_bytes
        self.checkpoint_retries = checkpoint_retries
        self.checkpoint_backoff_s = checkpoint_backoff_s
        self._states: dict[str, ExecutionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._persistence: dict[str, PersistenceLevel] = {}

    def lock(self, execution_id: str) -> asyncio.Lock:
        if execution_id not in self._locks:
            self._locks[execution_id] = asyncio.Lock()
        return self._locks[execution_id]

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create(
        self,
        definition: WorkflowDefinition,
        input_data: dict[str, Any] | None = None,
        *,
        owner_id: str = "anonymous",
        execution_id: str | None = None,
    ) -> ExecutionState:
        """Create a new queued execution."""
        execution_id = execution_id or f"exec-{uuid.uuid4().hex[:16]}"
        if execution_id in self._states:
            raise InvalidTransitionError(f"Execution '{execution_id}' already exists")

        state = ExecutionState(
            execution_id=execution_id,
            workflow_id=definition.id,
            workflow_name=definition.display_name(),
            owner_id=owner_id,
            definition_snapshot=definition.model_dump_json(),
            input=dict(input_data or {}),
        )
        self._states[execution_id] = state
        self._persistence[execution_id] = definition.config.persistence
        logger.debug("Created execution %s for workflow %s", execution_id, definition.id)
        return state

    async def get(self, execution_id: str) -> ExecutionState:
        """Return the current state, recovering it from disk on first access.

        Raises:
            ExecutionNotFoundError: If neither memory nor the store has it.
        """
        state = self._states.get(execution_id)
        if state is not None:
            return state
        return await self.recover(execution_id)

    def peek(self, execution_id: str) -> ExecutionState | None:
        """In-memory state only, no recovery."""
        return self._states.get(execution_id)

    async def recover(self, execution_id: str) -> ExecutionState:
        """Replace in-memory state wholesale with the latest checkpoint."""
        if self.store is None:
            raise ExecutionNotFoundError(execution_id)
        checkpoint = await self.store.load_latest(execution_id)
        if checkpoint is None:
            raise ExecutionNotFoundError(execution_id)

        state = checkpoint.state
        self._states[execution_id] = state
        try:
            self._persistence[execution_id] = state.get_definition().config.persistence
        except ValidationError:
            self._persistence[execution_id] = PersistenceLevel.SESSION
        logger.info(
            "Recovered execution %s from checkpoint %s (status=%s, %d history entries)",
            execution_id,
            checkpoint.id,
            state.status.value,
            len(state.history),
        )
        return state

    async def discard(self, execution_id: str, *, delete_checkpoints: bool = False) -> None:
        """Forget an execution in memory (and optionally on disk)."""
        self._states.pop(execution_id, None)
        self._persistence.pop(execution_id, None)
        self._locks.pop(execution_id, None)
        if delete_checkpoints and self.store is not None:
            await self.store.delete(execution_id)

    async def list_recoverable(self) -> list[str]:
        if self.store is None:
            return []
        return await self.store.list_ids()

    # ── Mutations ────────────────────────────────────────────────────────────

    async def _mutate(self, execution_id: str) -> ExecutionState:
        current = await self.get(execution_id)
        return current.model_copy(deep=True)

    def _commit(self, state: ExecutionState) -> ExecutionState:
        state.updated_at = utcnow()
        self._states[state.execution_id] = state
        return state

    async def apply(self, execution_id: str, delta: StateDelta) -> ExecutionState:
        """Merge one node commit into the state and append its history entry."""
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            if state.is_terminal:
                msg = f"Cannot apply node '{delta.node_id}' to {state.status.value} execution"
                raise InvalidTransitionError(msg, node_id=delta.node_id)

            state.sequence += 1
            if delta.state_updates:
                if delta.merge == MergeStrategy.DEEP:
                    state.data = deep_merge(state.data, delta.state_updates)
                else:
                    state.data.update(delta.state_updates)
            for keys, value in delta.path_updates:
                set_in(state.data, keys, value)
            for keys in delta.removals:
                remove_in(state.data, keys)

            state.history.append(
                HistoryEntry(
                    sequence=state.sequence,
                    node_id=delta.node_id,
                    node_type=delta.node_type,
                    status=delta.status,
                    watermark=delta.watermark,
                    attempts=delta.attempts,
                    started_at=delta.started_at,
                    completed_at=utcnow(),
                    output=delta.output,
                    error=delta.error,
                    branch=delta.branch,
                )
            )
            state.node_results[delta.node_id] = {
                "output": delta.output,
                "branch": delta.branch,
                "status": delta.status.value,
                "error": delta.error,
            }
            if not delta.resumed:
                state.iterations[delta.node_id] = state.iterations.get(delta.node_id, 0) + 1

            if delta.status == NodeStatus.PAUSED:
                state.pending_checkpoint = delta.checkpoint
            elif delta.resumed:
                state.pending_checkpoint = None
            if delta.terminal:
                state.output = delta.output
            for node_id in delta.activate:
                if node_id not in state.pending_activations:
                    state.pending_activations.append(node_id)
            if delta.node_id in state.current_nodes:
                state.current_nodes.remove(delta.node_id)

            return self._commit(state)

    async def transition(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        reason: str | None = None,
    ) -> ExecutionState:
        """Move the execution to a new status.

        Raises:
            InvalidTransitionError: For transitions the lifecycle forbids, or
                pausing without a pending checkpoint.
        """
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            if status not in _TRANSITIONS[state.status]:
                msg = f"Cannot transition execution {execution_id} from {state.status.value} to {status.value}"
                raise InvalidTransitionError(msg)
            if status == ExecutionStatus.PAUSED and state.pending_checkpoint is None:
                raise InvalidTransitionError("Cannot pause without a pending checkpoint")

            previous = state.status
            state.status = status
            if status == ExecutionStatus.RUNNING and state.started_at is None:
                state.started_at = utcnow()
            if state.is_terminal:
                state.completed_at = utcnow()
                state.current_nodes = []
                if status == ExecutionStatus.CANCELLED:
                    state.cancel_reason = reason
            logger.debug(
                "Execution %s: %s -> %s", execution_id, previous.value, status.value
            )
            return self._commit(state)

    async def set_frontier(self, execution_id: str, node_ids: list[str]) -> ExecutionState:
        """Record the nodes being dispatched; consumes their pending activations."""
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            state.current_nodes = list(node_ids)
            state.pending_activations = [
                n for n in state.pending_activations if n not in node_ids
            ]
            return self._commit(state)

    async def record_error(
        self, execution_id: str, error: WorkflowError | ErrorRecord
    ) -> ExecutionState:
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            if isinstance(error, WorkflowError):
                error = ErrorRecord(kind=error.kind, node_id=error.node_id, message=error.message)
            state.errors.append(error)
            return self._commit(state)

    async def update_data(self, execution_id: str, updates: dict[str, Any]) -> ExecutionState:
        """Merge caller-supplied variables (e.g. alongside a resume)."""
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            state.data.update(updates)
            return self._commit(state)

    # ── Human checkpoints ────────────────────────────────────────────────────

    async def claim_checkpoint(self, execution_id: str, checkpoint_id: str) -> HumanCheckpoint:
        """Atomically claim the pending human checkpoint for one resume call.

        Raises:
            ResumeRejectedError: If the execution is not paused, the id does
                not match, or another resume already claimed it.
        """
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            pending = state.pending_checkpoint
            if state.status != ExecutionStatus.PAUSED or pending is None:
                msg = f"Execution {execution_id} is {state.status.value}, not paused"
                raise ResumeRejectedError(msg)
            if pending.id != checkpoint_id:
                raise ResumeRejectedError(
                    f"Checkpoint '{checkpoint_id}' does not match pending checkpoint '{pending.id}'"
                )
            if pending.claimed:
                raise ResumeRejectedError(f"Checkpoint '{checkpoint_id}' was already resumed")
            pending.claimed = True
            self._commit(state)
            return pending.model_copy()

    async def release_checkpoint(self, execution_id: str) -> None:
        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            if state.pending_checkpoint is not None:
                state.pending_checkpoint.claimed = False
                self._commit(state)

    # ── Persistence ──────────────────────────────────────────────────────────

    async def checkpoint(self, execution_id: str, reason: str = "auto") -> Checkpoint | None:
        """Persist the current state.

        Returns ``None`` when the execution's persistence level is ``none``.

        Raises:
            CheckpointPersistError: If the state is too large, cannot be
                serialized, or every write attempt failed.
        """
        level = self._persistence.get(execution_id, PersistenceLevel.SESSION)
        store = self.store
        if store is None or level == PersistenceLevel.NONE:
            return None

        async with self.lock(execution_id):
            state = await self._mutate(execution_id)
            checkpoint_id = f"cp-{state.sequence:06d}-{uuid.uuid4().hex[:6]}"
            state.checkpoints.append(checkpoint_id)
            checkpoint = Checkpoint(
                id=checkpoint_id,
                execution_id=execution_id,
                sequence=state.sequence,
                reason=reason,
                state=state,
            )
            try:
                size = len(checkpoint.model_dump_json().encode("utf-8"))
            except PydanticSerializationError as exc:
                raise CheckpointPersistError(f"State is not serializable: {exc}") from exc
            if size > self.max_state_bytes:
                raise CheckpointPersistError(
                    f"State size {size} bytes exceeds limit of {self.max_state_bytes}"
                )

            await self._save_with_retry(
                store, checkpoint, keep_history=level == PersistenceLevel.LONG_TERM
            )
            self._commit(state)
            return checkpoint

    async def _save_with_retry(
        self, store: CheckpointStore, checkpoint: Checkpoint, *, keep_history: bool
    ) -> None:
        last_error: OSError | None = None
        for attempt in range(self.checkpoint_retries + 1):
            try:
                await store.save(checkpoint, keep_history=keep_history)
                return
            except OSError as exc:
                last_error = exc
                delay = self.checkpoint_backoff_s * 2**attempt
                logger.warning(
                    "Checkpoint write for %s failed (attempt %d/%d): %s",
                    checkpoint.execution_id,
                    attempt + 1,
                    self.checkpoint_retries + 1,
                    exc,
                )
                if attempt < self.checkpoint_retries:
                    await asyncio.sleep(delay)
        raise CheckpointPersistError(
            f"Failed to persist checkpoint for {checkpoint.execution_id}: {last_error}"
        ) from last_error
