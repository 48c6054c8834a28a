"""Execution registry: cross-execution index backed by SQLite.

Holds one ``RegistryEntry`` summary per execution, indexed in memory by owner
and by status. Status changes are written through immediately; other summary
updates (current nodes, timestamps) are marked dirty and written on
``flush()``. Full execution state never lives here; it stays in the
per-execution checkpoints.

Key exports:
    ExecutionRegistry: register/update/list/remove operations
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from agentflow.errors import ExecutionNotFoundError
from agentflow.models import (
    ExecutionState,
    ExecutionStatus,
    RegistryEntry,
    RegistryPage,
    utcnow,
)

if TYPE_CHECKING:
    from agentflow.state import CheckpointStore

logger = logging.getLogger("agentflow.registry")

ACTIVE_STATUSES = (ExecutionStatus.QUEUED, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)


class ExecutionRegistry:
    """SQLite-backed index of executions.

    Takes an already-open aiosqlite connection. Call ``initialize()`` to
    create the table and load existing entries, and ``flush()`` at shutdown.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._entries: dict[str, RegistryEntry] = {}
        self._by_owner: dict[str, set[str]] = {}
        self._by_status: dict[ExecutionStatus, set[str]] = {s: set() for s in ExecutionStatus}
        self._dirty: set[str] = set()

    async def initialize(self) -> None:
        """Create the executions table and load every row into memory."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()

        cursor = await self._db.execute("SELECT * FROM executions")
        rows = await cursor.fetchall()
        for row in rows:
            self._index(_row_to_entry(row))
        logger.info("Execution registry initialized (%d executions)", len(self._entries))

    # ── Index maintenance ────────────────────────────────────────────────────

    def _index(self, entry: RegistryEntry) -> None:
        previous = self._entries.get(entry.execution_id)
        if previous is not None:
            self._by_status[previous.status].discard(entry.execution_id)
            self._by_owner.get(previous.owner_id, set()).discard(entry.execution_id)
        self._entries[entry.execution_id] = entry
        self._by_owner.setdefault(entry.owner_id, set()).add(entry.execution_id)
        self._by_status[entry.status].add(entry.execution_id)

    def _unindex(self, execution_id: str) -> RegistryEntry | None:
        entry = self._entries.pop(execution_id, None)
        if entry is None:
            return None
        self._by_status[entry.status].discard(execution_id)
        owned = self._by_owner.get(entry.owner_id)
        if owned is not None:
            owned.discard(execution_id)
            if not owned:
                del self._by_owner[entry.owner_id]
        self._dirty.discard(execution_id)
        return entry

    async def _persist(self, entry: RegistryEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO executions (
                execution_id, owner_id, workflow_id, workflow_name, status,
                current_nodes, pending_checkpoint_id, error,
                started_at, completed_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status = excluded.status,
                current_nodes = excluded.current_nodes,
                pending_checkpoint_id = excluded.pending_checkpoint_id,
                error = excluded.error,
                completed_at = excluded.completed_at,
                updated_at = excluded.updated_at
            """,
            (
                entry.execution_id,
                entry.owner_id,
                entry.workflow_id,
                entry.workflow_name,
                entry.status.value,
                json.dumps(entry.current_nodes),
                entry.pending_checkpoint_id,
                entry.error,
                _dt_to_str(entry.started_at),
                _dt_to_str(entry.completed_at),
                _dt_to_str(entry.updated_at),
            ),
        )
        await self._db.commit()
        self._dirty.discard(entry.execution_id)

    # ── Writes ───────────────────────────────────────────────────────────────

    async def register(self, state: ExecutionState) -> RegistryEntry:
        """Create (or replace) the entry for an execution."""
        entry = RegistryEntry.from_state(state)
        self._index(entry)
        await self._persist(entry)
        logger.info(
            "Registered execution %s (workflow=%s, owner=%s)",
            entry.execution_id,
            entry.workflow_id,
            entry.owner_id,
        )
        return entry

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error: str | None = None,
        current_nodes: list[str] | None = None,
        completed_at: datetime | None = None,
    ) -> RegistryEntry:
        """Change an entry's status and write it through to SQLite."""
        entry = self._require(execution_id)
        updates: dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if error is not None:
            updates["error"] = error
        if current_nodes is not None:
            updates["current_nodes"] = current_nodes
        if status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            updates["completed_at"] = completed_at or utcnow()
            updates["current_nodes"] = []
            updates["pending_checkpoint_id"] = None
        updated = entry.model_copy(update=updates)
        self._index(updated)
        await self._persist(updated)
        logger.debug("Execution %s status -> %s", execution_id, status.value)
        return updated

    async def sync(self, state: ExecutionState) -> RegistryEntry:
        """Mirror a state's summary, writing through only if the status changed."""
        entry = self._entries.get(state.execution_id)
        if entry is None:
            return await self.register(state)
        updated = RegistryEntry.from_state(state)
        self._index(updated)
        if updated.status != entry.status:
            await self._persist(updated)
        else:
            self._dirty.add(updated.execution_id)
        return updated

    def touch(self, execution_id: str, *, current_nodes: list[str] | None = None) -> None:
        """Update non-status summary fields in memory; persisted on ``flush``."""
        entry = self._entries.get(execution_id)
        if entry is None:
            return
        updates: dict[str, Any] = {"updated_at": utcnow()}
        if current_nodes is not None:
            updates["current_nodes"] = current_nodes
        self._index(entry.model_copy(update=updates))
        self._dirty.add(execution_id)

    async def set_pending_checkpoint(self, execution_id: str, checkpoint_id: str | None) -> None:
        entry = self._require(execution_id)
        updated = entry.model_copy(
            update={"pending_checkpoint_id": checkpoint_id, "updated_at": utcnow()}
        )
        self._index(updated)
        await self._persist(updated)

    async def remove(self, execution_id: str) -> bool:
        entry = self._unindex(execution_id)
        if entry is None:
            return False
        await self._db.execute("DELETE FROM executions WHERE execution_id = ?", (execution_id,))
        await self._db.commit()
        logger.info("Removed execution %s from registry", execution_id)
        return True

    async def flush(self) -> int:
        """Write every dirty entry. Returns the number written."""
        dirty = [self._entries[eid] for eid in list(self._dirty) if eid in self._entries]
        for entry in dirty:
            await self._persist(entry)
        self._dirty.clear()
        if dirty:
            logger.debug("Flushed %d registry entries", len(dirty))
        return len(dirty)

    # ── Queries ──────────────────────────────────────────────────────────────

    def _require(self, execution_id: str) -> RegistryEntry:
        entry = self._entries.get(execution_id)
        if entry is None:
            raise ExecutionNotFoundError(execution_id)
        return entry

    def get(self, execution_id: str) -> RegistryEntry | None:
        return self._entries.get(execution_id)

    def list(
        self,
        *,
        owner_id: str | None = None,
        status: ExecutionStatus | list[ExecutionStatus] | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> RegistryPage:
        """Filter entries, newest first."""
        if owner_id is not None:
            ids = set(self._by_owner.get(owner_id, set()))
        else:
            ids = set(self._entries)

        if status is not None:
            statuses = status if isinstance(status, list) else [status]
            by_status: set[str] = set()
            for s in statuses:
                by_status |= self._by_status[s]
            ids &= by_status

        entries = [self._entries[eid] for eid in ids]
        if search:
            entries = [e for e in entries if e.matches(search)]
        entries.sort(key=lambda e: (e.started_at, e.execution_id), reverse=True)

        return RegistryPage(
            items=entries[offset : offset + limit],
            total=len(entries),
            offset=offset,
            limit=limit,
        )

    def get_active(self) -> list[RegistryEntry]:
        return self.list(status=list(ACTIVE_STATUSES), limit=len(self._entries) or 1).items

    def get_pending_checkpoints(self) -> list[RegistryEntry]:
        """Paused executions waiting on a human response."""
        return [
            self._entries[eid]
            for eid in self._by_status[ExecutionStatus.PAUSED]
            if self._entries[eid].pending_checkpoint_id
        ]

    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": len(self._entries),
            "total_owners": len(self._by_owner),
            "by_status": {
                s.value: len(ids) for s, ids in self._by_status.items() if ids
            },
        }

    async def reconcile_with_checkpoints(self, store: CheckpointStore) -> int:
        """Register executions that have a checkpoint but no registry row."""
        added = 0
        for execution_id in await store.list_ids():
            if execution_id in self._entries:
                continue
            checkpoint = await store.load_latest(execution_id)
            if checkpoint is None:
                logger.debug("Skipping %s: no readable checkpoint", execution_id)
                continue
            await self.register(checkpoint.state)
            added += 1
            logger.info(
                "Recovered registry entry for %s from checkpoint (status=%s)",
                execution_id,
                checkpoint.state.status.value,
            )
        return added


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS executions (
    execution_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    workflow_id TEXT NOT NULL,
    workflow_name TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    current_nodes TEXT NOT NULL DEFAULT '[]',
    pending_checkpoint_id TEXT,
    error TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_owner ON executions(owner_id);
CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_entry(row: aiosqlite.Row) -> RegistryEntry:
    current_nodes = row["current_nodes"]
    if isinstance(current_nodes, str):
        current_nodes = json.loads(current_nodes)

    return RegistryEntry(
        execution_id=row["execution_id"],
        owner_id=row["owner_id"],
        workflow_id=row["workflow_id"],
        workflow_name=row["workflow_name"] or "",
        status=ExecutionStatus(row["status"]),
        current_nodes=current_nodes or [],
        pending_checkpoint_id=row["pending_checkpoint_id"],
        error=row["error"],
        started_at=_str_to_dt(row["started_at"]) or utcnow(),
        completed_at=_str_to_dt(row["completed_at"]),
        updated_at=_str_to_dt(row["updated_at"]) or utcnow(),
    )
