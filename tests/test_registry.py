"""Tests for the SQLite-backed ExecutionRegistry."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest
import pytest_asyncio

from agentflow.errors import ExecutionNotFoundError
from agentflow.models import (
    Checkpoint,
    ExecutionState,
    ExecutionStatus,
    HumanCheckpoint,
)
from agentflow.registry import ExecutionRegistry
from agentflow.state import CheckpointStore


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test.db")) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def registry(db):
    reg = ExecutionRegistry(db)
    await reg.initialize()
    return reg


# ── Factory Helpers ────────────────────────────────────────────────────────────

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_state(execution_id: str = "exec-1", minutes: int = 0, **overrides) -> ExecutionState:
    defaults = {
        "execution_id": execution_id,
        "workflow_id": "review",
        "workflow_name": "Code review",
        "owner_id": "alice",
        "status": ExecutionStatus.RUNNING,
        "started_at": BASE_TIME + timedelta(minutes=minutes),
    }
    defaults.update(overrides)
    return ExecutionState(**defaults)


# ── Writes ─────────────────────────────────────────────────────────────────────


class TestRegister:
    async def test_register_and_get(self, registry: ExecutionRegistry):
        await registry.register(make_state())

        entry = registry.get("exec-1")
        assert entry is not None
        assert entry.owner_id == "alice"
        assert entry.status == ExecutionStatus.RUNNING
        assert entry.started_at == BASE_TIME

    async def test_get_nonexistent(self, registry: ExecutionRegistry):
        assert registry.get("exec-missing") is None

    async def test_persisted_across_instances(self, registry: ExecutionRegistry, db):
        await registry.register(make_state(current_nodes=["a", "b"]))

        reloaded = ExecutionRegistry(db)
        await reloaded.initialize()

        entry = reloaded.get("exec-1")
        assert entry.current_nodes == ["a", "b"]
        assert entry.started_at == BASE_TIME
        assert entry.workflow_name == "Code review"

    async def test_remove(self, registry: ExecutionRegistry, db):
        await registry.register(make_state())

        assert await registry.remove("exec-1") is True
        assert await registry.remove("exec-1") is False
        assert registry.get("exec-1") is None

        reloaded = ExecutionRegistry(db)
        await reloaded.initialize()
        assert reloaded.get("exec-1") is None


class TestStatusUpdates:
    async def test_update_status_terminal_clears_fields(self, registry: ExecutionRegistry):
        await registry.register(make_state(current_nodes=["a"]))
        await registry.set_pending_checkpoint("exec-1", "ckpt-1")

        entry = await registry.update_status("exec-1", ExecutionStatus.FAILED, error="boom")

        assert entry.status == ExecutionStatus.FAILED
        assert entry.error == "boom"
        assert entry.current_nodes == []
        assert entry.pending_checkpoint_id is None
        assert entry.completed_at is not None

    async def test_update_status_unknown(self, registry: ExecutionRegistry):
        with pytest.raises(ExecutionNotFoundError):
            await registry.update_status("exec-missing", ExecutionStatus.RUNNING)

    async def test_sync_writes_through_on_status_change(self, registry: ExecutionRegistry, db):
        await registry.register(make_state())
        await registry.sync(make_state(status=ExecutionStatus.COMPLETED))

        reloaded = ExecutionRegistry(db)
        await reloaded.initialize()
        assert reloaded.get("exec-1").status == ExecutionStatus.COMPLETED

    async def test_sync_same_status_is_deferred(self, registry: ExecutionRegistry, db):
        await registry.register(make_state())
        await registry.sync(make_state(current_nodes=["tool"]))

        reloaded = ExecutionRegistry(db)
        await reloaded.initialize()
        assert reloaded.get("exec-1").current_nodes == []

        assert await registry.flush() == 1
        reloaded = ExecutionRegistry(db)
        await reloaded.initialize()
        assert reloaded.get("exec-1").current_nodes == ["tool"]

    async def test_sync_registers_unknown(self, registry: ExecutionRegistry):
        await registry.sync(make_state("exec-new"))
        assert registry.get("exec-new") is not None

    async def test_touch_updates_in_memory(self, registry: ExecutionRegistry):
        await registry.register(make_state())
        registry.touch("exec-1", current_nodes=["x"])
        registry.touch("exec-unknown", current_nodes=["x"])

        assert registry.get("exec-1").current_nodes == ["x"]
        assert await registry.flush() == 1
        assert await registry.flush() == 0


# ── Queries ────────────────────────────────────────────────────────────────────


class TestList:
    async def seed(self, registry: ExecutionRegistry) -> None:
        await registry.register(make_state("exec-1", minutes=1))
        await registry.register(make_state("exec-2", minutes=2, owner_id="bob"))
        await registry.register(
            make_state("exec-3", minutes=3, status=ExecutionStatus.COMPLETED)
        )
        await registry.register(
            make_state(
                "exec-4",
                minutes=4,
                workflow_id="deploy",
                workflow_name="Deploy",
                status=ExecutionStatus.PAUSED,
                pending_checkpoint=HumanCheckpoint(id="ckpt-4", node_id="approve"),
            )
        )

    async def test_newest_first(self, registry: ExecutionRegistry):
        await self.seed(registry)
        page = registry.list()
        assert [e.execution_id for e in page.items] == ["exec-4", "exec-3", "exec-2", "exec-1"]
        assert page.total == 4

    async def test_filter_by_owner(self, registry: ExecutionRegistry):
        await self.seed(registry)
        page = registry.list(owner_id="bob")
        assert [e.execution_id for e in page.items] == ["exec-2"]

    async def test_filter_by_status(self, registry: ExecutionRegistry):
        await self.seed(registry)
        assert registry.list(status=ExecutionStatus.COMPLETED).total == 1
        page = registry.list(status=[ExecutionStatus.RUNNING, ExecutionStatus.PAUSED])
        assert {e.execution_id for e in page.items} == {"exec-1", "exec-2", "exec-4"}

    async def test_search(self, registry: ExecutionRegistry):
        await self.seed(registry)
        page = registry.list(search="deploy")
        assert [e.execution_id for e in page.items] == ["exec-4"]

    async def test_pagination(self, registry: ExecutionRegistry):
        await self.seed(registry)
        page = registry.list(offset=1, limit=2)
        assert [e.execution_id for e in page.items] == ["exec-3", "exec-2"]
        assert page.total == 4
        assert page.offset == 1
        assert page.limit == 2

    async def test_status_change_moves_index(self, registry: ExecutionRegistry):
        await self.seed(registry)
        await registry.update_status("exec-1", ExecutionStatus.CANCELLED)

        assert registry.list(status=ExecutionStatus.RUNNING).total == 1
        assert registry.list(status=ExecutionStatus.CANCELLED).total == 1

    async def test_active_and_pending(self, registry: ExecutionRegistry):
        await self.seed(registry)

        active = {e.execution_id for e in registry.get_active()}
        assert active == {"exec-1", "exec-2", "exec-4"}

        pending = registry.get_pending_checkpoints()
        assert [e.pending_checkpoint_id for e in pending] == ["ckpt-4"]

    async def test_stats(self, registry: ExecutionRegistry):
        await self.seed(registry)
        assert registry.stats() == {
            "total_executions": 4,
            "total_owners": 2,
            "by_status": {"running": 2, "completed": 1, "paused": 1},
        }


class TestReconcile:
    async def test_registers_checkpointed_executions(self, registry: ExecutionRegistry, tmp_path):
        store = CheckpointStore(tmp_path / "checkpoints")
        await registry.register(make_state("exec-known"))
        for execution_id in ("exec-known", "exec-orphan"):
            state = make_state(execution_id)
            await store.save(
                Checkpoint(id="cp-1", execution_id=execution_id, sequence=0, state=state)
            )

        added = await registry.reconcile_with_checkpoints(store)

        assert added == 1
        assert registry.get("exec-orphan").status == ExecutionStatus.RUNNING
