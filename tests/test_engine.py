"""Tests for WorkflowEngine: end-to-end runs through the public operations."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from agentflow.backend import CompletionResponse, RecoveryAction, RecoveryDecision
from agentflow.config import EngineSettings
from agentflow.engine import WorkflowEngine
from agentflow.errors import (
    BackendError,
    CycleError,
    DanglingEdgeError,
    DefinitionValidationError,
    ExecutionNotFoundError,
    ResumeRejectedError,
)
from agentflow.events import EventType
from agentflow.models import ExecutionStatus, NodeStatus, WorkflowDefinition
from agentflow.registry import ExecutionRegistry
from agentflow.state import CheckpointStore, StateManager


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


# ── Fakes ──────────────────────────────────────────────────────────────────────


class FakeBackend:
    """Records calls; tools are plain (sync or async) callables keyed by id."""

    def __init__(self, tools: dict[str, Any] | None = None, replies: list[str] | None = None):
        self.tools = tools or {}
        self.replies = list(replies or [])
        self.tool_calls: list[tuple[str, dict, dict]] = []
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        content = self.replies.pop(0) if self.replies else "ok"
        return CompletionResponse(content=content)

    async def call_tool(self, tool_id, params, context):
        self.tool_calls.append((tool_id, params, context))
        result = self.tools[tool_id](params)
        if asyncio.iscoroutine(result):
            result = await result
        return result


class FixedRecovery:
    def __init__(self, decision: RecoveryDecision):
        self.decision = decision
        self.calls = 0

    async def propose(self, node, error, state, definition):
        self.calls += 1
        return self.decision


class SlowCheckpointStore(CheckpointStore):
    """Holds node checkpoints of running executions in the worker thread."""

    def __init__(self, root, delay: float):
        super().__init__(root)
        self.delay = delay
        self.slow_write = threading.Event()

    def _save_sync(self, checkpoint, text, keep_history):
        running = checkpoint.state.status == ExecutionStatus.RUNNING
        if running and checkpoint.reason.startswith("node:"):
            self.slow_write.set()
            time.sleep(self.delay)
        super()._save_sync(checkpoint, text, keep_history)


class FailingCheckpointStore(CheckpointStore):
    """Every node checkpoint write fails."""

    def _save_sync(self, checkpoint, text, keep_history):
        if checkpoint.reason.startswith("node:"):
            raise OSError("disk full")
        super()._save_sync(checkpoint, text, keep_history)


# ── Factory Helpers ────────────────────────────────────────────────────────────


def make_definition(nodes, edges, **config) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {"id": "test-flow", "name": "Test flow", "config": config, "nodes": nodes, "edges": edges}
    )


def make_tool_flow(tool_execution: dict | None = None, **config) -> WorkflowDefinition:
    return make_definition(
        [
            {"id": "start", "type": "start"},
            {
                "id": "tool",
                "type": "tool",
                "config": {
                    "tool_id": "search",
                    "parameters": {"q": "$.query"},
                    "output_variable": "search_result",
                },
                "execution": tool_execution or {},
            },
            {"id": "end", "type": "end"},
        ],
        [{"source": "start", "target": "tool"}, {"source": "tool", "target": "end"}],
        **config,
    )


def make_branch_flow() -> WorkflowDefinition:
    return make_definition(
        [
            {"id": "start", "type": "start"},
            {"id": "decide", "type": "decision", "config": {"expression": "state.data.value > 10"}},
            {"id": "high", "type": "end"},
            {"id": "low", "type": "end"},
        ],
        [
            {"source": "start", "target": "decide"},
            {
                "source": "decide",
                "target": "high",
                "condition": {"type": "equals", "field": "result.branch", "value": "true"},
            },
            {
                "source": "decide",
                "target": "low",
                "condition": {"type": "equals", "field": "result.branch", "value": "false"},
            },
        ],
    )


def make_loop_flow(max_iterations: int = 3, **config) -> WorkflowDefinition:
    return make_definition(
        [
            {"id": "start", "type": "start"},
            {
                "id": "loop",
                "type": "decision",
                "config": {"expression": "true"},
                "execution": {"max_iterations": max_iterations},
            },
            {"id": "end", "type": "end"},
        ],
        [
            {"source": "start", "target": "loop"},
            {"source": "loop", "target": "loop"},
            {
                "source": "loop",
                "target": "end",
                "condition": {"type": "equals", "field": "result.branch", "value": "false"},
            },
        ],
        **config,
    )


def make_approval_flow() -> WorkflowDefinition:
    return make_definition(
        [
            {"id": "start", "type": "start"},
            {
                "id": "approve",
                "type": "human",
                "config": {
                    "message": "Approve {{query}}?",
                    "options": [{"value": "approve"}, {"value": "reject"}],
                },
            },
            {"id": "done", "type": "end"},
            {"id": "rejected", "type": "end"},
        ],
        [
            {"source": "start", "target": "approve"},
            {
                "source": "approve",
                "target": "done",
                "condition": {"type": "equals", "field": "result.branch", "value": "approve"},
            },
            {
                "source": "approve",
                "target": "rejected",
                "condition": {"type": "equals", "field": "result.branch", "value": "reject"},
            },
        ],
    )


def make_fork_flow(branch_a: dict, branch_b: dict) -> WorkflowDefinition:
    return make_definition(
        [
            {"id": "start", "type": "start"},
            {"id": "fork", "type": "parallel"},
            {"id": "a", **branch_a},
            {"id": "b", **branch_b},
            {"id": "join", "type": "join", "config": {"strategy": "all"}},
            {"id": "end", "type": "end"},
        ],
        [
            {"source": "start", "target": "fork"},
            {"source": "fork", "target": "a"},
            {"source": "fork", "target": "b"},
            {"source": "a", "target": "join"},
            {"source": "b", "target": "join"},
            {"source": "join", "target": "end"},
        ],
    )


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


async def run_to_stop(engine: WorkflowEngine, definition, input_data=None, **kwargs):
    state = await engine.start(definition, input_data, **kwargs)
    return await engine.wait(state.execution_id, timeout=5)


# ── Linear Runs ────────────────────────────────────────────────────────────────


class TestLinearRun:
    async def test_start_tool_end_completes(self):
        backend = FakeBackend(tools={"search": lambda params: {"hits": [params["q"]]}})
        engine = WorkflowEngine(backend=backend)

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"})

        assert state.status == ExecutionStatus.COMPLETED
        assert [e.node_id for e in state.history] == ["start", "tool", "end"]
        assert state.data["search_result"] == {"hits": ["x"]}
        assert state.output == {"query": "x", "search_result": {"hits": ["x"]}}
        assert state.current_nodes == []
        assert state.completed_at is not None

    async def test_tool_receives_execution_context(self):
        backend = FakeBackend(tools={"search": lambda params: "ok"})
        engine = WorkflowEngine(backend=backend)

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"}, owner_id="alice")

        tool_id, params, context = backend.tool_calls[0]
        assert tool_id == "search"
        assert params == {"q": "x"}
        assert context == {
            "execution_id": state.execution_id,
            "node_id": "tool",
            "owner_id": "alice",
        }

    async def test_history_sequences_increase(self):
        backend = FakeBackend(tools={"search": lambda params: "ok"})
        engine = WorkflowEngine(backend=backend)

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"})

        sequences = [e.sequence for e in state.history]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)

    async def test_custom_execution_id(self):
        backend = FakeBackend(tools={"search": lambda params: "ok"})
        engine = WorkflowEngine(backend=backend)

        state = await run_to_stop(engine, make_tool_flow(), {}, execution_id="exec-custom")

        assert state.execution_id == "exec-custom"

    async def test_get_state_unknown_raises(self):
        engine = WorkflowEngine()
        with pytest.raises(ExecutionNotFoundError):
            await engine.get_state("exec-missing")


# ── Validation ─────────────────────────────────────────────────────────────────


class TestStartValidation:
    async def test_dangling_edge_rejected(self):
        definition = make_definition(
            [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
            [{"source": "start", "target": "end"}, {"source": "start", "target": "ghost"}],
        )
        with pytest.raises(DanglingEdgeError):
            await WorkflowEngine().start(definition)

    async def test_cycle_rejected_when_disallowed(self):
        with pytest.raises(CycleError):
            await WorkflowEngine().start(make_loop_flow(allow_cycles=False))

    async def test_invalid_node_config_rejected(self):
        definition = make_definition(
            [
                {"id": "start", "type": "start"},
                {"id": "tool", "type": "tool", "config": {}},
                {"id": "end", "type": "end"},
            ],
            [{"source": "start", "target": "tool"}, {"source": "tool", "target": "end"}],
        )
        with pytest.raises(DefinitionValidationError) as exc_info:
            await WorkflowEngine().start(definition)
        assert any(err.startswith("Node 'tool' config") for err in exc_info.value.errors)

    async def test_disabled_workflow_rejected(self):
        definition = make_tool_flow().model_copy(update={"enabled": False})
        with pytest.raises(DefinitionValidationError):
            await WorkflowEngine().start(definition)


# ── Decisions & Cycles ─────────────────────────────────────────────────────────


class TestBranching:
    async def test_high_value_takes_true_branch(self):
        state = await run_to_stop(WorkflowEngine(), make_branch_flow(), {"value": 15})

        assert state.status == ExecutionStatus.COMPLETED
        assert "high" in state.completed_nodes()
        assert "low" not in state.completed_nodes()

    async def test_low_value_takes_false_branch(self):
        state = await run_to_stop(WorkflowEngine(), make_branch_flow(), {"value": 5})

        assert state.status == ExecutionStatus.COMPLETED
        assert "low" in state.completed_nodes()
        assert "high" not in state.completed_nodes()
        assert state.node_results["decide"]["branch"] == "false"


class TestCycles:
    async def test_iteration_cap_fails_execution(self):
        state = await run_to_stop(WorkflowEngine(), make_loop_flow(max_iterations=3))

        assert state.status == ExecutionStatus.FAILED
        assert state.errors[-1].kind == "CycleIterationExceeded"
        assert state.errors[-1].node_id == "loop"
        assert [e.node_id for e in state.history].count("loop") == 3
        assert state.iterations["loop"] == 3

    async def test_max_nodes_fails_execution(self):
        state = await run_to_stop(WorkflowEngine(), make_loop_flow(max_iterations=10, max_nodes=3))

        assert state.status == ExecutionStatus.FAILED
        assert state.errors[-1].kind == "MaxNodesExceededError"
        assert len(state.history) == 3


# ── Parallel ───────────────────────────────────────────────────────────────────


class TestParallel:
    async def test_fork_and_join(self):
        definition = make_definition(
            [
                {"id": "start", "type": "start"},
                {"id": "fork", "type": "parallel"},
                {"id": "a", "type": "transform", "config": {"operations": [{"set": "a", "value": 1}]}},
                {"id": "b", "type": "transform", "config": {"operations": [{"set": "b", "value": 2}]}},
                {"id": "join", "type": "join", "config": {"strategy": "all"}},
                {"id": "end", "type": "end"},
            ],
            [
                {"source": "start", "target": "fork"},
                {"source": "fork", "target": "a"},
                {"source": "fork", "target": "b"},
                {"source": "a", "target": "join"},
                {"source": "b", "target": "join"},
                {"source": "join", "target": "end"},
            ],
        )

        state = await run_to_stop(WorkflowEngine(), definition)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.data["a"] == 1
        assert state.data["b"] == 2
        order = [e.node_id for e in state.history]
        assert order.count("join") == 1
        assert set(order[2:4]) == {"a", "b"}
        assert sorted(state.node_results["join"]["output"]["arrived"]) == ["a", "b"]

    async def test_branches_write_sibling_keys(self):
        definition = make_fork_flow(
            {"type": "transform", "config": {"operations": [{"set": "obj.x", "value": 1}]}},
            {"type": "transform", "config": {"operations": [{"set": "obj.y", "value": 2}]}},
        )

        state = await run_to_stop(WorkflowEngine(), definition, {"obj": {"keep": 0}})

        assert state.status == ExecutionStatus.COMPLETED
        assert state.data["obj"] == {"keep": 0, "x": 1, "y": 2}

    async def test_branches_write_memory_keys(self):
        definition = make_fork_flow(
            {"type": "memory", "config": {"operation": "write", "key": "x", "value": 1}},
            {"type": "memory", "config": {"operation": "write", "key": "y", "value": 2}},
        )

        state = await run_to_stop(WorkflowEngine(), definition)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.data["_memory"] == {"default": {"x": 1, "y": 2}}

    async def test_branch_delete_keeps_sibling_write(self):
        definition = make_fork_flow(
            {"type": "memory", "config": {"operation": "delete", "key": "old"}},
            {"type": "memory", "config": {"operation": "write", "key": "new", "value": 2}},
        )

        state = await run_to_stop(
            WorkflowEngine(), definition, {"_memory": {"default": {"old": 1}}}
        )

        assert state.status == ExecutionStatus.COMPLETED
        assert state.data["_memory"] == {"default": {"new": 2}}


# ── Human Checkpoints ──────────────────────────────────────────────────────────


class TestHumanCheckpoint:
    async def test_pause_and_resume_completes_once(self):
        engine = WorkflowEngine()
        queue = await engine.events.subscribe()

        state = await run_to_stop(engine, make_approval_flow(), {"query": "deploy"})
        assert state.status == ExecutionStatus.PAUSED
        checkpoint = state.pending_checkpoint
        assert checkpoint is not None
        assert checkpoint.id.startswith("ckpt-")
        assert checkpoint.message == "Approve deploy?"

        resumed = await engine.resume(state.execution_id, checkpoint.id, "approve")
        assert resumed.status == ExecutionStatus.RUNNING
        state = await engine.wait(state.execution_id, timeout=5)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.pending_checkpoint is None
        assert [e.node_id for e in state.history].count("done") == 1
        assert "rejected" not in state.completed_nodes()
        assert state.data["human_response_approve"]["response"] == "approve"

        types = [e.event_type for e in drain(queue)]
        for expected in (
            EventType.HUMAN_REQUIRED,
            EventType.PAUSED,
            EventType.HUMAN_RESPONDED,
            EventType.RESUMED,
            EventType.COMPLETE,
        ):
            assert expected in types

    async def test_second_resume_rejected(self):
        engine = WorkflowEngine()
        state = await run_to_stop(engine, make_approval_flow(), {"query": "x"})
        checkpoint_id = state.pending_checkpoint.id

        await engine.resume(state.execution_id, checkpoint_id, "approve")
        await engine.wait(state.execution_id, timeout=5)

        with pytest.raises(ResumeRejectedError):
            await engine.resume(state.execution_id, checkpoint_id, "approve")

    async def test_wrong_checkpoint_id_rejected(self):
        engine = WorkflowEngine()
        state = await run_to_stop(engine, make_approval_flow(), {"query": "x"})

        with pytest.raises(ResumeRejectedError):
            await engine.resume(state.execution_id, "ckpt-other", "approve")

    async def test_invalid_response_keeps_execution_paused(self):
        engine = WorkflowEngine()
        state = await run_to_stop(engine, make_approval_flow(), {"query": "x"})
        checkpoint_id = state.pending_checkpoint.id

        with pytest.raises(ResumeRejectedError):
            await engine.resume(state.execution_id, checkpoint_id, "maybe")

        paused = await engine.get_state(state.execution_id)
        assert paused.status == ExecutionStatus.PAUSED
        assert paused.pending_checkpoint.claimed is False

        await engine.resume(state.execution_id, checkpoint_id, "reject")
        state = await engine.wait(state.execution_id, timeout=5)
        assert state.status == ExecutionStatus.COMPLETED
        assert "rejected" in state.completed_nodes()

    async def test_resume_data_merged_into_state(self):
        engine = WorkflowEngine()
        state = await run_to_stop(engine, make_approval_flow(), {"query": "x"})

        await engine.resume(
            state.execution_id, state.pending_checkpoint.id, "approve", {"comment": "lgtm"}
        )
        state = await engine.wait(state.execution_id, timeout=5)

        assert state.data["comment"] == "lgtm"


# ── Cancellation ───────────────────────────────────────────────────────────────


class TestCancel:
    async def test_cancel_before_first_dispatch(self):
        engine = WorkflowEngine(backend=FakeBackend(tools={"search": lambda params: "ok"}))
        state = await engine.start(make_tool_flow(), {"query": "x"})

        cancelled = await engine.cancel(state.execution_id, "user")

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.cancel_reason == "user"
        assert cancelled.history == []

    async def test_cancel_in_flight_tool(self):
        entered = asyncio.Event()

        async def slow(params):
            entered.set()
            await asyncio.sleep(10)

        engine = WorkflowEngine(backend=FakeBackend(tools={"search": slow}))
        queue = await engine.events.subscribe()
        state = await engine.start(make_tool_flow(), {"query": "x"})
        await asyncio.wait_for(entered.wait(), timeout=2)

        cancelled = await engine.cancel(state.execution_id, "stop")

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.errors == []
        assert "tool" not in cancelled.completed_nodes()
        types = [e.event_type for e in drain(queue)]
        assert EventType.CANCELLED in types
        assert EventType.FAILED not in types

    async def test_cancel_terminal_is_noop(self):
        engine = WorkflowEngine()
        state = await run_to_stop(engine, make_branch_flow(), {"value": 1})

        again = await engine.cancel(state.execution_id)

        assert again.status == ExecutionStatus.COMPLETED

    async def test_cancel_paused_execution(self):
        engine = WorkflowEngine()
        state = await run_to_stop(engine, make_approval_flow(), {"query": "x"})

        cancelled = await engine.cancel(state.execution_id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        with pytest.raises(ResumeRejectedError):
            await engine.resume(state.execution_id, state.pending_checkpoint.id, "approve")

    async def test_cancel_during_checkpoint_write(self, tmp_path):
        store = SlowCheckpointStore(tmp_path, delay=0.3)
        engine = WorkflowEngine(
            state=StateManager(store),
            backend=FakeBackend(tools={"search": lambda params: "ok"}),
        )
        state = await engine.start(make_tool_flow(), {"query": "x"})
        assert await asyncio.to_thread(store.slow_write.wait, 2)

        cancelled = await engine.cancel(state.execution_id, "stop")
        await asyncio.sleep(0.5)

        assert cancelled.status == ExecutionStatus.CANCELLED
        latest = await store.load_latest(state.execution_id)
        assert latest.reason == "cancel"
        assert latest.state.status == ExecutionStatus.CANCELLED

        restarted = WorkflowEngine(state=StateManager(CheckpointStore(tmp_path)))
        assert (await restarted.get_state(state.execution_id)).status == ExecutionStatus.CANCELLED
        assert await restarted.recover_executions() == 0


# ── Error Policies ─────────────────────────────────────────────────────────────


class TestErrorPolicies:
    async def test_fail_policy_fails_execution(self):
        def broken(params):
            raise BackendError("boom", code="tool_error")

        engine = WorkflowEngine(backend=FakeBackend(tools={"search": broken}))
        queue = await engine.events.subscribe()

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"})

        assert state.status == ExecutionStatus.FAILED
        assert len(state.errors) == 1
        assert state.errors[0].kind == "NodeExecutionError"
        assert state.errors[0].node_id == "tool"
        assert state.history[-1].status == NodeStatus.FAILED
        types = [e.event_type for e in drain(queue)]
        assert EventType.NODE_ERROR in types
        assert EventType.FAILED in types

    async def test_retry_policy_recovers(self):
        calls = {"n": 0}

        def flaky(params):
            calls["n"] += 1
            if calls["n"] < 3:
                raise BackendError("transient", code="503")
            return "ok"

        engine = WorkflowEngine(backend=FakeBackend(tools={"search": flaky}))
        definition = make_tool_flow(
            {"retries": 2, "retry_delay_ms": 0, "error_handler": "retry"}
        )

        state = await run_to_stop(engine, definition, {"query": "x"})

        assert state.status == ExecutionStatus.COMPLETED
        assert calls["n"] == 3
        assert state.latest_entry("tool").attempts == 3

    async def test_retry_policy_exhausted(self):
        def broken(params):
            raise BackendError("down", code="503")

        backend = FakeBackend(tools={"search": broken})
        engine = WorkflowEngine(backend=backend)
        definition = make_tool_flow({"retries": 1, "retry_delay_ms": 0}, error_handling="retry")

        state = await run_to_stop(engine, definition, {"query": "x"})

        assert state.status == ExecutionStatus.FAILED
        assert len(backend.tool_calls) == 2

    async def test_fail_policy_does_not_retry(self):
        def broken(params):
            raise BackendError("down")

        backend = FakeBackend(tools={"search": broken})
        engine = WorkflowEngine(backend=backend)

        await run_to_stop(engine, make_tool_flow({"retries": 3}), {"query": "x"})

        assert len(backend.tool_calls) == 1

    async def test_continue_policy_completes(self):
        def broken(params):
            raise BackendError("boom", code="tool_error")

        engine = WorkflowEngine(backend=FakeBackend(tools={"search": broken}))

        state = await run_to_stop(
            engine, make_tool_flow(error_handling="continue"), {"query": "x"}
        )

        assert state.status == ExecutionStatus.COMPLETED
        entry = state.latest_entry("tool")
        assert entry.status == NodeStatus.COMPLETED
        assert entry.output["error_code"] == "tool_error"
        assert len(state.errors) == 1

    async def test_node_timeout(self):
        async def slow(params):
            await asyncio.sleep(2)

        engine = WorkflowEngine(backend=FakeBackend(tools={"search": slow}))

        state = await run_to_stop(engine, make_tool_flow({"timeout_ms": 50}), {"query": "x"})

        assert state.status == ExecutionStatus.FAILED
        assert state.errors[-1].kind == "NodeTimeoutError"

    async def test_max_execution_time(self):
        async def slow(params):
            await asyncio.sleep(5)

        engine = WorkflowEngine(backend=FakeBackend(tools={"search": slow}))

        state = await run_to_stop(
            engine, make_tool_flow(max_execution_time_ms=100), {"query": "x"}
        )

        assert state.status == ExecutionStatus.FAILED
        assert state.errors[-1].kind == "MaxExecutionTimeExceededError"

    async def test_missing_backend_fails_node(self):
        state = await run_to_stop(WorkflowEngine(), make_tool_flow(), {"query": "x"})

        assert state.status == ExecutionStatus.FAILED
        assert "No execution backend" in state.errors[-1].message


class TestLLMRecovery:
    def make_flow(self) -> WorkflowDefinition:
        return make_definition(
            [
                {"id": "start", "type": "start"},
                {"id": "tool", "type": "tool", "config": {"tool_id": "search"}},
                {
                    "id": "fallback",
                    "type": "transform",
                    "config": {"operations": [{"set": "recovered", "value": True}]},
                },
                {"id": "end", "type": "end"},
            ],
            [
                {"source": "start", "target": "tool"},
                {"source": "tool", "target": "end"},
                {"source": "tool", "target": "fallback", "condition": {"type": "never"}},
                {"source": "fallback", "target": "end"},
            ],
            error_handling="llm_recovery",
        )

    @staticmethod
    def broken(params):
        raise BackendError("boom")

    async def test_goto_routes_to_fallback(self):
        recovery = FixedRecovery(RecoveryDecision(RecoveryAction.GOTO, target="fallback"))
        engine = WorkflowEngine(
            backend=FakeBackend(tools={"search": self.broken}), recovery=recovery
        )

        state = await run_to_stop(engine, self.make_flow())

        assert state.status == ExecutionStatus.COMPLETED
        assert state.data["recovered"] is True
        assert state.latest_entry("tool").status == NodeStatus.FAILED
        assert state.errors[0].node_id == "tool"
        assert "end" in state.completed_nodes()

    async def test_skip_completes_node(self):
        recovery = FixedRecovery(RecoveryDecision(RecoveryAction.SKIP))
        engine = WorkflowEngine(
            backend=FakeBackend(tools={"search": self.broken}), recovery=recovery
        )

        state = await run_to_stop(engine, self.make_flow())

        assert state.status == ExecutionStatus.COMPLETED
        assert state.latest_entry("tool").status == NodeStatus.COMPLETED
        assert "fallback" not in state.completed_nodes()

    async def test_fail_decision_fails(self):
        recovery = FixedRecovery(RecoveryDecision(RecoveryAction.FAIL))
        engine = WorkflowEngine(
            backend=FakeBackend(tools={"search": self.broken}), recovery=recovery
        )

        state = await run_to_stop(engine, self.make_flow())

        assert state.status == ExecutionStatus.FAILED
        assert recovery.calls == 1

    async def test_backend_recovery_reply_parsed(self):
        backend = FakeBackend(
            tools={"search": self.broken},
            replies=['{"action": "goto", "target": "fallback", "reason": "tool down"}'],
        )
        engine = WorkflowEngine(backend=backend)

        state = await run_to_stop(engine, self.make_flow())

        assert state.status == ExecutionStatus.COMPLETED
        assert state.data["recovered"] is True
        assert len(backend.requests) == 1


# ── Events ─────────────────────────────────────────────────────────────────────


class TestObservability:
    async def test_minimal_level_only_lifecycle_events(self):
        engine = WorkflowEngine(backend=FakeBackend(tools={"search": lambda params: "ok"}))
        queue = await engine.events.subscribe()

        await run_to_stop(engine, make_tool_flow(observability="minimal"), {"query": "x"})

        types = [e.event_type for e in drain(queue)]
        assert types == [EventType.START, EventType.COMPLETE]

    async def test_standard_level_truncates_large_payloads(self):
        engine = WorkflowEngine(backend=FakeBackend(tools={"search": lambda params: "x" * 5000}))
        queue = await engine.events.subscribe()

        await run_to_stop(engine, make_tool_flow(), {"query": "x"})

        node_events = [
            e for e in drain(queue)
            if e.event_type == EventType.NODE_COMPLETE and e.node_id == "tool"
        ]
        assert node_events[0].data["output"]["_truncated"] is True

    async def test_full_level_emits_checkpoint_events(self, tmp_path):
        engine = WorkflowEngine(
            state=StateManager(CheckpointStore(tmp_path)),
            backend=FakeBackend(tools={"search": lambda params: "ok"}),
        )
        queue = await engine.events.subscribe()

        await run_to_stop(engine, make_tool_flow(observability="full"), {"query": "x"})

        types = [e.event_type for e in drain(queue)]
        assert EventType.CHECKPOINT_SAVED in types

    async def test_per_execution_subscription(self):
        engine = WorkflowEngine(backend=FakeBackend(tools={"search": lambda params: "ok"}))
        state = await engine.start(make_tool_flow(), {"query": "x"}, execution_id="exec-a")
        queue = await engine.events.subscribe("exec-a")
        await engine.wait(state.execution_id, timeout=5)

        events = drain(queue)
        assert events
        assert all(e.execution_id == "exec-a" for e in events)
        assert events[-1].event_type == EventType.COMPLETE


# ── Persistence & Recovery ─────────────────────────────────────────────────────


class TestRecovery:
    async def test_checkpoints_written(self, tmp_path):
        engine = WorkflowEngine(
            state=StateManager(CheckpointStore(tmp_path)),
            backend=FakeBackend(tools={"search": lambda params: "ok"}),
        )

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"})

        assert (tmp_path / state.execution_id / "latest.json").is_file()
        assert state.checkpoints

    async def test_recover_after_crash_resumes_from_prefix(self, tmp_path):
        entered = asyncio.Event()

        async def hang(params):
            entered.set()
            await asyncio.sleep(30)

        first = WorkflowEngine(
            state=StateManager(CheckpointStore(tmp_path)),
            backend=FakeBackend(tools={"search": hang}),
        )
        state = await first.start(make_tool_flow(), {"query": "x"})
        await asyncio.wait_for(entered.wait(), timeout=2)
        await first.shutdown()

        backend = FakeBackend(tools={"search": lambda params: "ok"})
        second = WorkflowEngine(state=StateManager(CheckpointStore(tmp_path)), backend=backend)
        recovered = await second.state.recover(state.execution_id)
        assert [e.node_id for e in recovered.history] == ["start"]
        assert recovered.status == ExecutionStatus.RUNNING

        assert await second.recover_executions() == 1
        final = await second.wait(state.execution_id, timeout=5)

        assert final.status == ExecutionStatus.COMPLETED
        assert [e.node_id for e in final.history] == ["start", "tool", "end"]
        assert len(backend.tool_calls) == 1

    async def test_paused_execution_resumable_after_restart(self, tmp_path):
        first = WorkflowEngine(state=StateManager(CheckpointStore(tmp_path)))
        state = await run_to_stop(first, make_approval_flow(), {"query": "x"})
        checkpoint_id = state.pending_checkpoint.id
        await first.shutdown()

        second = WorkflowEngine(state=StateManager(CheckpointStore(tmp_path)))
        assert await second.recover_executions() == 0

        await second.resume(state.execution_id, checkpoint_id, "approve")
        final = await second.wait(state.execution_id, timeout=5)
        assert final.status == ExecutionStatus.COMPLETED

    async def test_persistence_none_writes_nothing(self, tmp_path):
        engine = WorkflowEngine(
            state=StateManager(CheckpointStore(tmp_path)),
            backend=FakeBackend(tools={"search": lambda params: "ok"}),
        )

        state = await run_to_stop(engine, make_tool_flow(persistence="none"), {"query": "x"})

        assert state.status == ExecutionStatus.COMPLETED
        assert not (tmp_path / state.execution_id).exists()

    async def test_checkpoint_write_failure_fails_execution(self, tmp_path):
        store = FailingCheckpointStore(tmp_path)
        engine = WorkflowEngine(
            state=StateManager(store, checkpoint_retries=1, checkpoint_backoff_s=0),
            backend=FakeBackend(tools={"search": lambda params: "ok"}),
        )
        queue = await engine.events.subscribe()

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"})

        assert state.status == ExecutionStatus.FAILED
        assert [e.kind for e in state.errors] == ["CheckpointPersistError"]
        assert [e.node_id for e in state.history] == ["start"]
        latest = await store.load_latest(state.execution_id)
        assert latest.state.status == ExecutionStatus.FAILED
        failed = [e for e in drain(queue) if e.event_type == EventType.FAILED]
        assert failed[0].data["kind"] == "CheckpointPersistError"

    async def test_resume_with_corrupt_snapshot_releases_claim(self, tmp_path):
        store = CheckpointStore(tmp_path)
        first = WorkflowEngine(state=StateManager(store))
        state = await run_to_stop(first, make_approval_flow(), {"query": "x"})
        checkpoint_id = state.pending_checkpoint.id
        await first.shutdown()

        latest = await store.load_latest(state.execution_id)
        latest.state.definition_snapshot = "{}"
        await store.save(latest)

        second = WorkflowEngine(state=StateManager(CheckpointStore(tmp_path)))
        with pytest.raises(ResumeRejectedError):
            await second.resume(state.execution_id, checkpoint_id, "approve")

        after = await second.get_state(state.execution_id)
        assert after.status == ExecutionStatus.PAUSED
        assert after.pending_checkpoint.claimed is False


# ── Registry Integration ───────────────────────────────────────────────────────


class TestRegistryIntegration:
    async def test_registry_tracks_status(self, registry):
        engine = WorkflowEngine(
            registry=registry, backend=FakeBackend(tools={"search": lambda params: "ok"})
        )

        state = await run_to_stop(engine, make_tool_flow(), {"query": "x"}, owner_id="alice")

        entry = registry.get(state.execution_id)
        assert entry.status == ExecutionStatus.COMPLETED
        assert entry.owner_id == "alice"
        assert engine.list_executions(owner_id="alice").total == 1
        assert engine.list_executions(owner_id="bob").total == 0

    async def test_registry_records_pending_checkpoint(self, registry):
        engine = WorkflowEngine(registry=registry)

        state = await run_to_stop(engine, make_approval_flow(), {"query": "x"})

        pending = registry.get_pending_checkpoints()
        assert [e.execution_id for e in pending] == [state.execution_id]
        assert pending[0].pending_checkpoint_id == state.pending_checkpoint.id

    async def test_list_without_registry_raises(self):
        with pytest.raises(RuntimeError):
            WorkflowEngine().list_executions()

    async def test_from_settings_builds_durable_engine(self, tmp_path):
        settings = EngineSettings(
            checkpoint_dir=str(tmp_path / "checkpoints"),
            registry_db=str(tmp_path / "data" / "registry.db"),
        )
        engine = await WorkflowEngine.from_settings(
            settings, backend=FakeBackend(tools={"search": lambda params: "ok"})
        )
        try:
            state = await run_to_stop(engine, make_tool_flow(), {"query": "x"})
            assert state.status == ExecutionStatus.COMPLETED
            assert engine.registry.get(state.execution_id).status == ExecutionStatus.COMPLETED
        finally:
            await engine.shutdown()

        assert (tmp_path / "data" / "registry.db").is_file()
        assert (tmp_path / "checkpoints" / state.execution_id / "latest.json").is_file()
