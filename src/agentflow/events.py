"""Workflow lifecycle events: a typed, in-process event channel.

Provides:
- EventType enum with the fixed set of event variants
- WorkflowEvent model for structured event data
- EventChannel, a non-blocking broadcast to bounded subscriber queues

The engine publishes whether or not anybody listens; a slow subscriber whose
queue fills up is dropped instead of stalling the run loop.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Payloads larger than this (serialized) are replaced by a preview
MAX_PAYLOAD_CHARS = 1024


# ── Event Types ──────────────────────────────────────────────────────────────


class EventType(str, enum.Enum):
    """Types of workflow events."""

    # Execution lifecycle
    START = "workflow.start"
    PAUSED = "workflow.paused"
    RESUMED = "workflow.resumed"
    COMPLETE = "workflow.complete"
    FAILED = "workflow.failed"
    CANCELLED = "workflow.cancelled"

    # Node lifecycle
    NODE_START = "workflow.node.start"
    NODE_COMPLETE = "workflow.node.complete"
    NODE_ERROR = "workflow.node.error"

    # Human in the loop
    HUMAN_REQUIRED = "workflow.human.required"
    HUMAN_RESPONDED = "workflow.human.responded"

    # Persistence
    CHECKPOINT_SAVED = "workflow.checkpoint.saved"


LIFECYCLE_EVENTS = frozenset(
    {
        EventType.START,
        EventType.PAUSED,
        EventType.RESUMED,
        EventType.COMPLETE,
        EventType.FAILED,
        EventType.CANCELLED,
        EventType.HUMAN_REQUIRED,
        EventType.HUMAN_RESPONDED,
    }
)


# ── Event Model ──────────────────────────────────────────────────────────────


class WorkflowEvent(BaseModel):
    """A single event emitted by the engine."""

    event_type: EventType
    execution_id: str
    workflow_id: str | None = None
    node_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)

    def to_sse_data(self) -> str:
        """Format for Server-Sent Events."""
        payload: dict[str, Any] = {
            "event": self.event_type.value,
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.workflow_id:
            payload["workflow_id"] = self.workflow_id
        if self.node_id:
            payload["node_id"] = self.node_id
        if self.data:
            payload.update(self.data)
        return json.dumps(payload, default=str)


def sanitize_payload(value: Any, limit: int = MAX_PAYLOAD_CHARS) -> Any:
    """Replace values whose JSON form exceeds ``limit`` chars with a preview."""
    if value is None:
        return None
    try:
        encoded = json.dumps(value, default=str)
    except (TypeError, ValueError):
        return {"_type": type(value).__name__, "_unserializable": True}
    if len(encoded) <= limit:
        return value
    return {
        "_truncated": True,
        "_type": type(value).__name__,
        "_size": len(encoded),
        "_preview": encoded[:200] + "...",
    }


# ── Event Channel ────────────────────────────────────────────────────────────


class EventChannel:
    """Broadcast channel for workflow events.

    Usage::

        channel = EventChannel()
        queue = await channel.subscribe(execution_id)
        event = await queue.get()
    """

    def __init__(self, queue_size: int = 1000):
        self._queue_size = queue_size
        # Per-execution subscribers
        self._subscribers: dict[str, list[asyncio.Queue[WorkflowEvent]]] = {}
        # Subscribers to every execution
        self._global_subscribers: list[asyncio.Queue[WorkflowEvent]] = []
        self._published = 0

    @property
    def published_count(self) -> int:
        return self._published

    def publish(self, event: WorkflowEvent) -> None:
        """Deliver an event to all matching subscribers without blocking."""
        self._published += 1
        logger.debug(
            "Event %s (execution %s, node %s)",
            event.event_type.value,
            event.execution_id,
            event.node_id,
        )

        queues = self._subscribers.get(event.execution_id)
        if queues:
            self._deliver(event, queues)
        if self._global_subscribers:
            self._deliver(event, self._global_subscribers)

    def _deliver(self, event: WorkflowEvent, queues: list[asyncio.Queue[WorkflowEvent]]) -> None:
        dead_queues = []
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead_queues.append(queue)
        # Remove full queues (consumer gone or too slow)
        for q in dead_queues:
            queues.remove(q)
            logger.warning("Dropped slow event subscriber (execution %s)", event.execution_id)

    # ── Subscription ─────────────────────────────────────────────────────────

    async def subscribe(self, execution_id: str | None = None) -> asyncio.Queue[WorkflowEvent]:
        """Subscribe to events for one execution (or all executions if None)."""
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue(maxsize=self._queue_size)
        if execution_id:
            self._subscribers.setdefault(execution_id, []).append(queue)
        else:
            self._global_subscribers.append(queue)
        return queue

    async def unsubscribe(
        self, queue: asyncio.Queue[WorkflowEvent], execution_id: str | None = None
    ) -> None:
        """Unsubscribe from events."""
        if execution_id and execution_id in self._subscribers:
            if queue in self._subscribers[execution_id]:
                self._subscribers[execution_id].remove(queue)
            if not self._subscribers[execution_id]:
                del self._subscribers[execution_id]
        elif queue in self._global_subscribers:
            self._global_subscribers.remove(queue)

    def subscriber_count(self, execution_id: str | None = None) -> int:
        if execution_id:
            return len(self._subscribers.get(execution_id, []))
        return len(self._global_subscribers) + sum(len(q) for q in self._subscribers.values())


# ── Helper Functions ─────────────────────────────────────────────────────────


def create_event(
    event_type: EventType,
    execution_id: str,
    *,
    workflow_id: str | None = None,
    node_id: str | None = None,
    **data: Any,
) -> WorkflowEvent:
    """Create a workflow event with arbitrary payload fields."""
    return WorkflowEvent(
        event_type=event_type,
        execution_id=execution_id,
        workflow_id=workflow_id,
        node_id=node_id,
        data=data,
    )
