"""Execution backend: the LLM/tool collaborator behind agent and tool nodes.

The core only depends on the Protocols defined here:

    ExecutionBackend: ``complete`` (chat completion) and ``call_tool``
    ConditionEvaluator: decides ``llm`` edge conditions
    RecoveryStrategy: proposes what to do after a node failure under the
        ``llm_recovery`` policy

``HttpExecutionBackend`` talks to an OpenAI-compatible ``/chat/completions``
endpoint plus a tool invocation endpoint via httpx. ``LLMConditionEvaluator``
and ``LLMRecoveryStrategy`` work on top of any backend.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from agentflow.errors import BackendError

if TYPE_CHECKING:
    from agentflow.models import ExecutionState, NodeDefinition, WorkflowDefinition

logger = logging.getLogger(__name__)


# ── Request / Response ───────────────────────────────────────────────────────


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionRequest:
    messages: list[dict[str, Any]]
    model: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResponse:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


# ── Protocols ────────────────────────────────────────────────────────────────


@runtime_checkable
class ExecutionBackend(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one chat completion."""
        ...

    async def call_tool(
        self, tool_id: str, params: dict[str, Any], context: dict[str, Any]
    ) -> Any:
        """Invoke a tool and return its result."""
        ...


class ConditionEvaluator(Protocol):
    async def evaluate(self, prompt: str, state: ExecutionState) -> bool:
        """Decide an ``llm`` edge condition."""
        ...


class RecoveryAction(str, Enum):
    RETRY = "retry"
    GOTO = "goto"
    SKIP = "skip"
    FAIL = "fail"


@dataclass
class RecoveryDecision:
    action: RecoveryAction
    target: str | None = None
    reason: str = ""


class RecoveryStrategy(Protocol):
    async def propose(
        self,
        node: NodeDefinition,
        error: str,
        state: ExecutionState,
        definition: WorkflowDefinition,
    ) -> RecoveryDecision:
        """Propose the next step after ``node`` failed with ``error``."""
        ...


# ── HTTP Backend ─────────────────────────────────────────────────────────────


class HttpExecutionBackend:
    """OpenAI-compatible completion backend with a tool invocation endpoint.

    Usage::

        backend = HttpExecutionBackend(base_url="http://localhost:8080/v1")
        await backend.start()
        ...
        await backend.close()
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float = 60.0,
        tool_path: str = "/tools/{tool_id}/invoke",
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_s = timeout_s
        self.tool_path = tool_path
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        headers = {"User-Agent": "agentflow/0.1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout_s
        )
        logger.info("Execution backend client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Execution backend client not started")
        return self._client

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.model
        if not model:
            raise BackendError("No model configured for completion request", code="no_model")

        body: dict[str, Any] = {
            "model": model,
            "messages": request.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = request.tools

        data = await self._post("/chat/completions", body)
        try:
            choice = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise BackendError("Malformed completion response", code="bad_response") from exc

        tool_calls = []
        for raw in choice.get("tool_calls") or []:
            function = raw.get("function", {})
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                logger.warning("Unparseable arguments for tool call %s", function.get("name"))
                arguments = {}
            tool_calls.append(
                ToolCall(id=raw.get("id", ""), name=function.get("name", ""), arguments=arguments)
            )

        return CompletionResponse(
            content=choice.get("content") or "",
            tool_calls=tool_calls,
            model=data.get("model", model),
            usage=data.get("usage") or {},
        )

    async def call_tool(
        self, tool_id: str, params: dict[str, Any], context: dict[str, Any]
    ) -> Any:
        data = await self._post(
            self.tool_path.format(tool_id=tool_id),
            {"parameters": params, "context": context},
        )
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            resp = await self.client.post(path, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"Backend returned {exc.response.status_code} for {path}: {exc.response.text[:200]}",
                code=str(exc.response.status_code),
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Backend request to {path} failed: {exc}", code="transport") from exc
        return resp.json()


def backend_from_settings(settings: Any) -> HttpExecutionBackend | None:
    """Build the HTTP backend from ``EngineSettings.backend`` (None if unset)."""
    cfg = settings.backend
    if not cfg.base_url:
        return None
    api_key = os.environ.get(cfg.api_key_env) if cfg.api_key_env else None
    return HttpExecutionBackend(
        base_url=cfg.base_url, api_key=api_key, model=cfg.model, timeout_s=cfg.timeout_s
    )


# ── LLM strategies ───────────────────────────────────────────────────────────

_CONDITION_SYSTEM = (
    "You decide whether a workflow edge should be followed. "
    "Answer with a single word: true or false."
)

_RECOVERY_SYSTEM = (
    "A workflow node failed. Decide how the workflow should proceed. "
    'Reply with JSON only: {"action": "retry|goto|skip|fail", "target": "<node id or null>", '
    '"reason": "<short explanation>"}'
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _state_summary(state: ExecutionState, limit: int = 4000) -> str:
    text = json.dumps(state.data, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


class LLMConditionEvaluator:
    """Evaluates ``llm`` edge conditions with a yes/no completion."""

    def __init__(self, backend: ExecutionBackend, model: str | None = None):
        self.backend = backend
        self.model = model

    async def evaluate(self, prompt: str, state: ExecutionState) -> bool:
        response = await self.backend.complete(
            CompletionRequest(
                model=self.model,
                temperature=0.0,
                max_tokens=5,
                messages=[
                    {"role": "system", "content": _CONDITION_SYSTEM},
                    {
                        "role": "user",
                        "content": f"Condition: {prompt}\n\nWorkflow data: {_state_summary(state)}",
                    },
                ],
            )
        )
        answer = response.content.strip().lower()
        return answer.startswith(("true", "yes"))


class LLMRecoveryStrategy:
    """Asks the backend how to recover from a node failure."""

    def __init__(self, backend: ExecutionBackend, model: str | None = None):
        self.backend = backend
        self.model = model

    async def propose(
        self,
        node: NodeDefinition,
        error: str,
        state: ExecutionState,
        definition: WorkflowDefinition,
    ) -> RecoveryDecision:
        node_list = ", ".join(f"{n.id} ({n.type.value})" for n in definition.nodes)
        response = await self.backend.complete(
            CompletionRequest(
                model=self.model,
                temperature=0.0,
                messages=[
                    {"role": "system", "content": _RECOVERY_SYSTEM},
                    {
                        "role": "user",
                        "content": (
                            f"Failed node: {node.id} ({node.type.value})\n"
                            f"Error: {error}\n"
                            f"Available nodes: {node_list}\n"
                            f"Workflow data: {_state_summary(state)}"
                        ),
                    },
                ],
            )
        )
        return parse_recovery_decision(response.content, definition)


def parse_recovery_decision(content: str, definition: WorkflowDefinition) -> RecoveryDecision:
    """Parse a JSON recovery proposal; anything unusable means ``fail``."""
    match = _JSON_OBJECT.search(content or "")
    if not match:
        return RecoveryDecision(RecoveryAction.FAIL, reason="No recovery proposal returned")
    try:
        raw = json.loads(match.group(0))
        action = RecoveryAction(str(raw.get("action", "")).lower())
    except (json.JSONDecodeError, ValueError, AttributeError):
        return RecoveryDecision(RecoveryAction.FAIL, reason="Unparseable recovery proposal")

    target = raw.get("target") or None
    if action == RecoveryAction.GOTO and (not target or definition.get_node(target) is None):
        return RecoveryDecision(
            RecoveryAction.FAIL, reason=f"Recovery proposed unknown node '{target}'"
        )
    return RecoveryDecision(action, target=target, reason=str(raw.get("reason", "")))
