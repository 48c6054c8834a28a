"""agentflow CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from agentflow.config import EngineSettings, load_settings, load_workflow_definition
from agentflow.engine import WorkflowEngine
from agentflow.errors import WorkflowError
from agentflow.models import ExecutionState, ExecutionStatus


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _state_payload(state: ExecutionState) -> dict[str, Any]:
    return state.model_dump(mode="json", exclude={"definition_snapshot"})


def _parse_json_arg(value: str | None, name: str) -> dict[str, Any]:
    if not value:
        return {}
    if value.startswith("@"):
        value = Path(value[1:]).read_text(encoding="utf-8")
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        print(f"Error: {name} is not valid JSON: {exc}", file=sys.stderr)
        sys.exit(2)
    if not isinstance(parsed, dict):
        print(f"Error: {name} must be a JSON object", file=sys.stderr)
        sys.exit(2)
    return parsed


# ── Commands ─────────────────────────────────────────────────────────────────


def _validate(args: argparse.Namespace) -> int:
    engine = WorkflowEngine()
    results: dict[str, Any] = {}
    failed = False
    for path in args.files:
        try:
            definition = load_workflow_definition(path)
            analysis = engine.validate(definition)
        except WorkflowError as exc:
            failed = True
            results[str(path)] = {"valid": False, "errors": getattr(exc, "errors", [exc.message])}
            continue
        results[str(path)] = {
            "valid": True,
            "workflow_id": definition.id,
            "start_node": analysis.start_node,
            "end_nodes": analysis.end_nodes,
            "cycle_nodes": analysis.cycle_nodes,
        }
    _print_json(results)
    return 1 if failed else 0


async def _run(args: argparse.Namespace, settings: EngineSettings) -> int:
    definition = load_workflow_definition(args.file)
    input_data = _parse_json_arg(args.input, "--input")
    engine = await WorkflowEngine.from_settings(settings)
    try:
        state = await engine.start(definition, input_data, owner_id=args.owner)
        state = await engine.wait(state.execution_id, timeout=args.timeout)
        _print_json(_state_payload(state))
        return 1 if state.status == ExecutionStatus.FAILED else 0
    finally:
        await engine.shutdown()


async def _resume(args: argparse.Namespace, settings: EngineSettings) -> int:
    data = _parse_json_arg(args.data, "--data") or None
    engine = await WorkflowEngine.from_settings(settings)
    try:
        state = await engine.resume(args.execution_id, args.checkpoint_id, args.response, data)
        state = await engine.wait(state.execution_id, timeout=args.timeout)
        _print_json(_state_payload(state))
        return 1 if state.status == ExecutionStatus.FAILED else 0
    finally:
        await engine.shutdown()


async def _status(args: argparse.Namespace, settings: EngineSettings) -> int:
    engine = await WorkflowEngine.from_settings(settings)
    try:
        state = await engine.get_state(args.execution_id)
        _print_json(_state_payload(state))
        return 0
    finally:
        await engine.shutdown()


async def _list(args: argparse.Namespace, settings: EngineSettings) -> int:
    engine = await WorkflowEngine.from_settings(settings)
    try:
        page = engine.list_executions(
            owner_id=args.owner,
            status=ExecutionStatus(args.status) if args.status else None,
            search=args.search,
            offset=args.offset,
            limit=args.limit,
        )
        _print_json(page.model_dump(mode="json"))
        return 0
    finally:
        await engine.shutdown()


async def _cancel(args: argparse.Namespace, settings: EngineSettings) -> int:
    engine = await WorkflowEngine.from_settings(settings)
    try:
        state = await engine.cancel(args.execution_id, args.reason)
        _print_json(_state_payload(state))
        return 0
    finally:
        await engine.shutdown()


_ASYNC_COMMANDS = {
    "run": _run,
    "resume": _resume,
    "status": _status,
    "list": _list,
    "cancel": _cancel,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentflow",
        description="agentflow: run declarative multi-agent workflows",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=Path("agentflow.yaml"),
        help="Engine settings file (default: ./agentflow.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from settings, INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # agentflow validate
    validate_parser = subparsers.add_parser("validate", help="Validate workflow definition files")
    validate_parser.add_argument("files", nargs="+", type=Path, help="YAML or JSON definitions")

    # agentflow run
    run_parser = subparsers.add_parser("run", help="Start a workflow and wait for it")
    run_parser.add_argument("file", type=Path, help="Workflow definition file")
    run_parser.add_argument(
        "--input", help="Input as a JSON object, or @path to a JSON file"
    )
    run_parser.add_argument("--owner", default="anonymous", help="Owner id (default: anonymous)")
    run_parser.add_argument(
        "--timeout", type=float, default=None, help="Seconds to wait before returning"
    )

    # agentflow resume
    resume_parser = subparsers.add_parser("resume", help="Answer a pending human checkpoint")
    resume_parser.add_argument("execution_id")
    resume_parser.add_argument("checkpoint_id")
    resume_parser.add_argument("response", help="Selected option value")
    resume_parser.add_argument("--data", help="Extra input as a JSON object, or @path")
    resume_parser.add_argument(
        "--timeout", type=float, default=None, help="Seconds to wait before returning"
    )

    # agentflow status
    status_parser = subparsers.add_parser("status", help="Show an execution's state")
    status_parser.add_argument("execution_id")

    # agentflow list
    list_parser = subparsers.add_parser("list", help="List executions")
    list_parser.add_argument("--owner", default=None)
    list_parser.add_argument(
        "--status", default=None, choices=[s.value for s in ExecutionStatus]
    )
    list_parser.add_argument("--search", default=None, help="Match execution id or workflow name")
    list_parser.add_argument("--offset", type=int, default=0)
    list_parser.add_argument("--limit", type=int, default=50)

    # agentflow cancel
    cancel_parser = subparsers.add_parser("cancel", help="Cancel an execution")
    cancel_parser.add_argument("execution_id")
    cancel_parser.add_argument("--reason", default="cancelled from CLI")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    settings = load_settings(args.settings if args.settings.exists() else None)
    level = args.log_level or settings.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    try:
        if args.command == "validate":
            return _validate(args)
        return asyncio.run(_ASYNC_COMMANDS[args.command](args, settings))
    except WorkflowError as exc:
        print(f"Error ({exc.kind}): {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
