"""Configuration loading for agentflow.

Two kinds of files are read here:

* engine settings (``agentflow.yaml``): where checkpoints and the registry
  live, default node limits, the execution backend endpoint
* workflow definitions (YAML or JSON), one definition per file
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from agentflow.errors import DefinitionValidationError
from agentflow.models import WorkflowDefinition

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


# ── Settings Models ──────────────────────────────────────────────────────────


class BackendSettings(BaseModel):
    """Endpoint of the OpenAI-compatible execution backend."""

    base_url: str | None = None
    api_key_env: str = "AGENTFLOW_API_KEY"
    model: str | None = None
    timeout_s: float = 60.0


class EngineSettings(BaseModel):
    """Process-wide engine settings (matches agentflow.yaml)."""

    checkpoint_dir: str = ".agentflow/checkpoints"
    registry_db: str = ".agentflow/registry.db"

    default_node_timeout_ms: int = Field(300_000, ge=1)
    default_retries: int = Field(2, ge=0)
    default_max_iterations: int = Field(10, ge=1)

    checkpoint_retries: int = Field(3, ge=0)
    checkpoint_backoff_s: float = Field(0.1, ge=0)
    checkpoint_retention: int = Field(10, ge=1)
    max_state_bytes: int = Field(50 * 1024 * 1024, ge=1024)

    llm_timeout_s: float = Field(30.0, gt=0)
    cancel_grace_s: float = Field(5.0, ge=0)
    event_queue_size: int = Field(1000, ge=1)
    log_level: str = "INFO"

    backend: BackendSettings = Field(default_factory=BackendSettings)


# ── Loaders ──────────────────────────────────────────────────────────────────


def load_settings(path: Path | str | None = None) -> EngineSettings:
    """Load engine settings from a YAML file, then apply env overrides.

    A missing ``path`` (or ``None``) yields the defaults.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        settings_path = Path(path)
        if settings_path.exists():
            with open(settings_path) as f:
                raw = yaml.safe_load(f) or {}
        else:
            logger.warning("Settings file %s not found, using defaults", settings_path)

    settings = EngineSettings(**raw)

    # Environment variable overrides for deployment
    checkpoint_dir = os.environ.get("AGENTFLOW_CHECKPOINT_DIR")
    if checkpoint_dir:
        settings.checkpoint_dir = checkpoint_dir

    registry_db = os.environ.get("AGENTFLOW_REGISTRY_DB")
    if registry_db:
        settings.registry_db = registry_db

    backend_url = os.environ.get("AGENTFLOW_BACKEND_URL")
    if backend_url:
        settings.backend.base_url = backend_url

    log_level = os.environ.get("AGENTFLOW_LOG_LEVEL")
    if log_level:
        settings.log_level = log_level.upper()

    logger.debug(
        "Loaded engine settings: checkpoints=%s, registry=%s",
        settings.checkpoint_dir,
        settings.registry_db,
    )
    return settings


def parse_workflow_definition(raw: Any, source: str = "<input>") -> WorkflowDefinition:
    """Validate a parsed mapping as a workflow definition.

    Raises:
        DefinitionValidationError: With one message per pydantic error.
    """
    if not isinstance(raw, dict):
        raise DefinitionValidationError(f"{source}: workflow definition must be a mapping")
    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionValidationError(
            [
                f"{source}: {'.'.join(str(p) for p in err['loc']) or 'definition'} {err['msg']}"
                for err in exc.errors()
            ]
        ) from exc


def load_workflow_definition(path: Path | str) -> WorkflowDefinition:
    """Load one workflow definition from a YAML or JSON file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise DefinitionValidationError(f"{path}: cannot parse file: {exc}") from exc
    return parse_workflow_definition(raw, str(path))


def load_workflow_definitions(directory: Path | str) -> dict[str, WorkflowDefinition]:
    """Load every definition in ``directory``, keyed by workflow id.

    Files that fail to parse are logged and skipped.
    """
    directory = Path(directory)
    definitions: dict[str, WorkflowDefinition] = {}

    if not directory.exists():
        logger.warning("No workflows directory found at %s", directory)
        return definitions

    for path in sorted(directory.iterdir()):
        if path.suffix not in DEFINITION_SUFFIXES:
            continue
        try:
            definition = load_workflow_definition(path)
        except DefinitionValidationError as exc:
            logger.error("Skipping invalid workflow file %s: %s", path.name, exc.message)
            continue
        if definition.id in definitions:
            logger.warning("Duplicate workflow id '%s' in %s, keeping first", definition.id, path)
            continue
        definitions[definition.id] = definition

    logger.info("Loaded %d workflow definitions from %s", len(definitions), directory)
    return definitions
