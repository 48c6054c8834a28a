"""Tests for the agentflow command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from agentflow.__main__ import main


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("AGENTFLOW_CHECKPOINT_DIR", "AGENTFLOW_REGISTRY_DB", "AGENTFLOW_BACKEND_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "agentflow.yaml"
    path.write_text(
        yaml.dump(
            {
                "checkpoint_dir": str(tmp_path / "checkpoints"),
                "registry_db": str(tmp_path / "registry.db"),
            }
        )
    )
    return path


@pytest.fixture
def flow_file(tmp_path: Path) -> Path:
    path = tmp_path / "greet.yaml"
    path.write_text(
        yaml.dump(
            {
                "id": "greet",
                "name": "Greet",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {
                        "id": "shape",
                        "type": "transform",
                        "config": {
                            "operations": [{"set": "greeting", "value": "hello"}]
                        },
                    },
                    {"id": "end", "type": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "shape"},
                    {"source": "shape", "target": "end"},
                ],
            }
        )
    )
    return path


# ── Tests ──────────────────────────────────────────────────────────────────────


class TestValidate:
    def test_valid_file(self, flow_file: Path, capsys):
        assert main(["validate", str(flow_file)]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report[str(flow_file)]["valid"] is True
        assert report[str(flow_file)]["start_node"] == "start"
        assert report[str(flow_file)]["end_nodes"] == ["end"]

    def test_invalid_file(self, tmp_path: Path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(
            yaml.dump(
                {
                    "id": "bad",
                    "name": "Bad",
                    "nodes": [
                        {"id": "start", "type": "start"},
                        {"id": "call", "type": "tool"},
                        {"id": "end", "type": "end"},
                    ],
                    "edges": [
                        {"source": "start", "target": "call"},
                        {"source": "call", "target": "end"},
                    ],
                }
            )
        )
        assert main(["validate", str(path)]) == 1
        report = json.loads(capsys.readouterr().out)
        assert report[str(path)]["valid"] is False
        assert any(e.startswith("Node 'call' config") for e in report[str(path)]["errors"])


class TestRun:
    def test_run_to_completion(self, flow_file: Path, settings_file: Path, capsys):
        code = main(
            ["--settings", str(settings_file), "run", str(flow_file), "--input", '{"name": "Ada"}']
        )
        assert code == 0
        state = json.loads(capsys.readouterr().out)
        assert state["status"] == "completed"
        assert state["data"]["greeting"] == "hello"
        assert "definition_snapshot" not in state

    def test_run_then_list(self, flow_file: Path, settings_file: Path, capsys):
        main(["--settings", str(settings_file), "run", str(flow_file)])
        capsys.readouterr()

        assert main(["--settings", str(settings_file), "list", "--status", "completed"]) == 0
        page = json.loads(capsys.readouterr().out)
        assert page["total"] == 1
        assert page["items"][0]["workflow_id"] == "greet"

    def test_bad_input_json(self, flow_file: Path, settings_file: Path):
        with pytest.raises(SystemExit) as excinfo:
            main(["--settings", str(settings_file), "run", str(flow_file), "--input", "[1]"])
        assert excinfo.value.code == 2

    def test_status_unknown_execution(self, settings_file: Path, capsys):
        assert main(["--settings", str(settings_file), "status", "exec-missing"]) == 1
        assert "ExecutionNotFoundError" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out
