from __future__ import annotations

import json
from pathlib import Path

import pytest

from icn.node.cli import main

from conftest import MISSING_DESCRIPTION, VALID_PROPOSAL


@pytest.fixture
def node_home(tmp_path: Path) -> Path:
    return tmp_path / "icn"


@pytest.fixture
def config_file(tmp_path: Path, node_home: Path) -> Path:
    interpreter = tmp_path / "covm.sh"
    interpreter.write_text(
        '#!/bin/sh\n'
        'case "$*" in *--simulate*) exit 0;; esac\n'
        'echo "tally: 3 yes"\n'
        'echo "vertex_id: cli-v1"\n',
        encoding="utf-8",
    )
    interpreter.chmod(0o755)

    path = tmp_path / "node.yaml"
    path.write_text(
        f"storage:\n  state_dir: {node_home}\n"
        f"engine:\n  command: {interpreter}\n"
        "api:\n  enabled: false\n"
        "federation:\n  sign_vertices: false\n",
        encoding="utf-8",
    )
    return path


def _queue(node_home: Path, name: str, content: str = VALID_PROPOSAL) -> Path:
    queue = node_home / "queue"
    queue.mkdir(parents=True, exist_ok=True)
    path = queue / name
    path.write_text(content, encoding="utf-8")
    return path


# =============================================================================
# Read commands
# =============================================================================

class TestReadCommands:
    def test_dag_info_empty(self, config_file: Path, capsys):
        assert main(["--config", str(config_file), "dag-info"]) == 0
        out = capsys.readouterr().out
        assert "Vertex Count: 0" in out
        assert "No tips found" in out

    def test_dag_log_empty(self, config_file: Path, capsys):
        assert main(["--config", str(config_file), "dag-log"]) == 0
        assert "No DAG logs found" in capsys.readouterr().out

    def test_config_from_environment(self, config_file: Path, monkeypatch, capsys):
        monkeypatch.setenv("ICN_CONFIG_PATH", str(config_file))
        assert main(["dag-info", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["dag_info"]["vertex_count"] == 0

    def test_health_without_peers(self, config_file: Path, capsys):
        assert main(["--config", str(config_file), "health", "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["online_peers"] == []
        assert data["offline_peers"] == []


# =============================================================================
# Execute and trace
# =============================================================================

class TestExecuteCommand:
    def test_execute_then_inspect(self, config_file: Path, node_home: Path, capsys):
        path = _queue(node_home, "proposal_42_pending.dsl")

        assert main(["--config", str(config_file), "execute", "--file", str(path)]) == 0
        out = capsys.readouterr().out
        assert "Execution completed with status: 0" in out
        assert "Vertex: cli-v1" in out
        assert (node_home / "executed" / "proposal_42_completed.dsl").exists()

        assert main(["--config", str(config_file), "dag-info", "--json"]) == 0
        info = json.loads(capsys.readouterr().out)["dag_info"]
        assert info["vertex_count"] == 1
        assert info["tips"] == ["cli-v1"]

        assert main(["--config", str(config_file), "dag-vertex", "--id", "cli-v1"]) == 0
        out = capsys.readouterr().out
        assert "ID: cli-v1" in out
        assert "Proposal: 42" in out
        assert "No parents (root vertex)" in out

        assert main(["--config", str(config_file), "dag-log"]) == 0
        assert "Vertex ID: cli-v1, Proposal: 42" in capsys.readouterr().out

        assert main(["--config", str(config_file), "trace", "--proposal", "42"]) == 0
        out = capsys.readouterr().out
        assert "Execution Output for Proposal 42:" in out
        assert "tally: 3 yes" in out

    def test_execute_twice_is_a_noop(self, config_file: Path, node_home: Path, capsys):
        path = _queue(node_home, "proposal_1_pending.dsl")
        assert main(["--config", str(config_file), "execute", "--file", str(path)]) == 0
        archived = node_home / "executed" / "proposal_1_completed.dsl"

        assert main(["--config", str(config_file), "execute", "--file", str(archived)]) == 0
        assert "already executed" in capsys.readouterr().out

    def test_rejected_proposal(self, config_file: Path, node_home: Path, capsys):
        path = _queue(node_home, "proposal_7_pending.dsl", MISSING_DESCRIPTION)

        assert main(["--config", str(config_file), "execute", "--file", str(path)]) == 1
        assert "Error: Validation error" in capsys.readouterr().err
        assert (node_home / "queue" / "proposal_7_rejected.dsl").exists()

    def test_force_bypasses_validation(self, config_file: Path, node_home: Path):
        path = _queue(node_home, "proposal_7_pending.dsl", MISSING_DESCRIPTION)
        assert main(["--config", str(config_file), "execute", "--file", str(path), "--force"]) == 0


# =============================================================================
# Failures
# =============================================================================

class TestFailures:
    """Every failure is one stderr line and exit status 1."""

    @pytest.mark.parametrize("argv", [
        ["execute", "--file", "/nonexistent/proposal_1_pending.dsl"],
        ["dag-vertex", "--id", "ghost"],
        ["trace", "--proposal", "404"],
    ])
    def test_command_errors(self, config_file: Path, capsys, argv):
        assert main(["--config", str(config_file), *argv]) == 1
        err = capsys.readouterr().err.strip().splitlines()
        assert err[-1].startswith("Error: ")

    def test_missing_config_file(self, tmp_path: Path, capsys):
        assert main(["--config", str(tmp_path / "missing.yaml"), "dag-info"]) == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_unknown_command(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["teleport"])
        assert excinfo.value.code == 2
