from __future__ import annotations

import shlex
from pathlib import Path

import pytest

from icn.node.engine import CommandEngine, EngineOptions
from icn.node.errors import ExecutionError


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "covm.sh"
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(0o755)
    return script


@pytest.fixture
def proposal(tmp_path: Path) -> Path:
    path = tmp_path / "proposal_1_pending.dsl"
    path.write_text("proposal { }", encoding="utf-8")
    return path


class TestArgv:
    def test_default_flags(self):
        argv = CommandEngine("covm").build_argv(Path("p.dsl"), EngineOptions())
        assert argv == ["covm", "--storage-backend", "memory", "p.dsl"]

    def test_all_flags(self):
        options = EngineOptions(
            simulate=True,
            trace=True,
            explain=True,
            verbose=True,
            use_stdlib=True,
            storage_backend="file",
            storage_path="/var/icn/storage",
            identity_path="/var/icn/identity.json",
        )
        argv = CommandEngine("covm --quiet").build_argv(Path("p.dsl"), options)
        assert argv == [
            "covm", "--quiet",
            "--simulate", "--trace", "--explain", "--verbose", "--stdlib",
            "--storage-backend", "file",
            "--storage-path", "/var/icn/storage",
            "--identity", "/var/icn/identity.json",
            "p.dsl",
        ]

    def test_empty_command(self):
        with pytest.raises(ExecutionError):
            CommandEngine("")


class TestCommandEngine:
    """Runs a stand-in interpreter script."""

    def test_execute_reports_status_and_vertex(self, tmp_path: Path, proposal: Path):
        script = _script(tmp_path, 'echo "running $*"\necho "vertex_id: v-1"\necho "vertex_id: v-2"\nexit 0')

        result = CommandEngine(str(script)).execute(proposal, EngineOptions())

        assert result.status_code == 0
        assert result.vertex_id == "v-2"
        assert str(proposal) in result.output

    def test_non_zero_status_and_stderr(self, tmp_path: Path, proposal: Path):
        script = _script(tmp_path, 'echo "partial"\necho "boom" >&2\nexit 4')

        result = CommandEngine(str(script)).execute(proposal, EngineOptions())

        assert result.status_code == 4
        assert result.vertex_id is None
        assert "partial" in result.output
        assert "boom" in result.output

    def test_missing_interpreter(self, tmp_path: Path, proposal: Path):
        engine = CommandEngine(str(tmp_path / "no-such-covm"))
        with pytest.raises(ExecutionError):
            engine.execute(proposal, EngineOptions())

    def test_timeout(self, tmp_path: Path, proposal: Path):
        script = _script(tmp_path, "exec sleep 5")
        engine = CommandEngine(str(script), timeout=0.2)
        with pytest.raises(ExecutionError, match="timed out"):
            engine.execute(proposal, EngineOptions())

    def test_validate(self, tmp_path: Path, proposal: Path):
        accept = _script(tmp_path, 'case "$*" in *--simulate*) exit 0;; esac\nexit 9')
        assert CommandEngine(shlex.quote(str(accept))).validate(proposal, EngineOptions.dry_run())

        reject = tmp_path / "reject.sh"
        reject.write_text("#!/bin/sh\nexit 2\n", encoding="utf-8")
        reject.chmod(0o755)
        assert not CommandEngine([str(reject)]).validate(proposal, EngineOptions.dry_run())

    def test_validate_missing_interpreter_is_false(self, tmp_path: Path, proposal: Path):
        engine = CommandEngine([str(tmp_path / "absent")])
        assert engine.validate(proposal, EngineOptions.dry_run()) is False

    def test_cancel_without_running_processes(self):
        CommandEngine("covm").cancel()

    def test_undecodable_output_is_replaced(self, tmp_path: Path, proposal: Path):
        script = _script(tmp_path, "printf '\\377\\376 bad\\n'\nprintf '\\377 worse\\n' >&2\necho 'vertex_id: v-9'\nexit 0")

        result = CommandEngine(str(script)).execute(proposal, EngineOptions())

        assert result.status_code == 0
        assert "\ufffd\ufffd bad" in result.output
        assert "\ufffd worse" in result.output
        assert result.vertex_id == "v-9"
