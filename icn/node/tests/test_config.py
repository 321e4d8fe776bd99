from __future__ import annotations

import json
from pathlib import Path

import pytest

from icn.node.config import NodeConfig
from icn.node.errors import ConfigError


# =============================================================================
# Defaults and files
# =============================================================================

class TestLoad:
    """Tests for NodeConfig.load() sources."""

    def test_defaults(self):
        config = NodeConfig.load(env={})
        assert config.daemon.interval_seconds == 30.0
        assert config.daemon.watch_queue is True
        assert config.engine.command == "covm"
        assert config.federation.seed_peers == []
        assert config.api.port == 26657

    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "node.yaml"
        path.write_text(
            "daemon:\n"
            "  interval_seconds: 5\n"
            "federation:\n"
            "  seed_peers:\n"
            "    - alpha=http://a:26657\n",
            encoding="utf-8",
        )
        config = NodeConfig.load(path, env={})
        assert config.daemon.interval_seconds == 5
        assert config.federation.seed_peers == ["alpha=http://a:26657"]

    def test_json_file(self, tmp_path: Path):
        path = tmp_path / "node.json"
        path.write_text(json.dumps({"api": {"enabled": False, "port": 9000}}), encoding="utf-8")
        config = NodeConfig.load(path, env={})
        assert config.api.enabled is False
        assert config.api.port == 9000

    def test_toml_file(self, tmp_path: Path):
        path = tmp_path / "node.toml"
        path.write_text('[engine]\ncommand = "covm --quiet"\ntimeout_seconds = 12.5\n', encoding="utf-8")
        config = NodeConfig.load(path, env={})
        assert config.engine.command == "covm --quiet"
        assert config.engine.timeout_seconds == 12.5

    def test_empty_yaml_is_defaults(self, tmp_path: Path):
        path = tmp_path / "node.yaml"
        path.write_text("", encoding="utf-8")
        assert NodeConfig.load(path, env={}) == NodeConfig()

    @pytest.mark.parametrize("name,content", [
        ("node.yaml", "daemon: [unclosed"),
        ("node.json", "{not json"),
        ("node.ini", "[daemon]"),
        ("node.yaml", "- a list\n- at top level\n"),
        ("node.yaml", "daemon: 5\n"),
        ("node.yaml", "daemon:\n  no_such_field: 1\n"),
    ])
    def test_bad_files(self, tmp_path: Path, name: str, content: str):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigError):
            NodeConfig.load(path, env={})

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            NodeConfig.load(tmp_path / "missing.yaml", env={})


# =============================================================================
# Environment overrides
# =============================================================================

class TestEnvOverrides:
    def test_env_beats_file(self, tmp_path: Path):
        path = tmp_path / "node.yaml"
        path.write_text("daemon:\n  interval_seconds: 5\n", encoding="utf-8")
        config = NodeConfig.load(path, env={"ICN_DAEMON_INTERVAL_SECONDS": "12"})
        assert config.daemon.interval_seconds == 12.0

    def test_types_are_coerced(self):
        config = NodeConfig.load(env={
            "ICN_API_ENABLED": "0",
            "ICN_DAEMON_WATCH_QUEUE": "yes",
            "ICN_DAEMON_ENGINE_WORKERS": "4",
            "ICN_FEDERATION_SEED_PEERS": "a=http://a:1, http://b:2,",
            "ICN_ENGINE_COMMAND": "/opt/covm/bin/covm",
        })
        assert config.api.enabled is False
        assert config.daemon.watch_queue is True
        assert config.daemon.engine_workers == 4
        assert config.federation.seed_peers == ["a=http://a:1", "http://b:2"]
        assert config.engine.command == "/opt/covm/bin/covm"

    def test_unrelated_variables_ignored(self):
        config = NodeConfig.load(env={"ICN_CONFIG_PATH": "x", "ICNX_API_PORT": "1", "ICN_NOPE_FIELD": "1"})
        assert config == NodeConfig()

    def test_unknown_field(self):
        with pytest.raises(ConfigError):
            NodeConfig.load(env={"ICN_DAEMON_BOGUS": "1"})

    def test_bad_number(self):
        with pytest.raises(ConfigError):
            NodeConfig.load(env={"ICN_API_PORT": "eighty"})


# =============================================================================
# Validation and paths
# =============================================================================

class TestValidate:
    @pytest.mark.parametrize("env", [
        {"ICN_DAEMON_INTERVAL_SECONDS": "0"},
        {"ICN_DAEMON_ENGINE_WORKERS": "0"},
        {"ICN_FEDERATION_TIMEOUT_SECONDS": "-1"},
        {"ICN_ENGINE_TIMEOUT_SECONDS": "-5"},
        {"ICN_API_PORT": "70000"},
        {"ICN_LOGGING_LEVEL": "chatty"},
        {"ICN_LOGGING_FORMAT": "xml"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(ConfigError):
            NodeConfig.load(env=env)

    def test_paths_layout(self, tmp_path: Path):
        config = NodeConfig.load(env={"ICN_STORAGE_STATE_DIR": str(tmp_path)})
        paths = config.paths()

        assert paths.queue_dir == tmp_path / "queue"
        assert paths.executed_dir == tmp_path / "executed"
        assert paths.dag_log == tmp_path / "logs" / "dag.log"
        assert paths.state_file == tmp_path / "state.json"

        paths.ensure()
        assert paths.queue_dir.is_dir()
        assert paths.output_dir.is_dir()
        assert paths.backup_dir.is_dir()

    def test_home_is_expanded(self):
        paths = NodeConfig.load(env={}).paths()
        assert "~" not in str(paths.state_dir)

    def test_to_json(self):
        data = json.loads(NodeConfig().to_json())
        assert set(data) == {"storage", "daemon", "engine", "federation", "api", "logging"}
