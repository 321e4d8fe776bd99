"""
ICN Node Configuration - Centralized configuration management.

Configuration Hierarchy (highest to lowest priority):
1. Environment variables (ICN_<SECTION>_<FIELD>)
2. Config file (JSON, TOML or YAML)
3. Default values

Example:
    config = NodeConfig.load("node.yaml")
    paths = config.paths()
    print(paths.queue_dir, config.daemon.interval_seconds)

    # ICN_DAEMON_INTERVAL_SECONDS=10 overrides daemon.interval_seconds
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import tomllib
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.icn"
DEFAULT_CONFIG_ENV = "ICN_CONFIG_PATH"


# =============================================================================
# Configuration Sections
# =============================================================================

@dataclass
class StorageConfig:
    """Where the node keeps its state document and queue directories."""
    state_dir: str = DEFAULT_STATE_DIR
    max_backups: int = 50
    lock_timeout_seconds: float = 10.0


@dataclass
class DaemonConfig:
    """Daemon loop and watcher settings."""
    interval_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    watch_queue: bool = True
    engine_workers: int = 2
    proposal_sync_command: Optional[str] = None


@dataclass
class EngineConfig:
    """External proposal engine invocation."""
    command: str = "covm"
    storage_backend: str = "file"
    use_stdlib: bool = True
    timeout_seconds: float = 0.0  # 0 disables the wall-clock limit


@dataclass
class FederationConfig:
    """Peer broadcast settings."""
    timeout_seconds: float = 5.0
    seed_peers: List[str] = field(default_factory=list)
    peer_command: Optional[str] = None
    sync_command: Optional[str] = None
    sign_vertices: bool = True


@dataclass
class ApiConfig:
    """Read-side HTTP surface."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 26657


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"
    file: Optional[str] = None


@dataclass(frozen=True)
class NodePaths:
    """Filesystem layout under the state directory."""
    state_dir: Path

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def backup_dir(self) -> Path:
        return self.state_dir / "state" / "backups"

    @property
    def queue_dir(self) -> Path:
        return self.state_dir / "queue"

    @property
    def executed_dir(self) -> Path:
        return self.state_dir / "executed"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def dag_log(self) -> Path:
        return self.logs_dir / "dag.log"

    @property
    def rejected_log(self) -> Path:
        return self.logs_dir / "rejected.log"

    @property
    def peer_vertex_log(self) -> Path:
        return self.logs_dir / "peer_vertices.log"

    @property
    def output_dir(self) -> Path:
        return self.state_dir / "output"

    @property
    def storage_dir(self) -> Path:
        return self.state_dir / "storage"

    @property
    def identity_file(self) -> Path:
        return self.state_dir / "identity.json"

    def ensure(self) -> None:
        """Create every directory the node writes into."""
        for directory in (
            self.state_dir,
            self.backup_dir,
            self.queue_dir,
            self.executed_dir,
            self.logs_dir,
            self.output_dir,
            self.storage_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)


# =============================================================================
# Main Configuration
# =============================================================================

_SECTIONS = {
    "storage": StorageConfig,
    "daemon": DaemonConfig,
    "engine": EngineConfig,
    "federation": FederationConfig,
    "api": ApiConfig,
    "logging": LoggingConfig,
}


@dataclass
class NodeConfig:
    """
    Main node configuration.

    Combines all configuration sections into a single object.
    """
    storage: StorageConfig = field(default_factory=StorageConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    federation: FederationConfig = field(default_factory=FederationConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        env_prefix: str = "ICN",
        env: Optional[Dict[str, str]] = None,
    ) -> "NodeConfig":
        """
        Load configuration with hierarchy: env vars > config file > defaults.

        Args:
            config_file: Path to config file (JSON, TOML or YAML)
            env_prefix: Prefix for environment variables
            env: Environment mapping (defaults to os.environ)

        Returns:
            Loaded and validated configuration
        """
        config_dict: Dict[str, Any] = {}
        if config_file:
            config_dict = cls._load_file(Path(config_file))

        config_dict = cls._apply_env_overrides(
            config_dict, env_prefix, env if env is not None else os.environ
        )
        config = cls._from_dict(config_dict)
        config.validate()
        return config

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        content = path.read_text()
        try:
            if path.suffix == ".json":
                parsed = json.loads(content)
            elif path.suffix == ".toml":
                parsed = tomllib.loads(content)
            elif path.suffix in {".yaml", ".yml"}:
                parsed = yaml.safe_load(content) or {}
            else:
                raise ConfigError(f"Unknown config file format: {path.suffix}")
        except (json.JSONDecodeError, tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc

        if not isinstance(parsed, dict):
            raise ConfigError("Config file must be a mapping at top level")
        return parsed

    @classmethod
    def _apply_env_overrides(
        cls,
        config: Dict[str, Any],
        prefix: str,
        env: Dict[str, str],
    ) -> Dict[str, Any]:
        """Apply environment variable overrides for known sections only."""
        for key, value in env.items():
            if not key.startswith(f"{prefix}_"):
                continue

            # ICN_DAEMON_POLL_INTERVAL_SECONDS -> daemon.poll_interval_seconds
            parts = key[len(prefix) + 1:].lower().split("_")
            if len(parts) < 2:
                continue
            section, field_name = parts[0], "_".join(parts[1:])
            section_cls = _SECTIONS.get(section)
            if section_cls is None:
                continue

            config.setdefault(section, {})
            config[section][field_name] = cls._parse_env_value(section_cls, field_name, value)

        return config

    @staticmethod
    def _parse_env_value(section_cls: type, field_name: str, value: str) -> Any:
        """Coerce an environment string to the type of the field's default."""
        default = None
        for f in dataclasses.fields(section_cls):
            if f.name != field_name:
                continue
            if f.default is not dataclasses.MISSING:
                default = f.default
            elif f.default_factory is not dataclasses.MISSING:
                default = f.default_factory()
            break
        else:
            raise ConfigError(f"Unknown config field: {section_cls.__name__}.{field_name}")

        try:
            if isinstance(default, bool):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            if isinstance(default, int):
                return int(value)
            if isinstance(default, float):
                return float(value)
            if isinstance(default, list):
                return [item.strip() for item in value.split(",") if item.strip()]
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {field_name}: {value!r}") from exc
        return value

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> "NodeConfig":
        sections = {}
        for name, section_cls in _SECTIONS.items():
            raw = config_dict.get(name) or {}
            if not isinstance(raw, dict):
                raise ConfigError(f"Config section '{name}' must be a mapping")
            try:
                sections[name] = section_cls(**raw)
            except TypeError as exc:
                raise ConfigError(f"Invalid config section '{name}': {exc}") from exc
        return cls(**sections)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def paths(self) -> NodePaths:
        return NodePaths(state_dir=Path(os.path.expanduser(self.storage.state_dir)))

    def validate(self) -> None:
        if self.daemon.interval_seconds <= 0:
            raise ConfigError("daemon.interval_seconds must be positive")
        if self.daemon.poll_interval_seconds <= 0:
            raise ConfigError("daemon.poll_interval_seconds must be positive")
        if self.daemon.engine_workers <= 0:
            raise ConfigError("daemon.engine_workers must be positive")
        if self.federation.timeout_seconds <= 0:
            raise ConfigError("federation.timeout_seconds must be positive")
        if self.engine.timeout_seconds < 0:
            raise ConfigError("engine.timeout_seconds must be non-negative")
        if self.storage.max_backups < 1:
            raise ConfigError("storage.max_backups must be at least 1")
        if not 0 < self.api.port < 65536:
            raise ConfigError(f"Invalid api.port: {self.api.port}")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid logging level: {self.logging.level}")
        if self.logging.format not in ("json", "text"):
            raise ConfigError(f"Invalid logging format: {self.logging.format}")
