from __future__ import annotations

import logging
import socket
import threading
import time
from contextlib import closing
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from icn.node.config import NodeConfig
from icn.node.daemon import NodeRuntime
from icn.node.engine import EngineOptions, EngineResult


VALID_PROPOSAL = """proposal {
  title: "Raise quorum"
  description: "Raise the quorum threshold to 60%"
  action: set_quorum(60)
}
"""

MISSING_DESCRIPTION = """proposal {
  title: "No description"
  action: noop()
}
"""


class FakeEngine:
    """In-process engine that records every call."""

    def __init__(
        self,
        status_code: int = 0,
        output: str = "ok",
        vertex_id: Optional[str] = None,
        accept: bool = True,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.status_code = status_code
        self.output = output
        self.vertex_id = vertex_id
        self.accept = accept
        self.delay = delay
        self.error = error
        self.validate_calls: List[Tuple[Path, EngineOptions]] = []
        self.execute_calls: List[Tuple[Path, EngineOptions]] = []
        self.cancelled = False
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.validate_calls) + len(self.execute_calls)

    def validate(self, path: Path, options: EngineOptions) -> bool:
        with self._lock:
            self.validate_calls.append((path, options))
        return self.accept

    def execute(self, path: Path, options: EngineOptions) -> EngineResult:
        with self._lock:
            self.execute_calls.append((path, options))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return EngineResult(status_code=self.status_code, output=self.output, vertex_id=self.vertex_id)

    def cancel(self) -> None:
        self.cancelled = True


def find_free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(autouse=True)
def _reset_icn_logger():
    yield
    # configure_logging() detaches the "icn" tree from the root logger
    icn_logger = logging.getLogger("icn")
    icn_logger.handlers.clear()
    icn_logger.propagate = True
    icn_logger.setLevel(logging.NOTSET)


@pytest.fixture
def node_config(tmp_path: Path) -> NodeConfig:
    return NodeConfig.load(env={
        "ICN_STORAGE_STATE_DIR": str(tmp_path / "icn"),
        "ICN_API_ENABLED": "false",
        "ICN_FEDERATION_SIGN_VERTICES": "false",
    })


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def runtime(node_config: NodeConfig, engine: FakeEngine):
    rt = NodeRuntime.open(node_config, engine=engine)
    yield rt
    rt.close()


@pytest.fixture
def write_proposal(runtime: NodeRuntime):
    def _write(name: str, content: str = VALID_PROPOSAL) -> Path:
        path = runtime.paths.queue_dir / name
        path.write_text(content, encoding="utf-8")
        return path
    return _write


