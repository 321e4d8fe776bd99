"""
ICN Engine Interface - narrow contract to the proposal interpreter.

The interpreter is opaque to the node: it consumes a proposal file plus a set
of options and reports a status code, an optional vertex id and captured
output. CommandEngine is the default adapter and runs the interpreter as a
subprocess; tests plug in an in-process implementation of the same protocol.

Engine calls block. The coordinator runs them on a dedicated thread pool so a
slow proposal never stalls the event loop.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Set, Union

from .errors import ExecutionError

logger = logging.getLogger(__name__)

_VERTEX_LINE_RE = re.compile(r"^\s*vertex_id:\s*(?P<vertex_id>\S+)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class EngineOptions:
    """Interpreter options. `simulate` must not mutate engine storage."""
    simulate: bool = False
    trace: bool = False
    explain: bool = False
    verbose: bool = False
    use_stdlib: bool = False
    storage_backend: str = "memory"
    storage_path: Optional[str] = None
    identity_path: Optional[str] = None

    @classmethod
    def dry_run(cls) -> "EngineOptions":
        return cls(simulate=True)

    @classmethod
    def tracing(cls) -> "EngineOptions":
        return cls(trace=True, explain=True, verbose=True)


@dataclass(frozen=True)
class EngineResult:
    status_code: int
    output: str
    vertex_id: Optional[str] = None


class Engine(Protocol):
    """Capability interface for the proposal interpreter."""

    def validate(self, path: Path, options: EngineOptions) -> bool:
        """Dry-run the proposal; True iff the interpreter accepts it."""
        ...

    def execute(self, path: Path, options: EngineOptions) -> EngineResult:
        """Run the proposal. Raises ExecutionError if the interpreter cannot run."""
        ...


class CommandEngine:
    """
    Engine backed by an external interpreter command.

    Options map to flags (`--simulate`, `--trace`, `--storage-backend file`,
    ...) followed by the proposal path. A `vertex_id: <id>` line on stdout
    names the vertex; the last one wins.
    """

    def __init__(self, command: Union[str, Sequence[str]], timeout: Optional[float] = None):
        self._argv: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self._argv:
            raise ExecutionError("Engine command is empty")
        self._timeout = timeout or None
        self._running: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def build_argv(self, path: Path, options: EngineOptions) -> List[str]:
        argv = list(self._argv)
        for flag, enabled in (
            ("--simulate", options.simulate),
            ("--trace", options.trace),
            ("--explain", options.explain),
            ("--verbose", options.verbose),
            ("--stdlib", options.use_stdlib),
        ):
            if enabled:
                argv.append(flag)
        argv += ["--storage-backend", options.storage_backend]
        if options.storage_path:
            argv += ["--storage-path", options.storage_path]
        if options.identity_path:
            argv += ["--identity", options.identity_path]
        argv.append(str(path))
        return argv

    def execute(self, path: Path, options: EngineOptions) -> EngineResult:
        argv = self.build_argv(path, options)
        logger.debug(f"Running engine: {' '.join(argv)}")
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutionError(f"Failed to start engine {argv[0]}: {exc}") from exc

        with self._lock:
            self._running.add(proc)
        try:
            raw_out, raw_err = proc.communicate(timeout=self._timeout)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.communicate()
            raise ExecutionError(f"Engine timed out after {self._timeout}s on {path.name}") from exc
        finally:
            with self._lock:
                self._running.discard(proc)

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        output = stdout if not stderr else f"{stdout}{stderr}"
        matches = _VERTEX_LINE_RE.findall(stdout)
        return EngineResult(
            status_code=proc.returncode,
            output=output,
            vertex_id=matches[-1] if matches else None,
        )

    def validate(self, path: Path, options: EngineOptions) -> bool:
        try:
            result = self.execute(path, options)
        except ExecutionError as exc:
            logger.warning(f"Engine validation failed: {exc}")
            return False
        if result.status_code != 0:
            logger.warning(f"Engine validation rejected {path.name}: status {result.status_code}")
            return False
        return True

    def cancel(self) -> None:
        """Terminate every interpreter process still running."""
        with self._lock:
            running = list(self._running)
        for proc in running:
            if proc.poll() is None:
                logger.info(f"Terminating engine process {proc.pid}")
                proc.terminate()
