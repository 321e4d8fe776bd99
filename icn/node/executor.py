"""
ICN Execution Coordinator - runs one proposal through its lifecycle.

Flow for a queued proposal:

    guard(id) -> already executed? skip
              -> validate (unless forced)    fail: rejected + rejection log
              -> pending -> executing
              -> engine (thread pool)         raise: failed, ExecutionError
                                              status != 0: failed
              -> fingerprint, ledger commit   (vertex + executed id, one write)
              -> archive copy, executing -> completed
                                              fail: left executing, next sweep repairs
              -> store output -> release guard -> broadcast

Files outside the queue directory run without renames or archival.

Concurrency:
- The watcher and the periodic sweep both dispatch through here. Dispatch is
  serialized per proposal id by DispatchGuard, and the executed-set check
  happens while holding it, so one id runs at most once.
- Engine calls block; they run on a dedicated ThreadPoolExecutor.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional, TypeVar

from .config import NodeConfig
from .engine import Engine, EngineOptions, EngineResult
from .errors import (
    DagError,
    ExecutionError,
    IoError,
    NodeError,
    QueueError,
    SerializationError,
    StateError,
    ValidationError,
)
from .ledger import VertexLedger, fingerprint_file
from .models import ExecutionResult, ProposalStatus, utcnow
from .queue import ProposalStore, ProposalValidator, parse_filename
from .state import NodeStateManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Dispatch guard
# =============================================================================

class DispatchGuard:
    """Identifier-keyed set of asyncio locks."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, proposal_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(proposal_id, asyncio.Lock())
        self._holders[proposal_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[proposal_id] -= 1
            if self._holders[proposal_id] == 0:
                del self._holders[proposal_id]
                self._locks.pop(proposal_id, None)

    def is_held(self, proposal_id: str) -> bool:
        lock = self._locks.get(proposal_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class TraceReport:
    """Diagnostic re-run of a proposal with tracing enabled."""
    proposal_id: str
    path: Path
    output_file: Optional[Path]
    previous_output: Optional[Dict[str, Any]]
    trace: EngineResult


# =============================================================================
# Coordinator
# =============================================================================

class ExecutionCoordinator:
    """
    Drives proposals from the queue through the engine into the ledger.

    Args:
        state: Node state manager
        store: Proposal queue
        ledger: Vertex ledger
        engine: Proposal interpreter
        config: Node configuration (paths, engine options, worker count)
        broadcaster: Optional federation broadcaster, called after commit
    """

    def __init__(
        self,
        state: NodeStateManager,
        store: ProposalStore,
        ledger: VertexLedger,
        engine: Engine,
        config: NodeConfig,
        broadcaster: Optional[Any] = None,
    ) -> None:
        self._state = state
        self._store = store
        self._ledger = ledger
        self._engine = engine
        self._config = config
        self._paths = config.paths()
        self._broadcaster = broadcaster
        self._validator = ProposalValidator(engine)
        self._guard = DispatchGuard()
        self._pool = ThreadPoolExecutor(
            max_workers=config.daemon.engine_workers,
            thread_name_prefix="icn-engine",
        )

    @property
    def guard(self) -> DispatchGuard:
        return self._guard

    @property
    def store(self) -> ProposalStore:
        return self._store

    @property
    def ledger(self) -> VertexLedger:
        return self._ledger

    async def _run_blocking(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, functools.partial(fn, *args))

    def execution_options(self) -> EngineOptions:
        identity = self._paths.identity_file
        return EngineOptions(
            use_stdlib=self._config.engine.use_stdlib,
            storage_backend=self._config.engine.storage_backend,
            storage_path=str(self._paths.storage_dir),
            identity_path=str(identity) if identity.exists() else None,
        )

    def _resolve_id(self, path: Path, in_queue: bool) -> str:
        try:
            return parse_filename(path.name)[0]
        except QueueError:
            if in_queue:
                raise
            # Ad-hoc files keep their filename as the id
            return path.name

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, path: Path, force: bool = False) -> Optional[ExecutionResult]:
        """
        Execute the proposal at `path`.

        Returns None when the proposal was already executed or another
        dispatch path got to it first. Raises ValidationError when the
        proposal is rejected and ExecutionError when the engine cannot run.
        """
        path = Path(path)
        if not path.exists():
            raise ExecutionError(f"Proposal file not found: {path}")
        return await self.dispatch(path, force=force)

    async def dispatch(self, path: Path, force: bool = False) -> Optional[ExecutionResult]:
        """Like execute(), but a file that has vanished is a skip rather than an error."""
        path = Path(path)
        in_queue = self._store.owns(path)
        proposal_id = self._resolve_id(path, in_queue)

        async with self._guard.hold(proposal_id):
            if self._state.is_executed(proposal_id):
                logger.debug(f"Proposal {proposal_id} already executed, skipping")
                return None
            if in_queue and (
                not path.exists() or parse_filename(path.name)[1] is not ProposalStatus.PENDING
            ):
                logger.debug(f"Proposal {proposal_id} is no longer pending, skipping")
                return None

            result, vertex = await self._run_locked(proposal_id, path, in_queue, force)

        if vertex is not None and self._broadcaster is not None:
            await self._broadcaster.broadcast(vertex)
        return result

    async def _run_locked(self, proposal_id: str, path: Path, in_queue: bool, force: bool):
        logger.info(f"Executing proposal: {proposal_id}")

        if not force:
            outcome = await self._run_blocking(self._validator.validate, path)
            if not outcome.ok:
                try:
                    self._store.log_rejection(proposal_id, outcome.reason)
                finally:
                    if in_queue:
                        self._store.transition(proposal_id, ProposalStatus.REJECTED)
                raise ValidationError(outcome.reason, proposal_id)

        run_path = path
        if in_queue:
            run_path = self._store.transition(proposal_id, ProposalStatus.EXECUTING)

        try:
            engine_result = await self._run_blocking(
                self._engine.execute, run_path, self.execution_options()
            )
        except ExecutionError:
            self._mark_failed(proposal_id, in_queue)
            raise
        except Exception as exc:
            self._mark_failed(proposal_id, in_queue)
            raise ExecutionError(f"Engine failed on proposal {proposal_id}: {exc}") from exc

        result = ExecutionResult(
            proposal_id=proposal_id,
            timestamp=utcnow(),
            status_code=engine_result.status_code,
            vertex_id=engine_result.vertex_id,
            output=engine_result.output,
        )

        if not result.succeeded:
            logger.error(
                f"Proposal execution failed: {proposal_id}, status: {result.status_code}"
            )
            self._mark_failed(proposal_id, in_queue)
            self._store_output(result)
            return result, None

        try:
            content_hash = fingerprint_file(run_path)
            entry = VertexLedger.new_entry(proposal_id, content_hash, engine_result.vertex_id)
            vertex = self._ledger.append(entry, executed_proposal_id=proposal_id)
        except OSError as exc:
            self._mark_failed(proposal_id, in_queue)
            raise IoError(f"Failed to fingerprint proposal {proposal_id}: {exc}") from exc
        except (StateError, DagError):
            self._mark_failed(proposal_id, in_queue)
            raise

        result.vertex_id = vertex.id
        if in_queue:
            try:
                self._store.archive(proposal_id, run_path)
                self._store.transition(proposal_id, ProposalStatus.COMPLETED)
            except (IoError, QueueError) as exc:
                # Committed; the next sweep finishes the archive and rename
                logger.error(f"Proposal {proposal_id} committed but not archived: {exc}")

        logger.info(f"Proposal executed successfully: {proposal_id} (vertex {vertex.id})")
        self._store_output(result)
        return result, vertex

    def _mark_failed(self, proposal_id: str, in_queue: bool) -> None:
        if not in_queue:
            return
        try:
            self._store.transition(proposal_id, ProposalStatus.FAILED)
        except QueueError as exc:
            logger.error(f"Could not mark proposal {proposal_id} failed: {exc}")

    def _store_output(self, result: ExecutionResult) -> Optional[Path]:
        stamp = result.timestamp.strftime("%Y%m%d_%H%M%S")
        output_file = self._paths.output_dir / f"execution_{result.proposal_id}_{stamp}.json"
        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            output_file.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Failed to store execution output for {result.proposal_id}: {exc}")
            return None
        return output_file

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    async def process_queue(self) -> int:
        """Dispatch every pending proposal in id order. Returns how many succeeded."""
        await self._repair_executing()
        pending = self._store.list_pending()
        if pending:
            logger.info(f"Processing {len(pending)} pending proposals")

        succeeded = 0
        for proposal in pending:
            try:
                result = await self.dispatch(proposal.path)
            except ValidationError as exc:
                logger.warning(f"Proposal {proposal.id} rejected: {exc.reason}")
                continue
            except NodeError as exc:
                logger.error(f"Error processing proposal {proposal.id}: {exc}")
                continue
            if result is not None and result.succeeded:
                succeeded += 1
        return succeeded

    # -------------------------------------------------------------------------
    # Startup reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self) -> Dict[str, int]:
        """
        Repair the queue after an unclean shutdown.

        - Archived completions join the executed set.
        - `executing` files whose id is executed get archived and completed.
        - Any other `executing` file ran without committing; it is marked failed.
        """
        self._store.ensure_dirs()
        self._store.rebuild_index()
        counts = {"adopted": 0}

        for proposal_id in sorted(self._store.archived()):
            if self._state.add_executed_proposal(proposal_id):
                counts["adopted"] += 1

        counts.update(await self._repair_executing())
        if any(counts.values()):
            logger.info(f"Reconciled queue: {counts}")
        return counts

    async def _repair_executing(self) -> Dict[str, int]:
        """
        Settle `executing` files left behind by a crash or a failed post-commit step.

        A dispatch only holds an `executing` file while it holds the guard for
        that id, so a file still `executing` once the guard is ours is stale.
        """
        counts = {"completed": 0, "failed": 0}
        for proposal_id, status, path in self._store.scan():
            if status is not ProposalStatus.EXECUTING:
                continue
            async with self._guard.hold(proposal_id):
                if not path.exists():
                    continue
                try:
                    if self._state.is_executed(proposal_id):
                        if proposal_id not in self._store.archived():
                            self._store.archive(proposal_id, path)
                        self._store.transition(proposal_id, ProposalStatus.COMPLETED)
                        counts["completed"] += 1
                    else:
                        logger.warning(f"Proposal {proposal_id} was interrupted mid-execution")
                        self._store.transition(proposal_id, ProposalStatus.FAILED)
                        counts["failed"] += 1
                except (QueueError, IoError) as exc:
                    logger.error(f"Could not repair proposal {proposal_id}: {exc}")
        if any(counts.values()):
            logger.info(f"Repaired executing proposals: {counts}")
        return counts

    # -------------------------------------------------------------------------
    # Trace
    # -------------------------------------------------------------------------

    def latest_output(self, proposal_id: str) -> Optional[Path]:
        outputs = sorted(
            self._paths.output_dir.glob(f"execution_{proposal_id}_*.json"),
            key=lambda p: p.name,
            reverse=True,
        )
        return outputs[0] if outputs else None

    async def trace(self, proposal_id: str) -> TraceReport:
        """Load the newest stored output and re-run the proposal with tracing."""
        path = self._store.find(proposal_id)
        if path is None:
            raise ExecutionError(f"Proposal not found: {proposal_id}")
        logger.info(f"Found proposal file: {path}")

        output_file = self.latest_output(proposal_id)
        previous: Optional[Dict[str, Any]] = None
        if output_file is not None:
            try:
                previous = json.loads(output_file.read_text(encoding="utf-8"))
            except OSError as exc:
                raise ExecutionError(f"Failed to read output file: {exc}") from exc
            except json.JSONDecodeError as exc:
                raise SerializationError(f"Corrupt output file {output_file.name}: {exc}") from exc

        try:
            traced = await self._run_blocking(self._engine.execute, path, EngineOptions.tracing())
        except ExecutionError as exc:
            raise ExecutionError(f"Failed to trace execution: {exc}") from exc

        return TraceReport(
            proposal_id=proposal_id,
            path=path,
            output_file=output_file,
            previous_output=previous,
            trace=traced,
        )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self) -> None:
        """Terminate running engine processes and stop the worker pool."""
        cancel = getattr(self._engine, "cancel", None)
        if callable(cancel):
            cancel()
        self._pool.shutdown(wait=False, cancel_futures=True)
