"""
ICN Node Runtime - component wiring and the long-running daemon.

NodeRuntime.open() builds every component from a NodeConfig, in dependency
order:

    paths -> state -> proposal store -> ledger -> engine
          -> identity -> peer directory -> broadcaster -> coordinator

run_daemon() then:
1. Reconciles the queue left by an unclean shutdown
2. Starts the HTTP API and the watch loop
3. Every interval: optional proposal sync, then a queue sweep

Per-iteration failures are logged and retried on the next interval.
SIGINT/SIGTERM set the stop event; shutdown stops the watcher and API and
terminates running engine processes.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config import NodeConfig, NodePaths
from .engine import CommandEngine, Engine
from .errors import ExternalProcessError, NodeError, StateError
from .executor import ExecutionCoordinator
from .external import ProposalSync
from .ledger import VertexLedger
from .models import FederationStatus
from .network.api import NodeApiHandlers, NodeApiServer
from .network.directory import PeerDirectory, ScriptPeerDirectory, StatePeerDirectory
from .network.federation import FederationBroadcaster
from .network.identity import NodeIdentity
from .queue import ProposalStore
from .state import NodeStateManager
from .watch import WatchEvent, WatchLoop

logger = logging.getLogger(__name__)


@dataclass
class NodeRuntime:
    """Every long-lived node component, built once per process."""
    config: NodeConfig
    paths: NodePaths
    state: NodeStateManager
    store: ProposalStore
    ledger: VertexLedger
    engine: Engine
    identity: Optional[NodeIdentity]
    directory: PeerDirectory
    broadcaster: FederationBroadcaster
    coordinator: ExecutionCoordinator

    @classmethod
    def open(cls, config: NodeConfig, engine: Optional[Engine] = None) -> "NodeRuntime":
        """Build the runtime. Raises StateError if the state cannot be created or read."""
        paths = config.paths()
        try:
            paths.ensure()
        except OSError as exc:
            raise StateError(f"Failed to create state directory {paths.state_dir}: {exc}") from exc

        state = NodeStateManager(
            paths.state_file,
            paths.backup_dir,
            max_backups=config.storage.max_backups,
            lock_timeout=config.storage.lock_timeout_seconds,
        )
        state.load()

        store = ProposalStore(paths.queue_dir, paths.executed_dir, paths.rejected_log)
        store.ensure_dirs()
        store.rebuild_index()

        ledger = VertexLedger(state, paths.dag_log)

        if engine is None:
            engine = CommandEngine(config.engine.command, timeout=config.engine.timeout_seconds)

        identity = None
        if config.federation.sign_vertices:
            identity = NodeIdentity.load_or_create(paths.identity_file)

        directory: PeerDirectory = StatePeerDirectory(state, config.federation.seed_peers)
        if config.federation.peer_command:
            directory = ScriptPeerDirectory(config.federation.peer_command, directory)

        broadcaster = FederationBroadcaster(
            directory,
            state.node_id,
            identity=identity,
            timeout=config.federation.timeout_seconds,
            sync_command=config.federation.sync_command,
        )
        coordinator = ExecutionCoordinator(state, store, ledger, engine, config, broadcaster)

        return cls(
            config=config,
            paths=paths,
            state=state,
            store=store,
            ledger=ledger,
            engine=engine,
            identity=identity,
            directory=directory,
            broadcaster=broadcaster,
            coordinator=coordinator,
        )

    def api_handlers(self) -> NodeApiHandlers:
        return NodeApiHandlers(self.state, self.store, self.ledger, self.paths.peer_vertex_log)

    def watch_loop(self, execute: bool = True) -> WatchLoop:
        return WatchLoop(
            self.store,
            self.ledger,
            self.coordinator if execute else None,
            poll_interval=self.config.daemon.poll_interval_seconds,
            watch_queue=self.config.daemon.watch_queue,
        )

    async def check_health(self) -> FederationStatus:
        """Probe peers and remember the first reachable one as the active connection."""
        status = await self.broadcaster.health()
        if status.online_peers:
            self.state.set_active_connection(status.online_peers[0].address)
        return status

    def close(self) -> None:
        self.coordinator.shutdown()


# =============================================================================
# Loops
# =============================================================================

def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass


def _log_event(event: WatchEvent) -> None:
    logger.info(f"{event.kind.capitalize()} event: {event.message}")


async def _wait(stop_event: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass


async def run_iteration(runtime: NodeRuntime, sync: Optional[ProposalSync] = None) -> int:
    """One daemon pass: pull proposals if configured, then sweep the queue."""
    if sync is not None:
        try:
            added = await sync.sync()
            if added:
                logger.info(f"Synced {added} proposals into the queue")
        except ExternalProcessError as exc:
            logger.warning(f"Proposal sync failed: {exc}")

    return await runtime.coordinator.process_queue()


async def run_daemon(
    runtime: NodeRuntime,
    interval: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the node until `stop_event` is set or a signal arrives."""
    interval = interval or runtime.config.daemon.interval_seconds
    stop_event = stop_event or asyncio.Event()
    install_signal_handlers(stop_event)

    await runtime.coordinator.reconcile()

    api_server: Optional[NodeApiServer] = None
    if runtime.config.api.enabled:
        api_server = NodeApiServer(runtime.api_handlers(), runtime.config.api)
        await api_server.start()

    watch_task = asyncio.ensure_future(runtime.watch_loop().run(stop_event, _log_event))
    watch_task.add_done_callback(_report_watch_exit)

    sync = None
    if runtime.config.daemon.proposal_sync_command:
        sync = ProposalSync(runtime.config.daemon.proposal_sync_command)

    logger.info(f"Node daemon started: {runtime.state.node_id} (interval {interval}s)")
    try:
        while not stop_event.is_set():
            try:
                await run_iteration(runtime, sync)
            except NodeError as exc:
                logger.error(f"Daemon iteration failed: {exc}")
            except Exception:
                logger.exception("Unexpected error in daemon iteration")
            await _wait(stop_event, interval)
    finally:
        stop_event.set()
        await asyncio.gather(watch_task, return_exceptions=True)
        if api_server is not None:
            await api_server.stop()
        runtime.close()
        logger.info("Node daemon stopped")


def _report_watch_exit(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Watch loop stopped: {exc}")


async def run_watch(
    runtime: NodeRuntime,
    on_event: Callable[[WatchEvent], Any],
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Standalone watch mode: dispatch new proposals and report ledger growth."""
    stop_event = stop_event or asyncio.Event()
    install_signal_handlers(stop_event)
    try:
        await runtime.watch_loop().run(stop_event, on_event)
    finally:
        runtime.close()
