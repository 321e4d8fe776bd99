"""
ICN Node - cooperative node runner.

Picks governance proposals up from a directory queue, validates and executes
them through an external engine, records each success as a vertex in an
append-only ledger and offers the vertex to federation peers.

Components:
- NodeStateManager: the single persisted state document
- ProposalStore / ProposalValidator: filename-encoded proposal lifecycle
- VertexLedger: append-only execution record
- ExecutionCoordinator: validate -> execute -> commit -> archive -> broadcast
- WatchLoop: filesystem watcher and ledger poller
- FederationBroadcaster: best-effort vertex distribution
"""

from .errors import (
    NodeError,
    IoError,
    SerializationError,
    NetworkError,
    StateError,
    QueueError,
    ExecutionError,
    DagError,
    FederationError,
    ValidationError,
    ExternalProcessError,
    ConfigError,
)
from .models import (
    SYSTEM_VERSION,
    ProposalStatus,
    Proposal,
    VertexEntry,
    DagInfo,
    Peer,
    FederationStatus,
    ExecutionResult,
    NodeState,
)
from .config import NodeConfig, NodePaths
from .state import NodeStateManager
from .engine import Engine, EngineOptions, EngineResult, CommandEngine
from .queue import ProposalStore, ProposalValidator, ValidationOutcome
from .ledger import VertexLedger, fingerprint
from .executor import DispatchGuard, ExecutionCoordinator, TraceReport
from .watch import WatchEvent, QueueWatcher, LedgerPoller, WatchLoop
from .daemon import NodeRuntime, run_daemon, run_watch

__all__ = [
    # Errors
    "NodeError",
    "IoError",
    "SerializationError",
    "NetworkError",
    "StateError",
    "QueueError",
    "ExecutionError",
    "DagError",
    "FederationError",
    "ValidationError",
    "ExternalProcessError",
    "ConfigError",
    # Models
    "SYSTEM_VERSION",
    "ProposalStatus",
    "Proposal",
    "VertexEntry",
    "DagInfo",
    "Peer",
    "FederationStatus",
    "ExecutionResult",
    "NodeState",
    # Components
    "NodeConfig",
    "NodePaths",
    "NodeStateManager",
    "Engine",
    "EngineOptions",
    "EngineResult",
    "CommandEngine",
    "ProposalStore",
    "ProposalValidator",
    "ValidationOutcome",
    "VertexLedger",
    "fingerprint",
    "DispatchGuard",
    "ExecutionCoordinator",
    "TraceReport",
    "WatchEvent",
    "QueueWatcher",
    "LedgerPoller",
    "WatchLoop",
    "NodeRuntime",
    "run_daemon",
    "run_watch",
]
