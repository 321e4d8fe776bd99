"""
ICN Node Errors.

Every failure raised by the node derives from NodeError and carries a
`kind` string matching the error taxonomy used in logs and CLI output:

    Io, Serialization, Network, State, Queue, Execution, Dag,
    Federation, Validation, ExternalProcess, Config

Propagation:
- Validation failures end in a terminal `rejected` status and are logged;
  the sweep never crashes on them.
- Execution failures end in `failed` and reach the immediate caller.
- Federation failures are logged by the broadcaster and never raised past it.
- State failures reach the caller; the daemon retries on its next interval.
"""

from __future__ import annotations

from typing import Optional


class NodeError(Exception):
    """Base class for node failures."""

    kind = "Node"

    def __str__(self) -> str:
        return f"{self.kind} error: {super().__str__()}"


class IoError(NodeError):
    kind = "Io"


class SerializationError(NodeError):
    kind = "Serialization"


class NetworkError(NodeError):
    kind = "Network"


class StateError(NodeError):
    """Lock, parse or write failure on the persisted node state."""

    kind = "State"


class QueueError(NodeError):
    """Malformed proposal filename, illegal transition, rename or watcher failure."""

    kind = "Queue"


class ExecutionError(NodeError):
    kind = "Execution"


class DagError(NodeError):
    kind = "Dag"


class FederationError(NodeError):
    kind = "Federation"


class ValidationError(NodeError):
    """Proposal rejected before the engine ran."""

    kind = "Validation"

    def __init__(self, reason: str, proposal_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.proposal_id = proposal_id


class ExternalProcessError(NodeError):
    """A delegated external command exited non-zero."""

    kind = "ExternalProcess"

    def __init__(self, message: str, code: int):
        super().__init__(f"{message}, code: {code}")
        self.message = message
        self.code = code


class ConfigError(NodeError):
    kind = "Config"
