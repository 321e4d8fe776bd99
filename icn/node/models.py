"""
ICN Data Models.

Defines the records shared by the node components:
- ProposalStatus, Proposal: queue entries and their lifecycle
- VertexEntry: one immutable ledger record per executed proposal
- Peer, FederationStatus: federation view
- NodeState: the single persisted document
- ExecutionResult, DagInfo: structured results for callers and readers

Design Principles:
- Immutable where the lifecycle says so (VertexEntry is frozen)
- Timestamps are timezone-aware UTC, ISO-8601 on disk
- Every record round-trips through to_dict/from_dict
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import SerializationError

SYSTEM_VERSION = "0.1.0"

# chrono emits up to nine fractional digits; datetime accepts six
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is present."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = _FRACTION_RE.sub(r".\1", value.strip())
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise SerializationError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise SerializationError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Proposals
# -----------------------------------------------------------------------------

class ProposalStatus(str, Enum):
    """Proposal lifecycle states, encoded as the filename suffix."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition(self, target: "ProposalStatus") -> bool:
        """True iff `self -> target` is an edge of the lifecycle."""
        return target in _TRANSITIONS[self]


_TERMINAL = frozenset({ProposalStatus.COMPLETED, ProposalStatus.FAILED, ProposalStatus.REJECTED})

_TRANSITIONS: Dict[ProposalStatus, frozenset] = {
    ProposalStatus.PENDING: frozenset({ProposalStatus.EXECUTING, ProposalStatus.REJECTED}),
    ProposalStatus.EXECUTING: frozenset({ProposalStatus.COMPLETED, ProposalStatus.FAILED}),
    ProposalStatus.COMPLETED: frozenset(),
    ProposalStatus.FAILED: frozenset(),
    ProposalStatus.REJECTED: frozenset(),
}


_TITLE_RE = re.compile(r"^\s*title:\s*(?P<title>.+?)\s*$", re.MULTILINE)


@dataclass
class Proposal:
    """A queued proposal. Content is opaque apart from the optional title line."""
    id: str
    title: str
    content: str
    status: ProposalStatus
    path: Optional[Path] = None

    @classmethod
    def from_file(cls, proposal_id: str, status: ProposalStatus, path: Path) -> "Proposal":
        content = path.read_text(encoding="utf-8", errors="replace")
        match = _TITLE_RE.search(content)
        title = match.group("title").strip("\"'") if match else ""
        return cls(id=proposal_id, title=title, content=content, status=status, path=path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "status": self.status.value,
        }


# -----------------------------------------------------------------------------
# Ledger
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class VertexEntry:
    """
    Immutable execution record.

    `hash` is the SHA-256 of the proposal file bytes (audit only).
    `parents` holds the ledger tip at append time; empty for the genesis vertex.
    """
    id: str
    proposal_id: str
    timestamp: datetime
    hash: str
    parents: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposal_id": self.proposal_id,
            "timestamp": format_timestamp(self.timestamp),
            "hash": self.hash,
            "parents": list(self.parents),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VertexEntry":
        try:
            return cls(
                id=str(data["id"]),
                proposal_id=str(data["proposal_id"]),
                timestamp=parse_timestamp(data["timestamp"]),
                hash=str(data["hash"]),
                parents=tuple(str(p) for p in data.get("parents") or ()),
            )
        except KeyError as exc:
            raise SerializationError(f"Vertex missing field: {exc.args[0]}") from exc


@dataclass
class DagInfo:
    vertex_count: int
    root_count: int
    tip_count: int
    genesis_time: datetime
    latest_update: datetime
    tips: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vertex_count": self.vertex_count,
            "root_count": self.root_count,
            "tip_count": self.tip_count,
            "genesis_time": format_timestamp(self.genesis_time),
            "latest_update": format_timestamp(self.latest_update),
            "tips": list(self.tips),
        }


# -----------------------------------------------------------------------------
# Federation
# -----------------------------------------------------------------------------

@dataclass
class Peer:
    id: str
    name: str
    address: str
    last_seen: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "last_seen": format_timestamp(self.last_seen) if self.last_seen else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Peer":
        # Older state documents stored peers as bare addresses
        if isinstance(data, str):
            return cls(id=data, name=data, address=data.rstrip("/"))
        try:
            last_seen = data.get("last_seen")
            return cls(
                id=str(data["id"]),
                name=str(data.get("name") or data["id"]),
                address=str(data["address"]).rstrip("/"),
                last_seen=parse_timestamp(last_seen) if last_seen else None,
            )
        except (KeyError, AttributeError) as exc:
            raise SerializationError(f"Invalid peer entry: {data!r}") from exc


@dataclass
class FederationStatus:
    online_peers: List[Peer]
    offline_peers: List[Peer]
    last_check: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "online_peers": [p.to_dict() for p in self.online_peers],
            "offline_peers": [p.to_dict() for p in self.offline_peers],
            "last_check": format_timestamp(self.last_check),
        }


# -----------------------------------------------------------------------------
# Execution
# -----------------------------------------------------------------------------

@dataclass
class ExecutionResult:
    proposal_id: str
    timestamp: datetime
    status_code: int
    vertex_id: Optional[str]
    output: str

    @property
    def succeeded(self) -> bool:
        return self.status_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "timestamp": format_timestamp(self.timestamp),
            "status_code": self.status_code,
            "vertex_id": self.vertex_id,
            "output": self.output,
        }


# -----------------------------------------------------------------------------
# Node State
# -----------------------------------------------------------------------------

@dataclass
class NodeState:
    """The persisted node document. Only NodeStateManager touches it."""
    node_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    initialized: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    last_executed_block: int = 0
    last_proposal_id: int = 0
    executed_proposals: List[str] = field(default_factory=list)
    active_connection: str = ""
    peers: List[Peer] = field(default_factory=list)
    system_version: str = SYSTEM_VERSION
    dag_vertices: List[VertexEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "initialized": format_timestamp(self.initialized),
            "last_updated": format_timestamp(self.last_updated),
            "last_executed_block": self.last_executed_block,
            "last_proposal_id": self.last_proposal_id,
            "executed_proposals": list(self.executed_proposals),
            "active_connection": self.active_connection,
            "peers": [p.to_dict() for p in self.peers],
            "system_version": self.system_version,
            "dag_vertices": [v.to_dict() for v in self.dag_vertices],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeState":
        if not isinstance(data, dict):
            raise SerializationError("State document must be a JSON object")
        try:
            return cls(
                node_id=str(data["node_id"]),
                initialized=parse_timestamp(data["initialized"]),
                last_updated=parse_timestamp(data.get("last_updated", data["initialized"])),
                last_executed_block=int(data.get("last_executed_block", 0)),
                last_proposal_id=int(data.get("last_proposal_id", 0)),
                executed_proposals=[str(p) for p in data.get("executed_proposals", [])],
                active_connection=str(data.get("active_connection", "")),
                peers=[Peer.from_dict(p) for p in data.get("peers", [])],
                system_version=str(data.get("system_version", SYSTEM_VERSION)),
                dag_vertices=[VertexEntry.from_dict(v) for v in data.get("dag_vertices", [])],
            )
        except KeyError as exc:
            raise SerializationError(f"State document missing field: {exc.args[0]}") from exc
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Invalid state document: {exc}") from exc
