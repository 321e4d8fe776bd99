"""
ICN Vertex Ledger - append-only record of executed proposals.

The authoritative ledger is the `dag_vertices` list inside the node state
document; `logs/dag.log` is a human-readable audit trail written after each
append and never read back for decisions.

Each vertex names the ledger tip at append time as its single parent, so the
read side can report parents, children and heights. The structure is a chain
ordered by local arrival; there is no cross-node causality.

Invariants:
- len(ledger) grows by exactly one per append
- Entries already in the ledger never change
- Vertex ids are unique
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import DagError
from .models import DagInfo, NodeState, VertexEntry, format_timestamp, utcnow
from .state import NodeStateManager, mark_executed

logger = logging.getLogger(__name__)


def fingerprint(data: bytes) -> str:
    """SHA-256 hex digest of proposal bytes."""
    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Path) -> str:
    return fingerprint(Path(path).read_bytes())


class VertexLedger:
    """Ledger view over the node state document."""

    def __init__(self, state: NodeStateManager, dag_log: Path) -> None:
        self._state = state
        self._dag_log = Path(dag_log)

    def __len__(self) -> int:
        return self._state.vertex_count()

    @staticmethod
    def new_entry(
        proposal_id: str,
        content_hash: str,
        vertex_id: Optional[str] = None,
    ) -> VertexEntry:
        """Build an unlinked entry; parents are assigned by append()."""
        return VertexEntry(
            id=vertex_id or str(uuid.uuid4()),
            proposal_id=proposal_id,
            timestamp=utcnow(),
            hash=content_hash,
        )

    def append(self, entry: VertexEntry, executed_proposal_id: Optional[str] = None) -> VertexEntry:
        """
        Append `entry` in one state write and return the stored vertex.

        An entry without parents is linked to the current tip. When
        `executed_proposal_id` is given it joins the executed set in the
        same write, so a proposal is never marked executed without its vertex.
        """
        def _append(state: NodeState) -> VertexEntry:
            known = {v.id for v in state.dag_vertices}
            if entry.id in known:
                raise DagError(f"Duplicate vertex id: {entry.id}")

            stored = entry
            if not entry.parents and state.dag_vertices:
                stored = dataclasses.replace(entry, parents=(state.dag_vertices[-1].id,))
            missing = [p for p in stored.parents if p not in known]
            if missing:
                raise DagError(f"Vertex {entry.id} references unknown parents: {missing}")

            state.dag_vertices.append(stored)
            state.last_executed_block = len(state.dag_vertices)
            if executed_proposal_id is not None:
                mark_executed(state, executed_proposal_id)
            return stored

        stored = self._state.mutate(_append)
        self._write_log(stored)
        return stored

    def _write_log(self, entry: VertexEntry) -> None:
        line = (
            f"{format_timestamp(entry.timestamp)} - Vertex ID: {entry.id}, "
            f"Proposal: {entry.proposal_id}, Hash: {entry.hash}\n"
        )
        try:
            self._dag_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self._dag_log, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as exc:
            # The state document already holds the vertex
            logger.warning(f"Failed to write DAG audit log for {entry.id}: {exc}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def all(self) -> List[VertexEntry]:
        return self._state.vertices()

    def find(self, vertex_id: str) -> VertexEntry:
        for vertex in self._state.vertices():
            if vertex.id == vertex_id:
                return vertex
        raise DagError(f"Vertex not found: {vertex_id}")

    def tip(self) -> Optional[VertexEntry]:
        vertices = self._state.vertices()
        return vertices[-1] if vertices else None

    def children_of(self, vertex_id: str, vertices: Optional[List[VertexEntry]] = None) -> List[str]:
        vertices = vertices if vertices is not None else self._state.vertices()
        return [v.id for v in vertices if vertex_id in v.parents]

    def summary(self) -> DagInfo:
        vertices = self._state.vertices()
        now = utcnow()
        if not vertices:
            return DagInfo(
                vertex_count=0,
                root_count=0,
                tip_count=0,
                genesis_time=now,
                latest_update=now,
                tips=[],
            )

        has_children = {p for v in vertices for p in v.parents}
        tips = [v.id for v in vertices if v.id not in has_children]
        roots = [v for v in vertices if not v.parents]
        return DagInfo(
            vertex_count=len(vertices),
            root_count=len(roots),
            tip_count=len(tips),
            genesis_time=vertices[0].timestamp,
            latest_update=vertices[-1].timestamp,
            tips=tips,
        )

    def describe(self, vertex_id: str) -> Dict[str, Any]:
        """Read-side view of one vertex, including derived height and children."""
        snapshot = self._state.snapshot()
        vertices = snapshot.dag_vertices

        heights: Dict[str, int] = {}
        target: Optional[VertexEntry] = None
        for v in vertices:
            heights[v.id] = 1 + max((heights[p] for p in v.parents if p in heights), default=-1)
            if v.id == vertex_id:
                target = v
        if target is None:
            raise DagError(f"Vertex not found: {vertex_id}")

        return {
            "id": target.id,
            "timestamp": format_timestamp(target.timestamp),
            "height": heights[target.id],
            "proposer": snapshot.node_id,
            "data_type": "proposal",
            "scope": "local",
            "proposal_id": target.proposal_id,
            "hash": target.hash,
            "parents": list(target.parents),
            "children": self.children_of(target.id, vertices),
        }

    def read_log(self) -> str:
        if not self._dag_log.exists():
            return "No DAG logs found"
        try:
            return self._dag_log.read_text(encoding="utf-8")
        except OSError as exc:
            raise DagError(f"Failed to read DAG log: {exc}") from exc
