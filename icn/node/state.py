"""
ICN Persistent Node State - the single lock-guarded state document.

Every mutation is a full read-modify-write cycle:

    lock -> copy -> fn(copy) -> stamp last_updated -> backup old file
         -> atomic write of the whole document -> swap in memory -> unlock

The in-memory document only changes after the write returned cleanly, so a
failed write leaves memory and disk on the previous version (the backup of
that version is on disk too). Writes rewrite the whole document, which is
O(document size) per change.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import secrets
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar

from .errors import SerializationError, StateError
from .models import NodeState, Peer, VertexEntry, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def atomic_write_text(path: Path, text: str, mode: int = 0o644) -> None:
    """Write temp file, fsync, then rename over `path`."""
    tmp_path = path.with_name(f".{path.name}.tmp.{os.getpid()}.{secrets.token_hex(8)}")
    fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    finally:
        tmp_path.unlink(missing_ok=True)


class NodeStateManager:
    """
    Owner of the NodeState document.

    Other components go through read()/mutate() or the named accessors below;
    nothing else opens the state file.
    """

    def __init__(
        self,
        state_file: Path,
        backup_dir: Path,
        *,
        max_backups: int = 50,
        lock_timeout: float = 10.0,
    ) -> None:
        self._state_file = Path(state_file)
        self._backup_dir = Path(backup_dir)
        self._max_backups = max_backups
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._state: Optional[NodeState] = None

    @property
    def state_file(self) -> Path:
        return self._state_file

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def load(self) -> NodeState:
        """Restore the document from disk, or create and persist defaults."""
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateError(f"Failed to create state directory: {exc}") from exc

        with self._locked():
            if self._state_file.exists():
                self._state = self._read_file()
                logger.info(
                    f"Loaded node state {self._state.node_id} "
                    f"({len(self._state.dag_vertices)} vertices)"
                )
            else:
                state = NodeState()
                self._write(state)
                self._state = state
                logger.info(f"Initialized new node state {state.node_id}")
            return copy.deepcopy(self._state)

    def _read_file(self) -> NodeState:
        try:
            with open(self._state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as exc:
            raise StateError(f"Failed to open state file: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise StateError(f"Failed to parse state file: {exc}") from exc
        try:
            return NodeState.from_dict(data)
        except SerializationError as exc:
            raise StateError(f"Failed to parse state file: {exc}") from exc

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StateError(f"Failed to lock state within {self._lock_timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def _require_loaded(self) -> NodeState:
        if self._state is None:
            raise StateError("Node state not loaded")
        return self._state

    def read(self, fn: Callable[[NodeState], T]) -> T:
        """Run a read-only projection under the lock."""
        with self._locked():
            return fn(copy.deepcopy(self._require_loaded()))

    def mutate(self, fn: Callable[[NodeState], T]) -> T:
        """Apply `fn` to a working copy and persist the whole document."""
        with self._locked():
            working = copy.deepcopy(self._require_loaded())
            result = fn(working)
            working.last_updated = utcnow()
            self._write(working)
            self._state = working
            return result

    def _write(self, state: NodeState) -> None:
        try:
            text = json.dumps(state.to_dict(), indent=2)
        except (TypeError, ValueError) as exc:
            raise StateError(f"Failed to serialize state: {exc}") from exc

        if self._state_file.exists():
            self._backup()

        try:
            atomic_write_text(self._state_file, text)
        except OSError as exc:
            raise StateError(f"Failed to write state file: {exc}") from exc

    def _backup(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_file = self._backup_dir / f"state_{stamp}.json"
        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self._state_file, backup_file)
        except OSError as exc:
            raise StateError(f"Failed to create backup: {exc}") from exc
        self._prune_backups()
        return backup_file

    def _prune_backups(self) -> None:
        backups = sorted(self._backup_dir.glob("state_*.json"))
        for stale in backups[: max(0, len(backups) - self._max_backups)]:
            try:
                stale.unlink()
            except OSError as exc:
                logger.warning(f"Could not prune backup {stale.name}: {exc}")

    def backups(self) -> List[Path]:
        return sorted(self._backup_dir.glob("state_*.json"))

    # -------------------------------------------------------------------------
    # Named accessors
    # -------------------------------------------------------------------------

    @property
    def node_id(self) -> str:
        return self.read(lambda s: s.node_id)

    def snapshot(self) -> NodeState:
        return self.read(lambda s: s)

    def executed_proposals(self) -> List[str]:
        return self.read(lambda s: list(s.executed_proposals))

    def is_executed(self, proposal_id: str) -> bool:
        return self.read(lambda s: proposal_id in s.executed_proposals)

    def vertices(self) -> List[VertexEntry]:
        return self.read(lambda s: list(s.dag_vertices))

    def vertex_count(self) -> int:
        return self.read(lambda s: len(s.dag_vertices))

    def peers(self) -> List[Peer]:
        return self.read(lambda s: list(s.peers))

    # -------------------------------------------------------------------------
    # Named mutators
    # -------------------------------------------------------------------------

    def add_executed_proposal(self, proposal_id: str) -> bool:
        """Record `proposal_id` as executed. Returns False if already present."""
        def _add(state: NodeState) -> bool:
            return mark_executed(state, proposal_id)

        if self.is_executed(proposal_id):
            return False
        return self.mutate(_add)

    def set_peers(self, peers: List[Peer]) -> None:
        def _set(state: NodeState) -> None:
            state.peers = list(peers)

        self.mutate(_set)

    def set_active_connection(self, address: str) -> None:
        def _set(state: NodeState) -> None:
            state.active_connection = address

        self.mutate(_set)


def mark_executed(state: NodeState, proposal_id: str) -> bool:
    """Add `proposal_id` to the executed set of a working copy."""
    if proposal_id in state.executed_proposals:
        return False
    state.executed_proposals.append(proposal_id)
    if proposal_id.isdigit():
        state.last_proposal_id = max(state.last_proposal_id, int(proposal_id))
    return True
