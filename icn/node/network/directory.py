"""
ICN Peer Directory - where the broadcaster learns about peers.

Sources:
1. Seed peers from configuration
2. Peers persisted in the node state document
3. Optionally, an operator script that prints the mesh as JSON

`last_seen` is kept in memory only and reflects the most recent successful
probe; it is not a persisted liveness claim.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Sequence

from ..errors import ExternalProcessError, SerializationError
from ..external import run_command
from ..models import Peer
from ..state import NodeStateManager

logger = logging.getLogger(__name__)


def parse_seed(seed: str) -> Peer:
    """Parse `name=http://host:port` or a bare address into a Peer."""
    name, sep, address = seed.partition("=")
    if not sep:
        name, address = seed, seed
    address = address.strip().rstrip("/")
    name = name.strip()
    return Peer(id=name, name=name, address=address)


class PeerDirectory(ABC):
    """Abstract source of federation peers."""

    @abstractmethod
    async def list_peers(self) -> List[Peer]:
        """Known peers, with last_seen from the latest probe if any."""

    @abstractmethod
    def record_seen(self, peer: Peer, when: datetime) -> None:
        """Note a successful probe of `peer`."""


class StatePeerDirectory(PeerDirectory):
    """Seed peers merged with the peers stored in the node state."""

    def __init__(self, state: NodeStateManager, seeds: Sequence[str] = ()) -> None:
        self._state = state
        self._seeds = [parse_seed(s) for s in seeds if s.strip()]
        self._last_seen: Dict[str, datetime] = {}

    async def list_peers(self) -> List[Peer]:
        merged: Dict[str, Peer] = {}
        for peer in self._seeds + self._state.peers():
            merged.setdefault(peer.address, peer)
        peers = []
        for peer in merged.values():
            peers.append(Peer(
                id=peer.id,
                name=peer.name,
                address=peer.address,
                last_seen=self._last_seen.get(peer.address),
            ))
        return peers

    def record_seen(self, peer: Peer, when: datetime) -> None:
        self._last_seen[peer.address] = when

    def replace_persisted(self, peers: List[Peer]) -> None:
        stored = [Peer(id=p.id, name=p.name, address=p.address) for p in peers]
        if stored != self._state.peers():
            self._state.set_peers(stored)


class ScriptPeerDirectory(PeerDirectory):
    """
    Peers reported by an external mesh-status command run with `--json`.

    The command prints either a list of peers or an object with a `peers`
    list. Results are persisted; when the command fails the persisted and
    seed peers are used instead.
    """

    def __init__(self, command: str, fallback: StatePeerDirectory, timeout: float = 30.0) -> None:
        self._command = command
        self._fallback = fallback
        self._timeout = timeout

    @staticmethod
    def _parse(stdout: str) -> List[Peer]:
        try:
            data: Any = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise SerializationError(f"Failed to parse peer list: {exc}") from exc
        if isinstance(data, dict):
            data = data.get("peers", [])
        if not isinstance(data, list):
            raise SerializationError("Peer list must be a JSON list")
        return [Peer.from_dict(item) for item in data]

    async def list_peers(self) -> List[Peer]:
        try:
            result = await run_command(self._command, ["--json"], timeout=self._timeout)
            peers = self._parse(result.stdout)
        except (ExternalProcessError, SerializationError) as exc:
            logger.warning(f"Peer discovery command failed, using stored peers: {exc}")
            return await self._fallback.list_peers()

        self._fallback.replace_persisted(peers)
        return await self._fallback.list_peers()

    def record_seen(self, peer: Peer, when: datetime) -> None:
        self._fallback.record_seen(peer, when)
