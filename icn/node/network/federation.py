"""
ICN Federation Broadcaster - best-effort distribution of committed vertices.

For every known peer:
1. GET  <address>/status         (bounded timeout, any 2xx = reachable)
2. POST <address>/dag/vertices   (only if the probe succeeded)

Remote distribution is advisory. The local commit has already happened when
broadcast() runs, so every outcome is logged and none is raised: broadcast()
always reports success. There are no retries; the next vertex is the next
chance to reach a peer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import ExternalProcessError, NodeError
from ..external import run_command
from ..models import FederationStatus, Peer, VertexEntry, format_timestamp, utcnow
from .directory import PeerDirectory
from .identity import NodeIdentity

logger = logging.getLogger(__name__)

STATUS_PATH = "/status"
VERTEX_PATH = "/dag/vertices"

_PROBE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


def vertex_payload(vertex: VertexEntry, submitter: str) -> Dict[str, Any]:
    """Wire form of a vertex as pushed to peers (without signature fields)."""
    return {
        "id": vertex.id,
        "timestamp": format_timestamp(vertex.timestamp),
        "proposal_id": vertex.proposal_id,
        "parents": list(vertex.parents),
        "hash": vertex.hash,
        "submitter": submitter,
    }


class FederationBroadcaster:
    """Pushes vertices to peers from a PeerDirectory."""

    def __init__(
        self,
        directory: PeerDirectory,
        node_id: str,
        *,
        identity: Optional[NodeIdentity] = None,
        timeout: float = 5.0,
        sync_command: Optional[str] = None,
    ) -> None:
        self._directory = directory
        self._node_id = node_id
        self._identity = identity
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._sync_command = sync_command

    def build_payload(self, vertex: VertexEntry) -> Dict[str, Any]:
        body = vertex_payload(vertex, self._node_id)
        if self._identity is not None:
            signature = self._identity.sign_payload(body)
            body["public_key"] = self._identity.public_key_b64
            body["signature"] = signature
        return body

    async def _probe(self, session: aiohttp.ClientSession, peer: Peer) -> Optional[str]:
        """None if the peer is reachable, otherwise a short reason."""
        try:
            async with session.get(f"{peer.address}{STATUS_PATH}", timeout=self._timeout) as resp:
                if 200 <= resp.status < 300:
                    return None
                return f"status {resp.status}"
        except _PROBE_ERRORS as exc:
            return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__

    async def _deliver(
        self,
        session: aiohttp.ClientSession,
        peer: Peer,
        body: Dict[str, Any],
    ) -> bool:
        reason = await self._probe(session, peer)
        if reason is not None:
            logger.debug(f"Skipping offline peer {peer.name}: {reason}")
            return False
        self._directory.record_seen(peer, utcnow())

        try:
            async with session.post(
                f"{peer.address}{VERTEX_PATH}",
                json=body,
                timeout=self._timeout,
            ) as resp:
                if 200 <= resp.status < 300:
                    logger.info(f"Broadcast vertex {body['id']} to peer {peer.name}")
                    return True
                logger.warning(f"Peer {peer.name} rejected vertex {body['id']}: status {resp.status}")
                return False
        except _PROBE_ERRORS as exc:
            logger.warning(f"Error broadcasting vertex {body['id']} to peer {peer.name}: {exc}")
            return False

    async def broadcast(self, vertex: VertexEntry) -> bool:
        """Offer `vertex` to every reachable peer. Always returns True."""
        try:
            peers = await self._directory.list_peers()
        except NodeError as exc:
            logger.warning(f"Could not list peers for vertex {vertex.id}: {exc}")
            return True

        if peers:
            body = self.build_payload(vertex)
            async with aiohttp.ClientSession() as session:
                outcomes = await asyncio.gather(
                    *(self._deliver(session, peer, body) for peer in peers),
                    return_exceptions=True,
                )
            for peer, outcome in zip(peers, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning(f"Unexpected error broadcasting to {peer.name}: {outcome!r}")
            delivered = sum(1 for o in outcomes if o is True)
            logger.info(f"Vertex {vertex.id} delivered to {delivered}/{len(peers)} peers")

        if self._sync_command:
            try:
                await run_command(self._sync_command, ["--sync"], timeout=60.0)
            except ExternalProcessError as exc:
                logger.warning(f"Federation sync command failed: {exc}")

        return True

    async def health(self) -> FederationStatus:
        """Probe every peer and split them into online and offline."""
        now = utcnow()
        peers = await self._directory.list_peers()
        online: List[Peer] = []
        offline: List[Peer] = []
        async with aiohttp.ClientSession() as session:
            reasons = await asyncio.gather(*(self._probe(session, peer) for peer in peers))
        for peer, reason in zip(peers, reasons):
            if reason is None:
                self._directory.record_seen(peer, now)
                online.append(Peer(id=peer.id, name=peer.name, address=peer.address, last_seen=now))
            else:
                logger.debug(f"Peer {peer.name} unreachable: {reason}")
                offline.append(peer)
        return FederationStatus(online_peers=online, offline_peers=offline, last_check=now)
