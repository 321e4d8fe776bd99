"""
ICN Network Module - node identity, peer directory, federation and HTTP API.

Provides:
1. Node identity and vertex signing (Ed25519)
2. Peer directory (config seeds, persisted peers, optional mesh script)
3. Best-effort vertex broadcast and peer health checks
4. Read-side HTTP API and peer vertex intake
"""

from .identity import NodeIdentity, canonical_bytes
from .directory import PeerDirectory, StatePeerDirectory, ScriptPeerDirectory, parse_seed
from .federation import FederationBroadcaster, vertex_payload
from .api import ApiResponse, NodeApiHandlers, NodeApiServer, create_api_app

__all__ = [
    "NodeIdentity",
    "canonical_bytes",
    "PeerDirectory",
    "StatePeerDirectory",
    "ScriptPeerDirectory",
    "parse_seed",
    "FederationBroadcaster",
    "vertex_payload",
    "ApiResponse",
    "NodeApiHandlers",
    "NodeApiServer",
    "create_api_app",
]
