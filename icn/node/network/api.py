"""
ICN Node HTTP API - read-side query surface plus peer vertex intake.

Endpoints:
- GET  /status              - Node id, version, ledger length (peers probe this)
- GET  /dag_info            - Ledger summary
- GET  /dag_vertex?id=      - One vertex with parents, children and height
- GET  /proposals           - Typed proposal index
- GET  /proposal?id=        - One proposal with status and execution record
- POST /dag/vertices        - Vertex pushed by a federation peer

Every response uses the envelope {success, data, error, timestamp}.

Peer vertices are recorded in `logs/peer_vertices.log` as JSON lines. They
never enter the local ledger, which only holds locally executed proposals.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web

from ..config import ApiConfig
from ..errors import DagError, NodeError, StateError
from ..ledger import VertexLedger
from ..models import SYSTEM_VERSION, Proposal, format_timestamp, utcnow
from ..queue import ProposalStore
from ..state import NodeStateManager
from .identity import NodeIdentity

logger = logging.getLogger(__name__)

PEER_VERTEX_FIELDS = ("id", "timestamp", "proposal_id", "parents", "hash", "submitter")


# =============================================================================
# Response envelope
# =============================================================================

@dataclass
class ApiResponse:
    """Standard API response. `status` is the HTTP code and not part of the body."""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    timestamp: int = 0
    status: int = 200

    def __post_init__(self):
        if self.timestamp == 0:
            self.timestamp = int(time.time() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def success_response(data: Any, status_code: int = 200) -> ApiResponse:
    return ApiResponse(success=True, data=data, status=status_code)


def error_response(error: str, status_code: int = 400) -> ApiResponse:
    return ApiResponse(success=False, error=error, status=status_code)


# =============================================================================
# Handlers
# =============================================================================

class NodeApiHandlers:
    """Request handlers, independent of the HTTP framework."""

    def __init__(
        self,
        state: NodeStateManager,
        store: ProposalStore,
        ledger: VertexLedger,
        peer_vertex_log: Path,
    ) -> None:
        self._state = state
        self._store = store
        self._ledger = ledger
        self._peer_vertex_log = Path(peer_vertex_log)

    def handle_status(self) -> ApiResponse:
        snapshot = self._state.snapshot()
        return success_response({
            "node_id": snapshot.node_id,
            "version": SYSTEM_VERSION,
            "vertex_count": len(snapshot.dag_vertices),
            "executed_count": len(snapshot.executed_proposals),
            "last_updated": format_timestamp(snapshot.last_updated),
        })

    def handle_dag_info(self) -> ApiResponse:
        return success_response({"dag_info": self._ledger.summary().to_dict()})

    def handle_dag_vertex(self, vertex_id: Optional[str]) -> ApiResponse:
        if not vertex_id:
            return error_response("Missing required parameter: id")
        try:
            return success_response(self._ledger.describe(vertex_id))
        except DagError as exc:
            return error_response(str(exc), 404)

    def handle_proposals(self) -> ApiResponse:
        index = self._store.rebuild_index()
        proposals = [
            {"id": pid, "status": status.value}
            for pid, status in sorted(index.items())
        ]
        return success_response({"proposals": proposals, "count": len(proposals)})

    def handle_proposal(self, proposal_id: Optional[str]) -> ApiResponse:
        if not proposal_id:
            return error_response("Missing required parameter: id")
        status = self._store.status_of(proposal_id)
        path = self._store.find(proposal_id)
        if status is None or path is None:
            return error_response(f"Proposal not found: {proposal_id}", 404)

        try:
            proposal = Proposal.from_file(proposal_id, status, path)
        except OSError as exc:
            return error_response(f"Failed to read proposal {proposal_id}: {exc}", 500)

        vertex = next((v for v in self._ledger.all() if v.proposal_id == proposal_id), None)
        data = proposal.to_dict()
        data.update({
            "executed": self._state.is_executed(proposal_id),
            "vertex_id": vertex.id if vertex else None,
            "votes": [],
        })
        return success_response(data)

    def handle_peer_vertex(self, body: Any) -> ApiResponse:
        if not isinstance(body, dict):
            return error_response("Vertex must be a JSON object")
        missing = [f for f in PEER_VERTEX_FIELDS if f not in body]
        if missing:
            return error_response(f"Vertex missing fields: {', '.join(missing)}")
        if not isinstance(body["parents"], list):
            return error_response("Vertex parents must be a list")

        signature = body.get("signature")
        verified = False
        if signature is not None:
            public_key = body.get("public_key")
            if not isinstance(public_key, str) or not isinstance(signature, str):
                return error_response("Signed vertex requires public_key and signature strings")
            unsigned = {f: body[f] for f in PEER_VERTEX_FIELDS}
            if not NodeIdentity.verify_payload(public_key, unsigned, signature):
                return error_response("Invalid vertex signature")
            verified = True

        record = {f: body[f] for f in PEER_VERTEX_FIELDS}
        record["verified"] = verified
        record["received_at"] = format_timestamp(utcnow())
        try:
            self._peer_vertex_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self._peer_vertex_log, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            logger.error(f"Failed to record peer vertex {body['id']}: {exc}")
            return error_response("Failed to record vertex", 500)

        logger.info(f"Received vertex {body['id']} from {body['submitter']}")
        return success_response({"accepted": body["id"]}, 202)


# =============================================================================
# aiohttp application
# =============================================================================

def create_api_app(handlers: NodeApiHandlers) -> web.Application:
    """Create aiohttp application with routes."""
    app = web.Application()

    def json_response(resp: ApiResponse) -> web.Response:
        return web.json_response(resp.to_dict(), status=resp.status)

    def guarded(handle):
        async def route(request: web.Request) -> web.Response:
            try:
                return json_response(await handle(request))
            except StateError as exc:
                logger.error(f"API request {request.path} failed: {exc}")
                return json_response(error_response(str(exc), 503))
            except NodeError as exc:
                logger.error(f"API request {request.path} failed: {exc}")
                return json_response(error_response(str(exc), 500))
        return route

    async def status(request: web.Request) -> ApiResponse:
        return handlers.handle_status()

    async def dag_info(request: web.Request) -> ApiResponse:
        return handlers.handle_dag_info()

    async def dag_vertex(request: web.Request) -> ApiResponse:
        return handlers.handle_dag_vertex(request.query.get("id"))

    async def proposals(request: web.Request) -> ApiResponse:
        return handlers.handle_proposals()

    async def proposal(request: web.Request) -> ApiResponse:
        return handlers.handle_proposal(request.query.get("id"))

    async def peer_vertex(request: web.Request) -> ApiResponse:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_response("Request body must be JSON")
        return handlers.handle_peer_vertex(body)

    app.router.add_get("/status", guarded(status))
    app.router.add_get("/dag_info", guarded(dag_info))
    app.router.add_get("/dag_vertex", guarded(dag_vertex))
    app.router.add_get("/proposals", guarded(proposals))
    app.router.add_get("/proposal", guarded(proposal))
    app.router.add_post("/dag/vertices", guarded(peer_vertex))
    return app


class NodeApiServer:
    """HTTP API server for the node."""

    def __init__(self, handlers: NodeApiHandlers, config: Optional[ApiConfig] = None):
        self._handlers = handlers
        self._config = config or ApiConfig()
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = create_api_app(self._handlers)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info(f"API server started on http://{self._config.host}:{self._config.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")
