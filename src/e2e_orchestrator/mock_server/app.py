"""Starlette application of the mock API server.

Provides:
- /__mock/health - Readiness endpoint used by the supervisor
- /__mock/requests - Full request log
- /__mock/unmatched - Requests no fixture answered
- /__mock/stats - Request counters
- everything else - Answered from the fixture registry
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from e2e_orchestrator.config.models import HTTP_METHODS

if TYPE_CHECKING:
    from .server import MockAPIServer

logger = logging.getLogger(__name__)

ADMIN_PREFIX = "/__mock"


def _get_server(request: Request) -> MockAPIServer:
    """Get mock server from app state."""
    return request.app.state.mock_server


async def health(request: Request) -> JSONResponse:
    """GET /__mock/health - Liveness and fixture count."""
    server = _get_server(request)
    return JSONResponse({"status": "ok", "fixtures": len(server.registry)})


async def list_requests(request: Request) -> JSONResponse:
    """GET /__mock/requests - All requests answered so far."""
    server = _get_server(request)
    records = server.request_log.entries()
    return JSONResponse({"requests": [r.to_dict() for r in records], "count": len(records)})


async def list_unmatched(request: Request) -> JSONResponse:
    """GET /__mock/unmatched - Requests that matched no fixture."""
    server = _get_server(request)
    records = server.request_log.unmatched()
    return JSONResponse({"requests": [r.to_dict() for r in records], "count": len(records)})


async def stats(request: Request) -> JSONResponse:
    """GET /__mock/stats - Request counters."""
    server = _get_server(request)
    return JSONResponse(server.request_log.stats())


async def serve_fixture(request: Request) -> Response:
    """Any method, any path - Answer from the fixture registry."""
    server = _get_server(request)
    return await server.respond(request.method, request.url.path, request.url.query)


routes = [
    Route(f"{ADMIN_PREFIX}/health", health, methods=["GET"]),
    Route(f"{ADMIN_PREFIX}/requests", list_requests, methods=["GET"]),
    Route(f"{ADMIN_PREFIX}/unmatched", list_unmatched, methods=["GET"]),
    Route(f"{ADMIN_PREFIX}/stats", stats, methods=["GET"]),
    Route("/{path:path}", serve_fixture, methods=list(HTTP_METHODS)),
]


def create_app(server: MockAPIServer) -> Starlette:
    """Create the Starlette app bound to ``server``."""
    app = Starlette(routes=routes)
    app.state.mock_server = server
    return app
