"""Mock API server answering requests from the fixture registry.

The server is a managed service like any other: the supervisor launches it
(``orchestrate mock-server``) and probes ``/__mock/health`` for readiness.
It can also be embedded in-process through MockAPIServer.serve().

Failure injection is deterministic per run: each fixture draws from its own
random stream seeded from the run seed and the fixture's registration
index, so the n-th request to a fixture gets the same outcome in every run
with the same seed regardless of how requests to other fixtures interleave.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from pathlib import Path
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.responses import JSONResponse, PlainTextResponse, Response

from e2e_orchestrator.config.models import FixtureDefinition
from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.fixtures.registry import FixtureMatch, FixtureRegistry

from .app import create_app
from .request_log import RequestLog, RequestRecord

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8998
DEFAULT_FAILURE_BODY = {"error": "injected failure"}


def seed_from_run_id(run_id: str) -> int:
    """Derive a numeric random seed from a run identifier.

    Example:
        >>> seed_from_run_id("00000000000000000000000000000abc")
        2748

    """
    try:
        return int(run_id, 16) % (2**32)
    except ValueError:
        return sum(ord(c) * 31**i for i, c in enumerate(run_id)) % (2**32)


class FailureInjector:
    """Seeded per-fixture random streams deciding injected failures."""

    def __init__(self, seed: int) -> None:
        self.seed = seed
        self._streams: dict[int, random.Random] = {}
        self._lock = threading.Lock()

    def should_fail(self, match: FixtureMatch) -> bool:
        fixture = match.fixture
        if fixture is None or fixture.failure_rate <= 0.0:
            return False
        if fixture.failure_rate >= 1.0:
            return True
        with self._lock:
            stream = self._streams.get(match.index)
            if stream is None:
                stream = random.Random(f"{self.seed}:{match.index}")
                self._streams[match.index] = stream
            return stream.random() < fixture.failure_rate


def _build_response(status: int, body: Any, headers: dict[str, str]) -> Response:
    if body is None:
        return Response(status_code=status, headers=headers)
    if isinstance(body, str):
        return PlainTextResponse(body, status_code=status, headers=headers)
    return JSONResponse(body, status_code=status, headers=headers)


class MockAPIServer:
    """HTTP server answering requests from an immutable FixtureRegistry.

    Attributes:
        registry: Fixture snapshot, never modified while serving.
        host: Bind address.
        port: Bind port.
        seed: Run-scoped random seed for failure injection.
        request_log: Append-only log of answered requests.

    """

    def __init__(
        self,
        registry: FixtureRegistry,
        *,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        seed: int = 0,
    ) -> None:
        self.registry = registry
        self.host = host
        self.port = port
        self.seed = seed
        self.request_log = RequestLog()
        self._injector = FailureInjector(seed)
        self._app: Starlette | None = None
        self._server: uvicorn.Server | None = None

    @classmethod
    def from_directory(cls, fixtures_dir: Path, **kwargs: Any) -> MockAPIServer:
        """Load fixtures from ``fixtures_dir`` and build a server."""
        return cls(FixtureRegistry.load(fixtures_dir), **kwargs)

    @property
    def app(self) -> Starlette:
        if self._app is None:
            self._app = create_app(self)
        return self._app

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def started(self) -> bool:
        return self._server is not None and self._server.started

    async def respond(self, method: str, path: str, query: str = "") -> Response:
        """Answer one request.

        Args:
            method: HTTP method.
            path: Request path.
            query: Raw query string (logged only; matching ignores it).

        Returns:
            The fixture's success or failure response, or a 404 diagnostic.

        """
        started = time.monotonic()
        match = self.registry.match(method, path)

        if not match.matched:
            logger.warning("Unmatched mock request: %s %s", method, path)
            response = JSONResponse(
                {"error": "no fixture matched", "method": method, "path": path},
                status_code=404,
            )
            self._record(method, path, query, 404, None, False, started)
            return response

        fixture: FixtureDefinition = match.fixture  # type: ignore[assignment]
        if fixture.latency_ms > 0:
            await asyncio.sleep(fixture.latency_s)

        failed = self._injector.should_fail(match)
        if failed:
            body = fixture.failure_body if fixture.failure_body is not None else DEFAULT_FAILURE_BODY
            response = _build_response(fixture.failure_status, body, {})
            logger.info("Injected failure for %s %s (%d)", method, path, fixture.failure_status)
        else:
            response = _build_response(fixture.status, fixture.body, dict(fixture.headers))

        self._record(method, path, query, response.status_code, fixture.path, failed, started)
        return response

    def _record(
        self,
        method: str,
        path: str,
        query: str,
        status: int,
        fixture: str | None,
        failed: bool,
        started: float,
    ) -> None:
        self.request_log.append(
            RequestRecord(
                method=method,
                path=path,
                query=query,
                status=status,
                fixture=fixture,
                injected_failure=failed,
                duration_ms=(time.monotonic() - started) * 1000.0,
            )
        )

    async def serve(self, cancel: CancellationToken | None = None) -> None:
        """Serve until stopped or ``cancel`` fires.

        Args:
            cancel: Token requesting graceful shutdown.

        """
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        if cancel is not None:
            cancel.add_callback(lambda _reason: self.request_stop())

        logger.info(
            "Mock API server serving %d fixture(s) on %s (seed=%d)",
            len(self.registry),
            self.url,
            self.seed,
        )
        try:
            await self._server.serve()
        finally:
            stats = self.request_log.stats()
            logger.info(
                "Mock API server stopped: %d request(s), %d unmatched",
                stats["total"],
                stats["unmatched"],
            )

    def request_stop(self) -> None:
        """Ask a running server to exit gracefully."""
        if self._server is not None:
            self._server.should_exit = True
