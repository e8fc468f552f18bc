"""Tests for the mock API server.

Requests go through httpx's ASGI transport straight into the Starlette app,
except for the serve() test which binds a real port through uvicorn.
"""

from __future__ import annotations

import asyncio
import socket
import time

import httpx
import pytest

from e2e_orchestrator.config.models import FixtureDefinition
from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.fixtures.registry import FixtureRegistry
from e2e_orchestrator.mock_server import FailureInjector, MockAPIServer, seed_from_run_id

MESSAGES = {"messages": [{"id": 1, "text": "hello"}, {"id": 2, "text": "world"}]}


def _server(*fixtures: FixtureDefinition, seed: int = 7) -> MockAPIServer:
    return MockAPIServer(FixtureRegistry(fixtures), seed=seed)


def _client(server: MockAPIServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=server.app), base_url="http://mock")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestFixtureResponses:
    """Test matched responses."""

    @pytest.mark.asyncio
    async def test_exact_body_and_status(self) -> None:
        """GET /api/v1/messages returns the configured body and status."""
        server = _server(FixtureDefinition(method="GET", path="/api/v1/messages", status=200, body=MESSAGES))

        async with _client(server) as client:
            response = await client.get("/api/v1/messages")

        assert response.status_code == 200
        assert response.json() == MESSAGES

    @pytest.mark.asyncio
    async def test_literal_fixture_preferred(self) -> None:
        server = _server(
            FixtureDefinition(method="GET", path="/users/:id", body={"name": "anyone"}),
            FixtureDefinition(method="GET", path="/users/42", body={"name": "Ada"}),
        )

        async with _client(server) as client:
            specific = await client.get("/users/42")
            generic = await client.get("/users/7")

        assert specific.json() == {"name": "Ada"}
        assert generic.json() == {"name": "anyone"}

    @pytest.mark.asyncio
    async def test_text_body_and_headers(self) -> None:
        server = _server(
            FixtureDefinition(
                method="POST",
                path="/login",
                status=201,
                body="created",
                headers={"X-Request-Id": "abc"},
            )
        )

        async with _client(server) as client:
            response = await client.post("/login", json={"user": "ada"})

        assert response.status_code == 201
        assert response.text == "created"
        assert response.headers["x-request-id"] == "abc"
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_empty_body(self) -> None:
        server = _server(FixtureDefinition(method="DELETE", path="/users/:id", status=204))

        async with _client(server) as client:
            response = await client.delete("/users/1")

        assert response.status_code == 204
        assert response.content == b""

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_latency(self) -> None:
        """latencyMs: 200 delays the response by at least 200 ms."""
        server = _server(FixtureDefinition(method="GET", path="/slow", latency_ms=200, body={}))

        async with _client(server) as client:
            start = time.monotonic()
            response = await client.get("/slow")
            elapsed = time.monotonic() - start

        assert response.status_code == 200
        assert elapsed >= 0.2
        assert server.request_log.entries()[0].duration_ms >= 200


class TestUnmatched:
    """Test requests no fixture answers."""

    @pytest.mark.asyncio
    async def test_404_diagnostic_and_log(self, caplog: pytest.LogCaptureFixture) -> None:
        server = _server(FixtureDefinition(method="GET", path="/api/v1/messages"))

        with caplog.at_level("WARNING"):
            async with _client(server) as client:
                response = await client.post("/api/v1/messages?draft=1")
                unmatched = await client.get("/__mock/unmatched")

        assert response.status_code == 404
        assert response.json() == {
            "error": "no fixture matched",
            "method": "POST",
            "path": "/api/v1/messages",
        }
        assert "Unmatched mock request: POST /api/v1/messages" in caplog.text

        records = unmatched.json()["requests"]
        assert unmatched.json()["count"] == 1
        assert records[0]["method"] == "POST"
        assert records[0]["query"] == "draft=1"
        assert records[0]["matched"] is False


class TestFailureInjection:
    """Test seeded, deterministic failure responses."""

    @pytest.mark.asyncio
    async def test_always_failing_fixture(self) -> None:
        server = _server(
            FixtureDefinition(
                method="GET",
                path="/flaky",
                body={"ok": True},
                failure_rate=1.0,
                failure_status=503,
                failure_body={"error": "maintenance"},
            )
        )

        async with _client(server) as client:
            response = await client.get("/flaky")
            stats = await client.get("/__mock/stats")

        assert response.status_code == 503
        assert response.json() == {"error": "maintenance"}
        assert stats.json()["injected_failures"] == 1

    @pytest.mark.asyncio
    async def test_default_failure_body(self) -> None:
        server = _server(FixtureDefinition(method="GET", path="/flaky", failure_rate=1.0))

        async with _client(server) as client:
            response = await client.get("/flaky")

        assert response.status_code == 500
        assert response.json() == {"error": "injected failure"}

    @pytest.mark.asyncio
    async def test_same_seed_same_outcomes(self) -> None:
        fixture = FixtureDefinition(method="GET", path="/flaky", failure_rate=0.5, body={})

        async def statuses(seed: int) -> list[int]:
            async with _client(_server(fixture, seed=seed)) as client:
                return [(await client.get("/flaky")).status_code for _ in range(30)]

        first = await statuses(1234)
        second = await statuses(1234)

        assert first == second
        assert set(first) == {200, 500}

    def test_streams_independent_per_fixture(self) -> None:
        """Outcomes of one fixture do not depend on traffic to another."""
        registry = FixtureRegistry(
            [
                FixtureDefinition(method="GET", path="/a", failure_rate=0.5),
                FixtureDefinition(method="GET", path="/b", failure_rate=0.5),
            ]
        )
        a = registry.match("GET", "/a")
        b = registry.match("GET", "/b")

        alone = FailureInjector(99)
        only_a = [alone.should_fail(a) for _ in range(20)]

        interleaved = FailureInjector(99)
        mixed = []
        for _ in range(20):
            interleaved.should_fail(b)
            mixed.append(interleaved.should_fail(a))

        assert only_a == mixed

    def test_zero_rate_never_fails(self) -> None:
        registry = FixtureRegistry([FixtureDefinition(method="GET", path="/a")])
        injector = FailureInjector(1)
        assert not any(injector.should_fail(registry.match("GET", "/a")) for _ in range(50))

    def test_seed_from_run_id(self) -> None:
        assert seed_from_run_id("00000000000000000000000000000abc") == 0xABC
        assert seed_from_run_id("nightly-42") == seed_from_run_id("nightly-42")
        assert 0 <= seed_from_run_id("nightly-42") < 2**32


class TestAdminEndpoints:
    """Test /__mock/ endpoints."""

    @pytest.mark.asyncio
    async def test_health(self) -> None:
        server = _server(
            FixtureDefinition(method="GET", path="/a"),
            FixtureDefinition(method="GET", path="/b"),
        )

        async with _client(server) as client:
            response = await client.get("/__mock/health")

        assert response.json() == {"status": "ok", "fixtures": 2}

    @pytest.mark.asyncio
    async def test_request_log_and_stats(self) -> None:
        server = _server(FixtureDefinition(method="GET", path="/users/:id", body={}))

        async with _client(server) as client:
            await client.get("/users/1")
            await client.get("/users/2")
            await client.get("/nope")
            requests = (await client.get("/__mock/requests")).json()
            stats = (await client.get("/__mock/stats")).json()

        assert requests["count"] == 3
        assert [r["path"] for r in requests["requests"]] == ["/users/1", "/users/2", "/nope"]
        assert requests["requests"][0]["fixture"] == "/users/:id"
        assert stats == {"total": 3, "matched": 2, "unmatched": 1, "injected_failures": 0}


class TestServe:
    """Test serving on a real port."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_serve_until_cancelled(self) -> None:
        port = _free_port()
        server = MockAPIServer(
            FixtureRegistry([FixtureDefinition(method="GET", path="/ping", body="pong")]),
            port=port,
        )
        token = CancellationToken()
        serving = asyncio.create_task(server.serve(token))

        try:
            for _ in range(100):
                if server.started:
                    break
                await asyncio.sleep(0.05)
            async with httpx.AsyncClient(base_url=server.url) as client:
                response = await client.get("/ping")
        finally:
            token.cancel("test done")
            await asyncio.wait_for(serving, timeout=5.0)

        assert response.text == "pong"
        assert len(server.request_log) == 1
