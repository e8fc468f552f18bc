"""Tests for CancellationToken."""

import asyncio

import pytest

from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.core.exceptions import RunCancelledError


class TestCancel:
    """Test cancel() and callbacks."""

    def test_cancel_is_idempotent(self) -> None:
        """Only the first reason is kept and callbacks run once."""
        token = CancellationToken()
        calls: list[str] = []
        token.add_callback(calls.append)

        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"
        assert calls == ["first"]

    def test_callback_after_cancel_runs_immediately(self) -> None:
        token = CancellationToken()
        token.cancel("done")
        calls: list[str] = []

        token.add_callback(calls.append)

        assert calls == ["done"]

    def test_failing_callback_does_not_block_others(self) -> None:
        token = CancellationToken()
        calls: list[str] = []

        def boom(_reason: str) -> None:
            raise ValueError("boom")

        token.add_callback(boom)
        token.add_callback(calls.append)
        token.cancel("x")

        assert calls == ["x"]

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(RunCancelledError, match="stop"):
            token.raise_if_cancelled()


class TestRace:
    """Test race() and sleep()."""

    @pytest.mark.asyncio
    async def test_race_returns_result(self) -> None:
        token = CancellationToken()

        async def compute() -> int:
            await asyncio.sleep(0)
            return 42

        assert await token.race(compute()) == 42

    @pytest.mark.asyncio
    async def test_race_cancels_inner_task(self) -> None:
        token = CancellationToken()
        inner_cancelled = asyncio.Event()

        async def long_wait() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                inner_cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.02, token.cancel, "abort")
        with pytest.raises(RunCancelledError, match="abort"):
            await token.race(long_wait())

        assert inner_cancelled.is_set()

    @pytest.mark.asyncio
    async def test_race_on_cancelled_token_raises_immediately(self) -> None:
        token = CancellationToken()
        token.cancel("already")

        with pytest.raises(RunCancelledError):
            await token.race(asyncio.sleep(10))

    @pytest.mark.asyncio
    async def test_race_propagates_inner_error(self) -> None:
        token = CancellationToken()

        async def fail() -> None:
            raise ValueError("inner")

        with pytest.raises(ValueError, match="inner"):
            await token.race(fail())

    @pytest.mark.asyncio
    async def test_sleep_wakes_early(self) -> None:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, token.cancel, "wake")
        start = loop.time()

        with pytest.raises(RunCancelledError):
            await token.sleep(10)

        assert loop.time() - start < 1.0

    @pytest.mark.asyncio
    async def test_wait(self) -> None:
        token = CancellationToken()
        asyncio.get_running_loop().call_soon(token.cancel, "now")
        await asyncio.wait_for(token.wait(), timeout=1.0)
        assert token.cancelled
