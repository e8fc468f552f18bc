"""Cancellation token threaded through every suspension point of a run.

A single CancellationToken is created per run and passed into readiness
waits, seed actions and the test-runner subprocess wait. Cancelling it makes
every in-flight wait raise RunCancelledError concurrently, so teardown does
not depend on OS signal handlers reaching the right task.

Example:
    >>> token = CancellationToken()
    >>> result = await token.race(probe.wait_ready())
    >>> token.cancel("critical service 'db' crashed")

"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from e2e_orchestrator.core.exceptions import RunCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot, idempotent cancellation signal.

    Attributes:
        reason: Reason passed to the first cancel() call.

    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[str], None]] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        """Signal cancellation. Later calls are ignored.

        Args:
            reason: Human-readable reason, kept for error reporting.

        """
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason or "(no reason)")
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Register a callback run synchronously on cancel().

        If the token is already cancelled the callback runs immediately.
        """
        if self.cancelled:
            callback(self.reason)
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        """Raise RunCancelledError if the token is cancelled."""
        if self.cancelled:
            raise RunCancelledError(self.reason)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        Args:
            awaitable: Coroutine or future to run.

        Returns:
            The awaitable's result.

        Raises:
            RunCancelledError: If the token fired before the awaitable finished.
                The awaitable is cancelled and awaited before raising.

        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelledError(self.reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelledError(self.reason)

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early with RunCancelledError."""
        await self.race(asyncio.sleep(max(delay, 0.0)))
