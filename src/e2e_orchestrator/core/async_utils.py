"""Async entry-point helpers shared by the CLI commands."""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def run_async_with_timeout(
    coro: Coroutine[Any, Any, T],
    executor_timeout: float = 10.0,
    on_signal: Callable[[str], None] | None = None,
) -> T:
    """Run a top-level coroutine like asyncio.run() with a bounded shutdown.

    Unlike asyncio.run(), executor shutdown is capped at ``executor_timeout``
    so a stuck reader thread cannot hang the CLI after teardown.

    Args:
        coro: Coroutine to execute.
        executor_timeout: Timeout in seconds for executor shutdown.
        on_signal: Called with the signal name on SIGINT/SIGTERM instead of
            raising KeyboardInterrupt; used to cancel the run token so
            teardown runs inside the loop.

    Returns:
        Result of the coroutine.

    """
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        if on_signal is not None:
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.add_signal_handler(sig, on_signal, sig.name)
        return loop.run_until_complete(coro)
    finally:
        with contextlib.suppress(Exception):
            loop.run_until_complete(loop.shutdown_asyncgens())

        try:
            loop.run_until_complete(
                asyncio.wait_for(
                    loop.shutdown_default_executor(),
                    timeout=executor_timeout,
                )
            )
        except TimeoutError:
            logger.warning(
                "Executor shutdown timed out after %.1fs - some threads may still be running",
                executor_timeout,
            )
        except Exception as e:
            logger.debug("Executor shutdown error (ignored): %s", e)

        asyncio.set_event_loop(None)
        loop.close()
