"""Readiness probes for managed services.

A probe repeats one liveness check (TCP connect, HTTP GET or an external
command) with exponential backoff until it succeeds or the descriptor's
timeout elapses. Ordinary check failures are never raised: the outcome is a
ProbeResult. Only malformed descriptors raise ConfigError.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
from pydantic import ValidationError

from e2e_orchestrator.config.models import ReadinessDescriptor, ReadinessKind
from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.core.exceptions import ConfigError
from e2e_orchestrator.core.processes import signal_process_group, spawn

logger = logging.getLogger(__name__)

BACKOFF_BASE_S = 0.2
BACKOFF_MULTIPLIER = 1.5
BACKOFF_CAP_S = 5.0

# Upper bound for a single check attempt
DEFAULT_ATTEMPT_TIMEOUT_S = 2.0

# No further attempt is started with less time than this left
MIN_ATTEMPT_S = 0.05


def backoff_delays(
    base: float = BACKOFF_BASE_S,
    multiplier: float = BACKOFF_MULTIPLIER,
    cap: float = BACKOFF_CAP_S,
) -> Iterator[float]:
    """Yield an endless exponential backoff schedule.

    Example:
        >>> delays = backoff_delays()
        >>> [round(next(delays), 3) for _ in range(4)]
        [0.2, 0.3, 0.45, 0.675]

    """
    delay = base
    while True:
        yield min(delay, cap)
        delay = min(delay * multiplier, cap)


class ProbeStatus(StrEnum):
    """Outcome of a readiness wait."""

    READY = "ready"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeResult:
    """Result of ReadinessProbe.wait_ready().

    Attributes:
        status: READY or TIMEOUT.
        attempts: Number of checks performed.
        elapsed_s: Wall time spent waiting.
        last_error: Description of the last failed check, if any.

    """

    status: ProbeStatus
    attempts: int
    elapsed_s: float
    last_error: str | None = None

    @property
    def ready(self) -> bool:
        return self.status is ProbeStatus.READY


class ReadinessProbe:
    """Pluggable liveness check driven by a ReadinessDescriptor.

    Attributes:
        descriptor: Validated readiness descriptor.
        attempt_timeout_s: Upper bound for one check attempt.

    """

    def __init__(
        self,
        descriptor: ReadinessDescriptor | dict[str, Any],
        *,
        attempt_timeout_s: float = DEFAULT_ATTEMPT_TIMEOUT_S,
        http_transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the probe.

        Args:
            descriptor: Descriptor model or its raw mapping form.
            attempt_timeout_s: Upper bound for one check attempt.
            http_transport: Transport for http checks (tests inject a mock).
            clock: Monotonic clock.
            sleep: Sleep used between attempts when no token is given.

        Raises:
            ConfigError: If the descriptor is malformed.

        """
        if isinstance(descriptor, dict):
            try:
                descriptor = ReadinessDescriptor.model_validate(descriptor)
            except ValidationError as e:
                raise ConfigError(f"Malformed readiness descriptor: {e}") from e
        elif not isinstance(descriptor, ReadinessDescriptor):
            raise ConfigError(f"Unsupported readiness descriptor type: {type(descriptor).__name__}")

        self.descriptor = descriptor
        self.attempt_timeout_s = attempt_timeout_s
        self._http_transport = http_transport
        self._clock = clock
        self._sleep = sleep
        self._check: Callable[[float], Awaitable[None]] = {
            ReadinessKind.TCP: self._check_tcp,
            ReadinessKind.HTTP: self._check_http,
            ReadinessKind.COMMAND: self._check_command,
        }[descriptor.kind]
        if descriptor.kind is ReadinessKind.TCP:
            self._address = descriptor.tcp_address()

    async def check_once(self, timeout_s: float | None = None) -> str | None:
        """Perform a single check.

        Returns:
            None on success, otherwise a short description of the failure.

        """
        error, _ = await self._attempt(timeout_s)
        return error

    async def _attempt(self, timeout_s: float | None) -> tuple[str | None, bool]:
        """Run one check; the flag is True when the attempt timed out."""
        limit = self.attempt_timeout_s if timeout_s is None else min(timeout_s, self.attempt_timeout_s)
        try:
            await asyncio.wait_for(self._check(limit), timeout=max(limit, 0.001))
        except TimeoutError:
            return f"check timed out after {limit:.2f}s", True
        except (OSError, httpx.HTTPError, _CheckFailed) as e:
            return str(e) or type(e).__name__, False
        return None, False

    async def wait_ready(
        self,
        cancel: CancellationToken | None = None,
        timeout_s: float | None = None,
    ) -> ProbeResult:
        """Poll until the check succeeds or the timeout elapses.

        Args:
            cancel: Token that aborts the wait with RunCancelledError.
            timeout_s: Overrides the descriptor's timeout.

        Returns:
            ProbeResult with READY or TIMEOUT status. ``last_error`` reports
            the last attempt that ran to completion; an attempt cut short by
            the overall deadline does not replace an earlier failure.

        """
        timeout = self.descriptor.timeout_s if timeout_s is None else timeout_s
        start = self._clock()
        deadline = start + timeout
        delays = backoff_delays(base=self.descriptor.poll_interval_s)
        attempts = 0
        last_error: str | None = None

        while True:
            remaining = deadline - self._clock()
            if attempts and remaining < MIN_ATTEMPT_S:
                return self._timed_out(start, attempts, last_error)

            attempts += 1
            check = self._attempt(max(remaining, 0.001))
            error, timed_out = await (cancel.race(check) if cancel else check)
            cut_short = timed_out and remaining < self.attempt_timeout_s
            if error is not None and not (cut_short and last_error is not None):
                last_error = error
            if error is None:
                elapsed = self._clock() - start
                logger.debug(
                    "Readiness %s %s ready after %d attempt(s), %.2fs",
                    self.descriptor.kind,
                    self.descriptor.target,
                    attempts,
                    elapsed,
                )
                return ProbeResult(ProbeStatus.READY, attempts, elapsed)

            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._timed_out(start, attempts, last_error)

            delay = min(next(delays), remaining)
            if cancel is not None:
                await cancel.sleep(delay)
            else:
                await self._sleep(delay)

    def _timed_out(self, start: float, attempts: int, last_error: str | None) -> ProbeResult:
        logger.debug(
            "Readiness %s %s timed out after %d attempt(s): %s",
            self.descriptor.kind,
            self.descriptor.target,
            attempts,
            last_error,
        )
        return ProbeResult(ProbeStatus.TIMEOUT, attempts, self._clock() - start, last_error)

    async def _check_tcp(self, timeout_s: float) -> None:
        host, port = self._address
        _, writer = await asyncio.open_connection(host, port)
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    async def _check_http(self, timeout_s: float) -> None:
        async with httpx.AsyncClient(transport=self._http_transport, timeout=timeout_s) as client:
            response = await client.get(self.descriptor.target)
        low, high = self.descriptor.expected_status
        if not low <= response.status_code <= high:
            raise _CheckFailed(f"HTTP {response.status_code} outside {low}-{high}")

    async def _check_command(self, timeout_s: float) -> None:
        process = await spawn(["/bin/sh", "-c", self.descriptor.target], {}, capture_output=False)
        try:
            returncode = await process.wait()
        except asyncio.CancelledError:
            # Kill the whole group so commands the shell started die with it
            signal_process_group(process.pid, signal.SIGKILL)
            await process.wait()
            raise
        if returncode != 0:
            raise _CheckFailed(f"command exited with code {returncode}")


class _CheckFailed(Exception):
    """Check ran but reported not-ready."""
