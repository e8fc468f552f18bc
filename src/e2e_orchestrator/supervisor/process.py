"""Process handles and launchers for managed services.

ProcessHandle is the supervisor's record of one service; it is mutated only
by ServiceSupervisor. Launching goes through the ProcessLauncher protocol so
tests can inject a fake launcher and never spawn real processes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from e2e_orchestrator.config.models import ServiceSpec
from e2e_orchestrator.core.processes import spawn

logger = logging.getLogger(__name__)

# Default ring buffer size for captured service output
DEFAULT_LOG_BUFFER_SIZE = 500


class ProcessState(StrEnum):
    """Lifecycle state of a managed service.

    Valid transitions:
        PENDING → STARTING (process spawned)
        STARTING → READY (readiness probe succeeded)
        STARTING → CRASHED (exited before ready)
        STARTING → STOPPING (start aborted)
        READY → STOPPING (teardown)
        READY → CRASHED (unexpected exit)
        STOPPING → STOPPED (process gone)
    """

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


VALID_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.PENDING: frozenset({ProcessState.STARTING}),
    ProcessState.STARTING: frozenset(
        {ProcessState.READY, ProcessState.CRASHED, ProcessState.STOPPING}
    ),
    ProcessState.READY: frozenset({ProcessState.STOPPING, ProcessState.CRASHED}),
    ProcessState.STOPPING: frozenset({ProcessState.STOPPED}),
    ProcessState.STOPPED: frozenset(),
    ProcessState.CRASHED: frozenset(),
}


class LaunchedProcess(Protocol):
    """Minimal view of a running OS process."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def output(self) -> AsyncIterator[str]: ...


class ProcessLauncher(Protocol):
    """Spawns the process for a service spec."""

    async def launch(self, spec: ServiceSpec, env: Mapping[str, str]) -> LaunchedProcess: ...


class SubprocessLauncher:
    """Default launcher: one OS process per service."""

    async def launch(self, spec: ServiceSpec, env: Mapping[str, str]) -> LaunchedProcess:
        logger.debug("Launching %s: %s", spec.name, " ".join(spec.argv))
        return await spawn(spec.argv, env, cwd=spec.cwd)


@dataclass
class ProcessHandle:
    """Supervisor-owned record of one service.

    Attributes:
        spec: Service configuration.
        state: Current lifecycle state.
        process: Launched process, None until spawned.
        log_buffer: Ring buffer of captured output lines.
        exit_code: Exit code once the process has exited.
        start_index: Position in the start order, None until spawned.
        started_at: When the process was spawned.
        ready_at: When the readiness probe succeeded.
        stopped_at: When the process reached stopped or crashed.
        exited: Set once the process has exited.

    """

    spec: ServiceSpec
    state: ProcessState = ProcessState.PENDING
    process: LaunchedProcess | None = None
    log_buffer: deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_LOG_BUFFER_SIZE))
    exit_code: int | None = None
    start_index: int | None = None
    started_at: datetime | None = None
    ready_at: datetime | None = None
    stopped_at: datetime | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def critical(self) -> bool:
        return self.spec.critical

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def transition(self, new_state: ProcessState) -> ProcessState:
        """Move to ``new_state``, returning the previous state.

        Raises:
            RuntimeError: If the transition is not allowed.

        """
        previous = self.state
        if new_state not in VALID_TRANSITIONS[previous]:
            raise RuntimeError(
                f"Invalid transition for service '{self.name}': {previous} -> {new_state}"
            )
        self.state = new_state
        now = datetime.now(UTC)
        if new_state is ProcessState.STARTING:
            self.started_at = now
        elif new_state is ProcessState.READY:
            self.ready_at = now
        elif new_state in (ProcessState.STOPPED, ProcessState.CRASHED):
            self.stopped_at = now
        return previous

    def add_log(self, line: str) -> None:
        self.log_buffer.append(line)

    def get_logs(self, count: int | None = None) -> list[str]:
        """Get captured output, oldest first (last ``count`` lines if given)."""
        if count is None:
            return list(self.log_buffer)
        return list(self.log_buffer)[-count:]

    def summary(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self.state.value,
            "critical": self.critical,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "start_index": self.start_index,
        }
