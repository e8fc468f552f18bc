"""Exception hierarchy for the test-environment orchestrator.

All orchestrator errors derive from OrchestratorError so callers (the CLI in
particular) can catch one base class and map the concrete type to an exit
code. Configuration and graph errors are raised before any process spawns;
runtime errors are raised only after teardown of whatever was started.
"""

from __future__ import annotations

from collections.abc import Sequence

__all__ = [
    "OrchestratorError",
    "ConfigError",
    "DependencyCycleError",
    "ReadinessTimeoutError",
    "ProcessCrashError",
    "FixtureConflictError",
    "SeedFailureError",
    "SubprocessTimeoutError",
    "RunTimeoutError",
    "RunCancelledError",
]


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(OrchestratorError):
    """Malformed service, fixture or seed definition.

    Attributes:
        source: File the bad definition came from (empty if not file-backed).

    """

    def __init__(self, message: str, source: str = "") -> None:
        super().__init__(message)
        self.source = source


class DependencyCycleError(ConfigError):
    """The service dependency graph contains a cycle.

    Attributes:
        cycle: Service names forming the cycle, first name repeated at the end.

    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ReadinessTimeoutError(OrchestratorError):
    """A service did not become ready in time.

    Attributes:
        service: Name of the offending service.
        timeout_s: Timeout that expired, in seconds.
        aggregate: True when the start_all() aggregate budget expired rather
            than the service's own start-to-ready timeout.
        logs: Captured output of the service at the time of failure.

    """

    def __init__(
        self,
        service: str,
        timeout_s: float,
        *,
        aggregate: bool = False,
        logs: Sequence[str] = (),
    ) -> None:
        self.service = service
        self.timeout_s = timeout_s
        self.aggregate = aggregate
        self.logs = list(logs)
        scope = "aggregate start timeout" if aggregate else "readiness timeout"
        super().__init__(f"Service '{service}' not ready: {scope} of {timeout_s:.1f}s expired")


class ProcessCrashError(OrchestratorError):
    """A managed process exited unexpectedly.

    Attributes:
        service: Name of the crashed service.
        exit_code: Process exit code (None if unknown).
        logs: Captured output of the service.

    """

    def __init__(
        self,
        service: str,
        exit_code: int | None = None,
        logs: Sequence[str] = (),
    ) -> None:
        self.service = service
        self.exit_code = exit_code
        self.logs = list(logs)
        super().__init__(f"Service '{service}' crashed with exit code {exit_code}")


class FixtureConflictError(ConfigError):
    """Two fixtures share an identical (method, pattern) pair.

    Attributes:
        method: HTTP method of the conflicting fixtures.
        pattern: Path pattern of the conflicting fixtures.
        sources: Files the two fixtures were loaded from.

    """

    def __init__(self, method: str, pattern: str, sources: Sequence[str] = ()) -> None:
        self.method = method
        self.pattern = pattern
        self.sources = list(sources)
        where = f" (in {', '.join(self.sources)})" if self.sources else ""
        super().__init__(f"Duplicate fixture for {method} {pattern}{where}")


class SeedFailureError(OrchestratorError):
    """A seed step's action failed.

    Attributes:
        step: Name of the failed seed step.
        output: Captured output of the failed action.

    """

    def __init__(self, step: str, message: str = "", output: str = "") -> None:
        self.step = step
        self.output = output
        super().__init__(message or f"Seed step '{step}' failed")


class SubprocessTimeoutError(OrchestratorError):
    """The external test command exceeded its timeout.

    Attributes:
        command: The command that was running.
        timeout_s: Timeout that expired, in seconds.

    """

    def __init__(self, command: Sequence[str], timeout_s: float) -> None:
        self.command = list(command)
        self.timeout_s = timeout_s
        super().__init__(f"Command '{' '.join(self.command)}' timed out after {timeout_s:.1f}s")


class RunTimeoutError(OrchestratorError):
    """The run's overall time budget ran out during a stage with no timeout of its own.

    Attributes:
        stage: Stage that was in progress (e.g. "seeding").
        timeout_s: The run timeout, in seconds.

    """

    def __init__(self, stage: str, timeout_s: float) -> None:
        self.stage = stage
        self.timeout_s = timeout_s
        super().__init__(f"Run timeout of {timeout_s:.1f}s exceeded during {stage}")


class RunCancelledError(OrchestratorError):
    """The run was cancelled while an operation was in flight.

    Attributes:
        reason: Why the run was cancelled (e.g. "critical service 'db' crashed").

    """

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(f"Run cancelled: {reason}" if reason else "Run cancelled")
