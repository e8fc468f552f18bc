"""End-to-end run coordination.

One run: load and validate every input (no process is spawned if anything
is malformed), start the service graph, apply seeds, run the external test
command, and always tear the services down. The outcome is mapped to the
process exit code returned by ``orchestrate run``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from e2e_orchestrator.cli_utils import (
    EXIT_INTERRUPTED,
    EXIT_SETUP_FAILED,
    EXIT_SUCCESS,
    EXIT_TESTS_FAILED,
    EXIT_TIMEOUT,
)
from e2e_orchestrator.config.loader import load_seeds, load_services
from e2e_orchestrator.config.models import (
    ReadinessDescriptor,
    ReadinessKind,
    SeedStep,
    ServiceSpec,
)
from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.core.context import DEGRADED_SERVICES, MOCK_API_URL, RunContext
from e2e_orchestrator.core.exceptions import (
    ConfigError,
    OrchestratorError,
    ReadinessTimeoutError,
    RunCancelledError,
    RunTimeoutError,
    SubprocessTimeoutError,
)
from e2e_orchestrator.fixtures.registry import FixtureRegistry
from e2e_orchestrator.mock_server.app import ADMIN_PREFIX
from e2e_orchestrator.mock_server.server import DEFAULT_HOST, DEFAULT_PORT, seed_from_run_id
from e2e_orchestrator.readiness.probe import ReadinessProbe
from e2e_orchestrator.runner.adapter import TestRunnerAdapter
from e2e_orchestrator.runner.results import RunResult
from e2e_orchestrator.seeding.ledger import SeedLedger
from e2e_orchestrator.seeding.runner import ActionExecutor, SeedRunner, run_shell_action
from e2e_orchestrator.supervisor.process import ProcessLauncher
from e2e_orchestrator.supervisor.supervisor import (
    DEFAULT_GRACE_PERIOD_S,
    ProbeFactory,
    ServiceSupervisor,
    validate_graph,
)

logger = logging.getLogger(__name__)

AUTO_MOCK_SERVICE = "mock-api"
SERVICE_LOGS_DIR = "services"
SUMMARY_FILENAME = "run-summary.json"


@dataclass(frozen=True)
class RunSettings:
    """Inputs of one orchestrated run.

    Attributes:
        services_path: Service graph file.
        fixtures_dir: Fixture directory for the mock API server.
        seeds_path: Seed file or directory.
        timeout_s: Aggregate budget for the whole run (None for no limit).
        artifacts_dir: Where logs, reports and screenshots are collected.
        run_id: Reuse a run id instead of generating one.
        state_dir: Directory persisting the seed ledger across processes.
        mock_host: Bind address of the mock API server.
        mock_port: Port of the mock API server.
        mock_seed: Failure-injection seed (derived from the run id if None).
        report_path: JUnit XML report written by the test command.
        grace_period_s: Seconds between SIGTERM and SIGKILL on teardown.

    """

    services_path: Path
    fixtures_dir: Path | None = None
    seeds_path: Path | None = None
    timeout_s: float | None = None
    artifacts_dir: Path = Path("artifacts")
    run_id: str | None = None
    state_dir: Path | None = None
    mock_host: str = DEFAULT_HOST
    mock_port: int = DEFAULT_PORT
    mock_seed: int | None = None
    report_path: Path | None = None
    grace_period_s: float = DEFAULT_GRACE_PERIOD_S

    @property
    def mock_url(self) -> str:
        return f"http://{self.mock_host}:{self.mock_port}"


@dataclass(frozen=True)
class RunPlan:
    """Validated inputs ready to execute.

    Attributes:
        services: Service specs with mock services resolved.
        start_order: Topological start order.
        registry: Loaded fixtures (None without a fixture directory).
        seeds: Seed steps in load order.
        mock_url: Base URL of the mock API server, if one is managed.

    """

    services: list[ServiceSpec]
    start_order: list[str]
    registry: FixtureRegistry | None = None
    seeds: list[SeedStep] = field(default_factory=list)
    mock_url: str | None = None


@dataclass(frozen=True)
class RunOutcome:
    """Final outcome of a run.

    Attributes:
        exit_code: Process exit code (0 passed, 1 tests failed, 2 setup
            failure, 3 timeout, 130 interrupted).
        run_id: Identifier of the run.
        result: Test command result, if it ran to completion.
        error: The error that ended the run early, if any.
        degraded: Non-critical services that crashed during the run.

    """

    exit_code: int
    run_id: str
    result: RunResult | None = None
    error: OrchestratorError | None = None
    degraded: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "exit_code": self.exit_code,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "degraded": list(self.degraded),
            "result": self.result.to_dict() if self.result else None,
        }


def mock_server_command(fixtures_dir: Path, host: str, port: int, seed: int) -> list[str]:
    """Command line running the built-in mock API server as a subprocess."""
    return [
        sys.executable,
        "-m",
        "e2e_orchestrator",
        "mock-server",
        "--fixtures",
        str(fixtures_dir),
        "--host",
        host,
        "--port",
        str(port),
        "--seed",
        str(seed),
    ]


def _resolve_mock_services(
    services: list[ServiceSpec],
    settings: RunSettings,
    seed: int,
) -> tuple[list[ServiceSpec], str | None]:
    """Fill in the command of the mock service, adding one if needed.

    Raises:
        ConfigError: A mock service without a fixture directory, or more
            than one mock service.

    """
    mocks = [s for s in services if s.mock]
    if len(mocks) > 1:
        raise ConfigError(
            f"Only one mock service is supported, got: {', '.join(s.name for s in mocks)}",
            source=str(settings.services_path),
        )
    if mocks and settings.fixtures_dir is None:
        raise ConfigError(
            f"Service '{mocks[0].name}' is a mock service but no fixture directory was given",
            source=str(settings.services_path),
        )
    if settings.fixtures_dir is None:
        return services, None

    argv = mock_server_command(settings.fixtures_dir, settings.mock_host, settings.mock_port, seed)
    health = ReadinessDescriptor(
        kind=ReadinessKind.HTTP,
        target=f"{settings.mock_url}{ADMIN_PREFIX}/health",
    )

    if not mocks:
        logger.info("No mock service declared - adding '%s'", AUTO_MOCK_SERVICE)
        mock = ServiceSpec(name=AUTO_MOCK_SERVICE, mock=True, readiness=health)
        services = [*services, mock]

    resolved = []
    for spec in services:
        if spec.mock:
            spec = spec.model_copy(
                update={
                    "command": argv[0],
                    "args": tuple(argv[1:]),
                    "readiness": spec.readiness or health,
                }
            )
        resolved.append(spec)
    return resolved, settings.mock_url


def load_plan(settings: RunSettings, seed: int = 0) -> RunPlan:
    """Load and validate every input of a run.

    Args:
        settings: Run inputs.
        seed: Failure-injection seed passed to the mock server.

    Returns:
        Validated RunPlan.

    Raises:
        ConfigError: Malformed input, unknown dependency or fixture conflict.
        DependencyCycleError: Cycle in the service graph.

    """
    services = load_services(settings.services_path)

    registry = None
    if settings.fixtures_dir is not None:
        registry = FixtureRegistry.load(settings.fixtures_dir)

    seeds: list[SeedStep] = []
    if settings.seeds_path is not None:
        seeds = load_seeds(settings.seeds_path)

    services, mock_url = _resolve_mock_services(services, settings, seed)
    start_order = validate_graph(services)
    return RunPlan(
        services=services,
        start_order=start_order,
        registry=registry,
        seeds=seeds,
        mock_url=mock_url,
    )


class EnvironmentOrchestrator:
    """Runs one test session against a freshly started environment.

    Attributes:
        settings: Run inputs.
        cancel_token: Cancelled on interrupt or critical crash; every wait
            of the run observes it.
        supervisor: Supervisor of the current run (set once run() starts
            services).

    """

    def __init__(
        self,
        settings: RunSettings,
        *,
        launcher: ProcessLauncher | None = None,
        probe_factory: ProbeFactory = ReadinessProbe,
        seed_executor: ActionExecutor = run_shell_action,
    ) -> None:
        self.settings = settings
        self.cancel_token = CancellationToken()
        self.supervisor: ServiceSupervisor | None = None
        self._launcher = launcher
        self._probe_factory = probe_factory
        self._seed_executor = seed_executor

    def interrupt(self, reason: str = "interrupted") -> None:
        """Cancel the run; teardown still happens."""
        logger.warning("Run interrupted (%s) - tearing down", reason)
        self.cancel_token.cancel(reason)

    async def run(self, test_command: Sequence[str]) -> RunOutcome:
        """Execute the full run.

        Args:
            test_command: External test command and its arguments.

        Returns:
            RunOutcome; orchestrator errors are reported through
            ``RunOutcome.error`` after teardown instead of being raised.

        """
        started = time.monotonic()
        deadline = started + self.settings.timeout_s if self.settings.timeout_s is not None else None
        context = RunContext.create(self.settings.artifacts_dir, self.settings.run_id)
        seed = self.settings.mock_seed
        if seed is None:
            seed = seed_from_run_id(context.run_id)
        logger.info("Run %s starting", context.run_id)

        try:
            plan = load_plan(self.settings, seed)
        except ConfigError as e:
            logger.error("Invalid configuration: %s", e)
            return self._finish(context, RunOutcome(EXIT_SETUP_FAILED, context.run_id, error=e))

        if plan.mock_url is not None:
            context.set(MOCK_API_URL, plan.mock_url)

        supervisor = ServiceSupervisor(
            self._launcher,
            env=context.environment(),
            grace_period_s=self.settings.grace_period_s,
            probe_factory=self._probe_factory,
            abort_token=self.cancel_token,
        )
        self.supervisor = supervisor

        try:
            for spec in plan.services:
                supervisor.register_service(spec)
            await supervisor.start_all(timeout=_remaining(deadline), cancel=self.cancel_token)

            if plan.seeds:
                ledger = (
                    SeedLedger.in_directory(self.settings.state_dir)
                    if self.settings.state_dir is not None
                    else SeedLedger()
                )
                seeder = SeedRunner(ledger, executor=self._seed_executor, env=context.environment())
                try:
                    async with asyncio.timeout(_remaining(deadline)):
                        await seeder.apply(plan.seeds, context.run_id, cancel=self.cancel_token)
                except TimeoutError:
                    logger.error("Run timeout expired while seeding")
                    raise RunTimeoutError("seeding", self.settings.timeout_s or 0.0) from None

            adapter = TestRunnerAdapter(
                context.artifacts_dir,
                env=context.environment(),
                report_path=self.settings.report_path,
                kill_grace_s=self.settings.grace_period_s,
            )
            result = await adapter.run(
                test_command,
                timeout=_remaining(deadline),
                cancel=self.cancel_token,
            )
            exit_code = EXIT_SUCCESS if result.success else EXIT_TESTS_FAILED
            outcome = RunOutcome(exit_code, context.run_id, result=result)
        except OrchestratorError as e:
            error = supervisor.crash_error or e
            outcome = RunOutcome(_exit_code_for(error), context.run_id, error=error)
        finally:
            await supervisor.stop_all()
            supervisor.write_logs(context.artifacts_dir / SERVICE_LOGS_DIR)

        # A critical crash may land after the test command already exited
        if supervisor.crash_error is not None and outcome.error is None:
            outcome = RunOutcome(
                EXIT_SETUP_FAILED,
                context.run_id,
                result=outcome.result,
                error=supervisor.crash_error,
            )

        context.set(DEGRADED_SERVICES, supervisor.degraded)
        degraded = tuple(supervisor.degraded)
        if degraded:
            logger.warning("Run finished degraded: %s crashed", ", ".join(degraded))
        outcome = RunOutcome(
            outcome.exit_code,
            outcome.run_id,
            result=outcome.result,
            error=outcome.error,
            degraded=degraded,
        )
        logger.info(
            "Run %s finished in %.1fs with exit code %d",
            context.run_id,
            time.monotonic() - started,
            outcome.exit_code,
        )
        return self._finish(context, outcome)

    def _finish(self, context: RunContext, outcome: RunOutcome) -> RunOutcome:
        """Write the run summary next to the artifacts."""
        try:
            context.artifacts_dir.mkdir(parents=True, exist_ok=True)
            summary = context.artifacts_dir / SUMMARY_FILENAME
            summary.write_text(json.dumps(outcome.to_dict(), indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot write run summary: %s", e)
        return outcome


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _exit_code_for(error: OrchestratorError) -> int:
    """Map a run-ending error to the process exit code."""
    if isinstance(error, ReadinessTimeoutError) and error.aggregate:
        return EXIT_TIMEOUT
    if isinstance(error, (SubprocessTimeoutError, RunTimeoutError)):
        return EXIT_TIMEOUT
    if isinstance(error, RunCancelledError):
        return EXIT_INTERRUPTED
    return EXIT_SETUP_FAILED
