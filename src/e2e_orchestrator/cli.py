"""Command line interface of the test-environment orchestrator.

Commands:
- `orchestrate run`: Start the environment, run the test command, tear down
- `orchestrate validate`: Check service, fixture and seed inputs
- `orchestrate mock-server`: Serve fixtures in the foreground

Example:
    $ orchestrate run --services services.yaml --fixtures fixtures/ \\
        --seeds seeds/ --timeout 600000 -- maestro test flows/
    $ orchestrate validate --services services.yaml --fixtures fixtures/
    $ orchestrate mock-server --fixtures fixtures/ --port 8998
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.table import Table

from e2e_orchestrator import __version__
from e2e_orchestrator.cli_utils import (
    EXIT_INTERRUPTED,
    EXIT_SETUP_FAILED,
    EXIT_SUCCESS,
    _error,
    _info,
    _print_logs,
    _setup_logging,
    _success,
    _warning,
    console,
)
from e2e_orchestrator.core.async_utils import run_async_with_timeout
from e2e_orchestrator.core.exceptions import (
    ConfigError,
    DependencyCycleError,
    FixtureConflictError,
    OrchestratorError,
    ProcessCrashError,
    ReadinessTimeoutError,
    SeedFailureError,
)
from e2e_orchestrator.mock_server.server import DEFAULT_HOST, DEFAULT_PORT, MockAPIServer
from e2e_orchestrator.orchestrator import (
    EnvironmentOrchestrator,
    RunOutcome,
    RunSettings,
    load_plan,
)
from e2e_orchestrator.runner.results import FlowStatus

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="orchestrate",
    help="Bring up, seed and tear down the services an end-to-end suite depends on",
    no_args_is_help=True,
)

DEFAULT_GRACE_MS = 10_000

_FLOW_STYLES = {
    FlowStatus.PASSED: "green",
    FlowStatus.FAILED: "red",
    FlowStatus.ERROR: "red",
    FlowStatus.SKIPPED: "yellow",
}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"orchestrate {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Test-environment orchestrator for end-to-end suites."""


# =============================================================================
# Reporting
# =============================================================================


def _report_error(error: OrchestratorError) -> None:
    """Print the failing component and its captured output."""
    _error(str(error))
    if isinstance(error, DependencyCycleError):
        _info(f"Cycle: {' -> '.join(error.cycle)}")
    elif isinstance(error, FixtureConflictError):
        for source in error.sources:
            _info(f"Defined in: {source}")
    elif isinstance(error, ConfigError) and error.source:
        _info(f"In file: {error.source}")
    elif isinstance(error, (ReadinessTimeoutError, ProcessCrashError)):
        _print_logs(f"{error.service} output", error.logs)
    elif isinstance(error, SeedFailureError):
        _print_logs(f"seed {error.step} output", error.output.splitlines())


def _report_outcome(outcome: RunOutcome) -> None:
    console.print(f"[dim]Run id: {outcome.run_id}[/dim]")
    if outcome.degraded:
        _warning(f"Degraded services (crashed, non-critical): {', '.join(outcome.degraded)}")

    result = outcome.result
    if result is not None and result.flows:
        table = Table(title="Flows")
        table.add_column("Flow")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        for flow in result.flows:
            style = _FLOW_STYLES[flow.status]
            table.add_row(flow.name, f"[{style}]{flow.status.value}[/{style}]", f"{flow.duration_s:.1f}s")
        console.print(table)

    if outcome.error is not None:
        _report_error(outcome.error)
    elif result is not None and result.success:
        _success(f"Tests passed in {result.duration_s:.1f}s")
    elif result is not None:
        _error(f"Tests failed with exit code {result.exit_code}")
        if result.log_path is not None:
            _info(f"Test output: {result.log_path}")


# =============================================================================
# Commands
# =============================================================================


@app.command(name="run")
def run_command(
    test_command: list[str] = typer.Argument(
        None,
        help="Test command and arguments (after --)",
    ),
    services: Path = typer.Option(
        ...,
        "--services",
        "-s",
        help="Service graph file (YAML or JSON)",
    ),
    fixtures: Path | None = typer.Option(
        None,
        "--fixtures",
        "-f",
        help="Fixture directory for the mock API server",
    ),
    seeds: Path | None = typer.Option(
        None,
        "--seeds",
        help="Seed file or directory",
    ),
    timeout: int = typer.Option(
        ...,
        "--timeout",
        "-t",
        min=1,
        help="Aggregate run budget in milliseconds",
    ),
    artifacts: Path = typer.Option(
        Path("artifacts"),
        "--artifacts",
        "-a",
        help="Directory for logs, reports and screenshots",
    ),
    run_id: str | None = typer.Option(
        None,
        "--run-id",
        help="Reuse a run id (seeds already applied for it are skipped)",
    ),
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory persisting the seed ledger between invocations",
    ),
    mock_port: int = typer.Option(
        DEFAULT_PORT,
        "--mock-port",
        help="Port of the mock API server",
    ),
    mock_seed: int | None = typer.Option(
        None,
        "--mock-seed",
        help="Failure-injection seed (default: derived from the run id)",
    ),
    report: Path | None = typer.Option(
        None,
        "--report",
        help="JUnit XML report written by the test command",
    ),
    grace_ms: int = typer.Option(
        DEFAULT_GRACE_MS,
        "--grace-ms",
        min=0,
        help="Milliseconds between SIGTERM and SIGKILL on teardown",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Debug logging, including service output",
    ),
) -> None:
    """Start the environment, run the test command and tear everything down.

    Exit codes:
        0 = tests passed
        1 = tests failed
        2 = setup failure (config, dependency cycle, readiness, seed, crash)
        3 = aggregate timeout exceeded
        130 = interrupted

    """
    _setup_logging(verbose=verbose)

    if not test_command:
        _error("No test command given; pass it after --")
        raise typer.Exit(code=EXIT_SETUP_FAILED)

    settings = RunSettings(
        services_path=services,
        fixtures_dir=fixtures,
        seeds_path=seeds,
        timeout_s=timeout / 1000.0,
        artifacts_dir=artifacts,
        run_id=run_id,
        state_dir=state_dir,
        mock_port=mock_port,
        mock_seed=mock_seed,
        report_path=report,
        grace_period_s=grace_ms / 1000.0,
    )
    orchestrator = EnvironmentOrchestrator(settings)

    try:
        outcome = run_async_with_timeout(
            orchestrator.run(test_command),
            on_signal=orchestrator.interrupt,
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    _report_outcome(outcome)
    raise typer.Exit(code=outcome.exit_code)


@app.command(name="validate")
def validate_command(
    services: Path = typer.Option(
        ...,
        "--services",
        "-s",
        help="Service graph file (YAML or JSON)",
    ),
    fixtures: Path | None = typer.Option(
        None,
        "--fixtures",
        "-f",
        help="Fixture directory",
    ),
    seeds: Path | None = typer.Option(
        None,
        "--seeds",
        help="Seed file or directory",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Load and validate services, fixtures and seeds without starting anything.

    Exits with code 0 if everything is valid, 2 otherwise.
    """
    _setup_logging(verbose=verbose, quiet=not verbose)

    settings = RunSettings(services_path=services, fixtures_dir=fixtures, seeds_path=seeds)
    try:
        plan = load_plan(settings)
    except ConfigError as e:
        _report_error(e)
        raise typer.Exit(code=EXIT_SETUP_FAILED) from None

    table = Table(title="Services")
    table.add_column("#", justify="right")
    table.add_column("Service")
    table.add_column("Depends on")
    table.add_column("Readiness")
    table.add_column("Critical")
    specs = {s.name: s for s in plan.services}
    for index, name in enumerate(plan.start_order, start=1):
        spec = specs[name]
        readiness = f"{spec.readiness.kind} {spec.readiness.target}" if spec.readiness else "-"
        table.add_row(
            str(index),
            f"{name} [dim](mock)[/dim]" if spec.mock else name,
            ", ".join(sorted(spec.depends_on)) or "-",
            readiness,
            "yes" if spec.critical else "no",
        )
    console.print(table)

    if plan.registry is not None:
        _info(f"{len(plan.registry)} fixture(s) loaded from {fixtures}")
    if plan.seeds:
        _info(f"{len(plan.seeds)} seed step(s) loaded from {seeds}")
    _success("Configuration valid")
    raise typer.Exit(code=EXIT_SUCCESS)


@app.command(name="mock-server")
def mock_server_command(
    fixtures: Path = typer.Option(
        ...,
        "--fixtures",
        "-f",
        help="Fixture directory",
    ),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Address to bind"),
    seed: int = typer.Option(0, "--seed", help="Failure-injection seed"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Serve fixtures in the foreground until interrupted."""
    _setup_logging(verbose=verbose)

    try:
        server = MockAPIServer.from_directory(fixtures, host=host, port=port, seed=seed)
    except ConfigError as e:
        _report_error(e)
        raise typer.Exit(code=EXIT_SETUP_FAILED) from None

    try:
        run_async_with_timeout(server.serve())
    except KeyboardInterrupt:
        console.print("\n[yellow]Mock server stopped[/yellow]")
    raise typer.Exit(code=EXIT_SUCCESS)
