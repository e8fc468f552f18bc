"""Shared CLI helpers: exit codes, console output and logging setup."""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Exit codes
EXIT_SUCCESS = 0
EXIT_TESTS_FAILED = 1
EXIT_SETUP_FAILED = 2
EXIT_TIMEOUT = 3
EXIT_INTERRUPTED = 130

# Shared console for user-facing output
console = Console()


def _error(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")


def _warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {message}")


def _info(message: str) -> None:
    console.print(f"[blue]→[/blue] {message}")


def _success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def _setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging through rich.

    Args:
        verbose: DEBUG level, including captured service output.
        quiet: Only warnings and errors.

    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # Third-party loggers stay quiet unless debugging
    for name in ("httpx", "httpcore", "uvicorn", "asyncio"):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)


def _print_logs(title: str, lines: list[str], limit: int = 50) -> None:
    """Print the tail of captured process output."""
    if not lines:
        return
    console.print(f"[dim]--- {title} (last {min(limit, len(lines))} lines) ---[/dim]")
    for line in lines[-limit:]:
        console.print(line, markup=False, highlight=False)
