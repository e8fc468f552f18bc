"""Adapter invoking the external test-execution tool.

The tool runs as a subprocess in its own process group once the environment
is ready. Its output is streamed to the log and to
``<artifacts>/test-runner.log``. On timeout or cancellation the whole
process group is terminated (SIGTERM, then SIGKILL after a grace period).
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TextIO

from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.core.exceptions import (
    ConfigError,
    RunCancelledError,
    SubprocessTimeoutError,
)
from e2e_orchestrator.core.processes import AsyncioProcess, signal_process_group, spawn

from .results import RunResult, collect_artifacts, parse_junit_report

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("e2e_orchestrator.runner.output")

LOG_FILENAME = "test-runner.log"
DEFAULT_KILL_GRACE_S = 5.0
# Exit code reported when the tool cannot be started (shell convention)
EXIT_COMMAND_NOT_FOUND = 127
# Bound on draining output after exit; descendants may keep the pipe open
OUTPUT_DRAIN_TIMEOUT_S = 2.0


class TestRunnerAdapter:
    """Runs the external test command and collects a RunResult.

    Attributes:
        artifacts_dir: Directory for the output log and collected artifacts.
        report_path: JUnit XML report written by the tool, if any.
        kill_grace_s: Seconds between SIGTERM and SIGKILL on termination.

    """

    __test__ = False  # Tell pytest this is not a test class

    def __init__(
        self,
        artifacts_dir: Path,
        *,
        env: Mapping[str, str] | None = None,
        report_path: Path | None = None,
        kill_grace_s: float = DEFAULT_KILL_GRACE_S,
    ) -> None:
        self.artifacts_dir = artifacts_dir
        self.report_path = report_path
        self.kill_grace_s = kill_grace_s
        self._env = dict(env or {})

    async def run(
        self,
        command: Sequence[str],
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> RunResult:
        """Run ``command`` to completion.

        Args:
            command: Executable and arguments.
            timeout: Seconds before the command is killed (None for no limit).
            cancel: Run cancellation token.

        Returns:
            RunResult with the raw exit code preserved.

        Raises:
            ConfigError: Empty command.
            SubprocessTimeoutError: ``timeout`` expired; the process group
                has been terminated.
            RunCancelledError: ``cancel`` fired; the process group has been
                terminated.

        """
        argv = list(command)
        if not argv:
            raise ConfigError("No test command given")

        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.artifacts_dir / LOG_FILENAME
        started = time.monotonic()

        logger.info("Running test command: %s", " ".join(argv))
        try:
            process = await spawn(argv, self._env)
        except OSError as e:
            logger.error("Cannot start test command %s: %s", argv[0], e)
            log_path.write_text(f"cannot start {argv[0]}: {e}\n", encoding="utf-8")
            return RunResult(
                command=tuple(argv),
                exit_code=EXIT_COMMAND_NOT_FOUND,
                duration_s=time.monotonic() - started,
                log_path=log_path,
            )

        with open(log_path, "w", encoding="utf-8") as log_file:
            stream_task = asyncio.create_task(self._stream_output(process, log_file))
            try:
                waiting = asyncio.wait_for(process.wait(), timeout=timeout)
                exit_code = await (cancel.race(waiting) if cancel else waiting)
            except TimeoutError:
                logger.error("Test command timed out after %.1fs - terminating", timeout or 0.0)
                await self._terminate(process)
                raise SubprocessTimeoutError(argv, timeout or 0.0) from None
            except (RunCancelledError, asyncio.CancelledError):
                logger.warning("Test run cancelled - terminating test command")
                await self._terminate(process)
                raise
            finally:
                await self._drain(stream_task)

        duration = time.monotonic() - started
        flows = ()
        if self.report_path is not None and self.report_path.exists():
            flows = parse_junit_report(self.report_path)

        result = RunResult(
            command=tuple(argv),
            exit_code=exit_code,
            duration_s=duration,
            flows=flows,
            artifacts=collect_artifacts(self.artifacts_dir),
            log_path=log_path,
        )
        logger.info(
            "Test command finished with exit code %d in %.1fs (%d flow(s) parsed)",
            exit_code,
            duration,
            len(flows),
        )
        return result

    async def _stream_output(self, process: AsyncioProcess, log_file: TextIO) -> None:
        async for line in process.output():
            log_file.write(line + "\n")
            log_file.flush()
            output_logger.info("%s", line)

    async def _drain(self, stream_task: asyncio.Task[None]) -> None:
        done, _ = await asyncio.wait({stream_task}, timeout=OUTPUT_DRAIN_TIMEOUT_S)
        if not done:
            stream_task.cancel()
        await asyncio.gather(stream_task, return_exceptions=True)

    async def _terminate(self, process: AsyncioProcess) -> None:
        """Terminate the process group, escalating to SIGKILL."""
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_s)
        except TimeoutError:
            logger.warning("Test command ignored SIGTERM - sending SIGKILL (PID %d)", process.pid)
            process.kill()
            await process.wait()
        # Descendants that outlived the leader
        signal_process_group(process.pid, signal.SIGKILL)
