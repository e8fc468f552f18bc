"""Service supervisor: dependency-ordered start, readiness gating, teardown.

Provides:
- Dependency graph registration with cycle detection
- Concurrent start of independent branches, gated by readiness probes
- Per-service and aggregate start timeouts with ordered rollback
- Crash detection with critical/non-critical handling
- Idempotent graceful shutdown (SIGTERM → grace period → SIGKILL)
- Replayable lifecycle event stream

The process table (one ProcessHandle per service) is mutated only here, one
mutation at a time under ``self._lock``; the lock is never held across a
readiness wait or a process wait.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from pathlib import Path
from types import MappingProxyType

from e2e_orchestrator.config.models import ReadinessDescriptor, ServiceSpec
from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.core.exceptions import (
    ProcessCrashError,
    ReadinessTimeoutError,
    RunCancelledError,
)
from e2e_orchestrator.readiness.probe import ReadinessProbe

from .events import EventStream, LifecycleEvent
from .graph import DependencyGraph
from .process import (
    DEFAULT_LOG_BUFFER_SIZE,
    ProcessHandle,
    ProcessLauncher,
    ProcessState,
    SubprocessLauncher,
)

logger = logging.getLogger(__name__)

# Default timeouts
DEFAULT_GRACE_PERIOD_S = 10.0  # seconds between SIGTERM and SIGKILL
DEFAULT_KILL_WAIT_S = 5.0  # seconds to wait for exit after SIGKILL
ERROR_LOG_LINES = 50  # captured lines attached to errors

ProbeFactory = Callable[[ReadinessDescriptor], ReadinessProbe]


class ServiceSupervisor:
    """Owns the service graph and every managed process.

    Attributes:
        grace_period_s: Seconds between SIGTERM and SIGKILL on stop.
        abort_token: Cancelled when a critical service crashes mid-run.
        crash_error: The critical crash that aborted the run, if any.

    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        *,
        env: Mapping[str, str] | None = None,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        probe_factory: ProbeFactory = ReadinessProbe,
        abort_token: CancellationToken | None = None,
        log_buffer_size: int = DEFAULT_LOG_BUFFER_SIZE,
    ) -> None:
        """Initialize the supervisor.

        Args:
            launcher: Spawns service processes (SubprocessLauncher by default).
            env: Variables passed to every service (e.g. RUN_ID); a service's
                own ``env`` map takes precedence.
            grace_period_s: Seconds between SIGTERM and SIGKILL.
            probe_factory: Builds a ReadinessProbe from a descriptor.
            abort_token: Token cancelled on a critical crash.
            log_buffer_size: Captured output lines kept per service.

        """
        self.launcher: ProcessLauncher = launcher or SubprocessLauncher()
        self.grace_period_s = grace_period_s
        self.abort_token = abort_token or CancellationToken()
        self.crash_error: ProcessCrashError | None = None
        self._env = dict(env or {})
        self._probe_factory = probe_factory
        self._log_buffer_size = log_buffer_size

        self._graph = DependencyGraph()
        self._handles: dict[str, ProcessHandle] = {}
        self._start_order: list[str] = []
        self._lock = asyncio.Lock()
        self._events = EventStream()
        self._monitor_tasks: dict[str, asyncio.Task[None]] = {}
        self._reader_tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_task: asyncio.Task[None] | None = None
        self._started = False

    # =========================================================================
    # Registration and views
    # =========================================================================

    def register_service(self, spec: ServiceSpec) -> None:
        """Add a service node to the dependency graph.

        Raises:
            ConfigError: If the name is already registered.
            DependencyCycleError: If the spec would create a cycle.
            RuntimeError: If start_all() has already been called.

        """
        if self._started:
            raise RuntimeError("Cannot register services after start_all()")
        self._graph.add(spec.name, spec.depends_on)
        self._handles[spec.name] = ProcessHandle(spec, log_buffer=deque(maxlen=self._log_buffer_size))
        logger.debug(
            "Registered service %s (depends on: %s)",
            spec.name,
            ", ".join(sorted(spec.depends_on)) or "-",
        )

    @property
    def handles(self) -> Mapping[str, ProcessHandle]:
        return MappingProxyType(self._handles)

    def get(self, name: str) -> ProcessHandle:
        return self._handles[name]

    @property
    def start_order(self) -> list[str]:
        """Services in the order their processes were spawned."""
        return list(self._start_order)

    @property
    def degraded(self) -> list[str]:
        """Non-critical services that crashed."""
        return [
            h.name
            for h in self._handles.values()
            if h.state is ProcessState.CRASHED and not h.critical
        ]

    @property
    def stopped(self) -> bool:
        return self._stop_task is not None and self._stop_task.done()

    def watch(self) -> AsyncIterator[LifecycleEvent]:
        """Lifecycle events from the first transition onwards.

        Each call returns a fresh iterator that replays history and then
        follows live events until the supervisor is stopped.
        """
        return self._events.subscribe()

    def write_logs(self, directory: Path) -> list[Path]:
        """Dump each service's captured output to ``directory/<name>.log``."""
        directory.mkdir(parents=True, exist_ok=True)
        written = []
        for handle in self._handles.values():
            if not handle.log_buffer:
                continue
            path = directory / f"{handle.name}.log"
            path.write_text("\n".join(handle.get_logs()) + "\n", encoding="utf-8")
            written.append(path)
        return written

    # =========================================================================
    # Start
    # =========================================================================

    async def start_all(
        self,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Start every registered service in dependency order.

        Services whose dependencies are all ready start concurrently. On any
        failure all in-flight starts are cancelled and every started service
        is stopped in reverse start order before the error is raised.

        Args:
            timeout: Aggregate budget in seconds (None for no limit).
            cancel: Run cancellation token.

        Raises:
            ConfigError: Unknown dependency.
            DependencyCycleError: Cycle in the graph.
            ReadinessTimeoutError: A service or the aggregate budget timed out.
            ProcessCrashError: A service exited before becoming ready.
            RunCancelledError: ``cancel`` fired.

        """
        if self._started:
            raise RuntimeError("start_all() may only be called once")
        order = self._graph.topological_order()
        self._started = True

        logger.info("Starting %d service(s): %s", len(order), ", ".join(order))
        ready_events = {name: asyncio.Event() for name in order}
        tasks = [
            asyncio.create_task(self._start_service(name, ready_events, cancel), name=f"start:{name}")
            for name in order
        ]

        try:
            async with asyncio.timeout(timeout):
                await asyncio.gather(*tasks)
        except TimeoutError:
            error = self._aggregate_timeout_error(order, timeout or 0.0)
            logger.error("%s", error)
            await self._abort_start(tasks)
            raise error from None
        except BaseException as e:
            logger.error("Start aborted: %s", e)
            await self._abort_start(tasks)
            raise

        logger.info("All services ready")

    async def _abort_start(self, tasks: list[asyncio.Task[None]]) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.stop_all()

    def _aggregate_timeout_error(self, order: list[str], timeout: float) -> ReadinessTimeoutError:
        """Blame the first service in order that is not ready yet."""
        for state in (ProcessState.STARTING, ProcessState.PENDING):
            for name in order:
                handle = self._handles[name]
                if handle.state is state:
                    return ReadinessTimeoutError(
                        name,
                        timeout,
                        aggregate=True,
                        logs=handle.get_logs(ERROR_LOG_LINES),
                    )
        return ReadinessTimeoutError(order[-1] if order else "-", timeout, aggregate=True)

    async def _start_service(
        self,
        name: str,
        ready_events: dict[str, asyncio.Event],
        cancel: CancellationToken | None,
    ) -> None:
        handle = self._handles[name]
        spec = handle.spec

        if spec.depends_on:
            waits = asyncio.gather(*(ready_events[dep].wait() for dep in spec.depends_on))
            await (cancel.race(waits) if cancel else waits)

        await self._spawn(handle)

        if spec.readiness is not None:
            await self._await_readiness(handle, spec.readiness, cancel)

        async with self._lock:
            # The monitor may have recorded an exit or a stop may have begun
            if handle.state is ProcessState.CRASHED:
                raise ProcessCrashError(name, handle.exit_code, logs=handle.get_logs(ERROR_LOG_LINES))
            if handle.state is not ProcessState.STARTING:
                raise self.crash_error or RunCancelledError("supervisor is stopping")
            handle.transition(ProcessState.READY)
            self._publish(handle)
        ready_events[name].set()
        logger.info("Service %s ready", name)

    async def _spawn(self, handle: ProcessHandle) -> None:
        if self._stop_task is not None:
            raise self.crash_error or RunCancelledError("supervisor is stopping")
        env = {**self._env, **handle.spec.env}
        try:
            process = await self.launcher.launch(handle.spec, env)
        except OSError as e:
            logger.error("Failed to launch service %s: %s", handle.name, e)
            handle.add_log(f"launch failed: {e}")
            raise ProcessCrashError(handle.name, None, logs=handle.get_logs()) from e

        async with self._lock:
            handle.process = process
            handle.start_index = len(self._start_order)
            self._start_order.append(handle.name)
            handle.transition(ProcessState.STARTING)
            self._publish(handle)

        logger.info("Started service %s (PID %d)", handle.name, process.pid)
        self._reader_tasks[handle.name] = asyncio.create_task(self._read_output(handle))
        self._monitor_tasks[handle.name] = asyncio.create_task(self._monitor(handle))

    async def _await_readiness(
        self,
        handle: ProcessHandle,
        descriptor: ReadinessDescriptor,
        cancel: CancellationToken | None,
    ) -> None:
        """Wait for the probe, failing fast if the process exits first."""
        probe = self._probe_factory(descriptor)
        probe_task = asyncio.create_task(probe.wait_ready(cancel))
        exit_task = asyncio.create_task(handle.exited.wait())
        try:
            done, _ = await asyncio.wait({probe_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (probe_task, exit_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(probe_task, exit_task, return_exceptions=True)

        if exit_task in done or handle.exited.is_set():
            raise ProcessCrashError(
                handle.name,
                handle.exit_code,
                logs=handle.get_logs(ERROR_LOG_LINES),
            )

        result = probe_task.result()
        if not result.ready:
            logger.error(
                "Service %s not ready after %.1fs (%d attempts): %s",
                handle.name,
                result.elapsed_s,
                result.attempts,
                result.last_error,
            )
            raise ReadinessTimeoutError(
                handle.name,
                descriptor.timeout_s,
                logs=handle.get_logs(ERROR_LOG_LINES),
            )

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def _read_output(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process is None:
            return
        service_logger = logging.getLogger(f"e2e_orchestrator.service.{handle.name}")
        try:
            async for line in process.output():
                handle.add_log(line)
                service_logger.debug("%s", line)
        except Exception:
            logger.exception("Error reading output of %s", handle.name)

    async def _monitor(self, handle: ProcessHandle) -> None:
        """Wait for process exit and classify it."""
        process = handle.process
        if process is None:
            return
        exit_code = await process.wait()

        async with self._lock:
            handle.exit_code = exit_code
            previous = handle.state
            if previous in (ProcessState.STARTING, ProcessState.READY):
                handle.transition(ProcessState.CRASHED)
                self._publish(handle, detail=f"exited unexpectedly while {previous}")
        handle.exited.set()

        if previous is not ProcessState.READY:
            return

        if handle.critical:
            self.crash_error = ProcessCrashError(
                handle.name,
                exit_code,
                logs=handle.get_logs(ERROR_LOG_LINES),
            )
            logger.error(
                "Critical service %s crashed with exit code %s - aborting run",
                handle.name,
                exit_code,
            )
            self.abort_token.cancel(f"critical service '{handle.name}' crashed")
            self._ensure_stop_task()
        else:
            logger.warning(
                "Non-critical service %s crashed with exit code %s - continuing degraded",
                handle.name,
                exit_code,
            )

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop_all(self) -> None:
        """Stop every running service in reverse start order.

        Idempotent: concurrent callers share one teardown and calls after it
        completed return immediately.
        """
        task = self._ensure_stop_task()
        if task.done():
            return
        await asyncio.shield(task)

    def _ensure_stop_task(self) -> asyncio.Task[None]:
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._stop_all_impl(), name="stop_all")
        return self._stop_task

    async def _stop_all_impl(self) -> None:
        names = list(reversed(self._start_order))
        if names:
            logger.info("Stopping %d service(s): %s", len(names), ", ".join(names))

        for name in names:
            handle = self._handles[name]
            if handle.state in (ProcessState.STARTING, ProcessState.READY):
                try:
                    await self._stop_one(handle)
                except Exception:
                    logger.exception("Failed to stop service %s", name)

        background = [*self._reader_tasks.values(), *self._monitor_tasks.values()]
        for task in background:
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self._events.close()
        logger.info("Supervisor shutdown complete")

    async def _stop_one(self, handle: ProcessHandle) -> None:
        await self._transition(handle, ProcessState.STOPPING)
        process = handle.process
        assert process is not None

        if process.returncode is None:
            logger.info("Sending SIGTERM to %s (PID %d)", handle.name, process.pid)
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.grace_period_s)
            except TimeoutError:
                logger.warning(
                    "Service %s ignored SIGTERM for %.1fs - sending SIGKILL (PID %d)",
                    handle.name,
                    self.grace_period_s,
                    process.pid,
                )
                process.kill()
                try:
                    await asyncio.wait_for(process.wait(), timeout=DEFAULT_KILL_WAIT_S)
                except TimeoutError:
                    logger.error("Service %s did not exit after SIGKILL", handle.name)

        async with self._lock:
            handle.exit_code = process.returncode
            handle.transition(ProcessState.STOPPED)
            self._publish(handle)
        logger.info("Service %s stopped (exit code %s)", handle.name, handle.exit_code)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _transition(self, handle: ProcessHandle, state: ProcessState) -> None:
        async with self._lock:
            handle.transition(state)
            self._publish(handle)

    def _publish(self, handle: ProcessHandle, detail: str = "") -> None:
        self._events.publish(
            LifecycleEvent(
                service=handle.name,
                state=handle.state,
                critical=handle.critical,
                exit_code=handle.exit_code,
                detail=detail,
            )
        )


def validate_graph(specs: list[ServiceSpec]) -> list[str]:
    """Check a list of specs for cycles and unknown dependencies.

    Returns:
        Topological start order.

    Raises:
        ConfigError: Duplicate name or unknown dependency.
        DependencyCycleError: Cycle in the graph.

    """
    graph = DependencyGraph()
    for spec in specs:
        graph.add(spec.name, spec.depends_on)
    return graph.topological_order()
