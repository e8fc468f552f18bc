"""Pytest configuration and fixtures for e2e-orchestrator tests.

Supervisor and orchestrator tests never spawn real services: FakeLauncher
hands out FakeProcess objects whose exit, output and signal handling are
driven by the test, and FakeProbeFactory decides readiness per target.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from pathlib import Path

import pytest
import yaml

from e2e_orchestrator.config.models import ReadinessDescriptor, ServiceSpec
from e2e_orchestrator.readiness.probe import ProbeResult, ProbeStatus

# =============================================================================
# Fake processes
# =============================================================================


class FakeProcess:
    """In-memory stand-in for a launched OS process."""

    def __init__(self, pid: int, lines: Iterable[str] = (), *, ignore_sigterm: bool = False) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.ignore_sigterm = ignore_sigterm
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.Event()
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        for line in lines:
            self._lines.put_nowait(line)

    def emit(self, line: str) -> None:
        self._lines.put_nowait(line)

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self._lines.put_nowait(None)
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    async def output(self) -> AsyncIterator[str]:
        while True:
            line = await self._lines.get()
            if line is None:
                return
            yield line


class FakeLauncher:
    """ProcessLauncher recording launches and returning FakeProcess objects.

    Attributes:
        launched: Service names in launch order.
        processes: FakeProcess per service name.
        envs: Environment passed per service name.
        fail: Names whose launch raises OSError.
        on_launch: Per-name hook called with the new FakeProcess.
        ignore_sigterm: Names whose processes ignore SIGTERM.

    """

    def __init__(self) -> None:
        self.launched: list[str] = []
        self.processes: dict[str, FakeProcess] = {}
        self.envs: dict[str, dict[str, str]] = {}
        self.fail: set[str] = set()
        self.on_launch: dict[str, Callable[[FakeProcess], None]] = {}
        self.ignore_sigterm: set[str] = set()

    async def launch(self, spec: ServiceSpec, env: Mapping[str, str]) -> FakeProcess:
        if spec.name in self.fail:
            raise OSError(f"No such file or directory: '{spec.command}'")
        process = FakeProcess(
            pid=1000 + len(self.launched),
            lines=[f"{spec.name} booting"],
            ignore_sigterm=spec.name in self.ignore_sigterm,
        )
        self.launched.append(spec.name)
        self.processes[spec.name] = process
        self.envs[spec.name] = dict(env)
        hook = self.on_launch.get(spec.name)
        if hook is not None:
            hook(process)
        return process


# =============================================================================
# Fake readiness
# =============================================================================


class FakeProbe:
    def __init__(self, factory: FakeProbeFactory, descriptor: ReadinessDescriptor) -> None:
        self.factory = factory
        self.descriptor = descriptor

    async def wait_ready(self, cancel=None, timeout_s=None) -> ProbeResult:  # noqa: ANN001
        target = self.descriptor.target
        self.factory.probed.append(target)
        sleep = cancel.sleep if cancel is not None else asyncio.sleep
        if target in self.factory.never_ready:
            await sleep(self.descriptor.timeout_s)
            return ProbeResult(ProbeStatus.TIMEOUT, 1, self.descriptor.timeout_s, "never ready")
        delay = self.factory.delays.get(target, 0.0)
        if delay:
            await sleep(delay)
        return ProbeResult(ProbeStatus.READY, 1, delay)


class FakeProbeFactory:
    """Probe factory deciding readiness by descriptor target.

    Attributes:
        never_ready: Targets that time out after their descriptor timeout.
        delays: Seconds before a target reports ready.
        probed: Targets in probe order.

    """

    def __init__(self) -> None:
        self.never_ready: set[str] = set()
        self.delays: dict[str, float] = {}
        self.probed: list[str] = []

    def __call__(self, descriptor: ReadinessDescriptor) -> FakeProbe:
        return FakeProbe(self, descriptor)


def make_service(
    name: str,
    depends_on: Iterable[str] = (),
    *,
    timeout_ms: int = 1000,
    critical: bool = True,
    readiness: bool = True,
    env: dict[str, str] | None = None,
) -> ServiceSpec:
    """Service spec whose readiness target is ``ready:<name>``."""
    return ServiceSpec(
        name=name,
        command="/usr/bin/env",
        args=("true",),
        depends_on=frozenset(depends_on),
        critical=critical,
        env=env or {},
        readiness=(
            ReadinessDescriptor(kind="command", target=f"ready:{name}", timeout_ms=timeout_ms)
            if readiness
            else None
        ),
    )


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def fake_probes() -> FakeProbeFactory:
    return FakeProbeFactory()


@pytest.fixture
def service() -> Callable[..., ServiceSpec]:
    """Factory fixture building ServiceSpec objects (see make_service)."""
    return make_service


@pytest.fixture
def write_yaml(tmp_path: Path) -> Callable[[str, object], Path]:
    """Write ``data`` as YAML to ``tmp_path/name`` and return the path."""

    def _write(name: str, data: object) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return _write
