"""OS process primitives shared by services, seed actions, probes and the test runner.

Every child runs in its own session so signals sent to its process group
reach its descendants too.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections.abc import AsyncIterator, Mapping


def signal_process_group(pid: int, sig: signal.Signals) -> None:
    """Send ``sig`` to the process group led by ``pid``.

    Falls back to the single process when it is not a group leader.
    Already-exited processes are ignored.
    """
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, sig)


class AsyncioProcess:
    """LaunchedProcess backed by asyncio.subprocess.Process.

    The child runs in its own session, so terminate() and kill() reach its
    descendants as well.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        if self._process.returncode is None:
            signal_process_group(self._process.pid, signal.SIGTERM)

    def kill(self) -> None:
        if self._process.returncode is None:
            signal_process_group(self._process.pid, signal.SIGKILL)

    async def output(self) -> AsyncIterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        async for raw in stream:
            yield raw.decode("utf-8", errors="replace").rstrip()


async def spawn(
    argv: list[str],
    env: Mapping[str, str],
    cwd: str | None = None,
    *,
    capture_output: bool = True,
) -> AsyncioProcess:
    """Spawn ``argv`` in a new session with stdout and stderr merged.

    The child inherits the current environment overlaid with ``env``. With
    ``capture_output=False`` its output is discarded and output() yields nothing.
    """
    stream = asyncio.subprocess.PIPE if capture_output else asyncio.subprocess.DEVNULL
    process = await asyncio.create_subprocess_exec(
        *argv,
        env={**os.environ, **env},
        cwd=cwd,
        stdout=stream,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    return AsyncioProcess(process)
