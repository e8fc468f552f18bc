"""Idempotent data seeding against ready services.

Steps run in ascending order. A step whose idempotency key is already in the
ledger for the run id is skipped; a key is recorded only after its action
succeeded. When a step fails, steps applied by the same invocation are
rolled back best-effort in reverse order and SeedFailureError names the
failed step.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field

from e2e_orchestrator.config.models import SeedStep
from e2e_orchestrator.core.cancellation import CancellationToken
from e2e_orchestrator.core.exceptions import RunCancelledError, SeedFailureError
from e2e_orchestrator.core.processes import spawn

from .ledger import SeedLedger

logger = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUT_S = 300.0
SHELL_COMMAND = ["/bin/sh", "-c"]


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one seed or rollback action."""

    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


ActionExecutor = Callable[[str, Mapping[str, str], CancellationToken | None], Awaitable[ActionResult]]


async def run_shell_action(
    command: str,
    env: Mapping[str, str],
    cancel: CancellationToken | None = None,
    timeout_s: float = DEFAULT_ACTION_TIMEOUT_S,
) -> ActionResult:
    """Run ``command`` through /bin/sh and capture its merged output.

    A timeout is reported as a failed action (returncode -1); cancellation
    kills the process group and re-raises RunCancelledError.
    """
    process = await spawn([*SHELL_COMMAND, command], env)
    lines: list[str] = []

    async def collect() -> int:
        async for line in process.output():
            lines.append(line)
        return await process.wait()

    try:
        waiting = asyncio.wait_for(collect(), timeout=timeout_s)
        returncode = await (cancel.race(waiting) if cancel else waiting)
    except TimeoutError:
        process.kill()
        await process.wait()
        lines.append(f"action timed out after {timeout_s:.0f}s")
        return ActionResult(-1, "\n".join(lines))
    except (RunCancelledError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise
    return ActionResult(returncode, "\n".join(lines))


@dataclass
class SeedReport:
    """What one apply() call did.

    Attributes:
        applied: Step names whose action ran and succeeded.
        skipped: Step names skipped because their key was already applied.

    """

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class SeedRunner:
    """Applies seed steps exactly once per run id."""

    def __init__(
        self,
        ledger: SeedLedger | None = None,
        *,
        executor: ActionExecutor = run_shell_action,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            ledger: Applied-key ledger (in-memory by default).
            executor: Runs an action command; tests inject a fake.
            env: Extra environment for every action (e.g. MOCK_API_URL).

        """
        self.ledger = ledger or SeedLedger()
        self._executor = executor
        self._env = dict(env or {})

    def _step_env(self, step: SeedStep, run_id: str) -> dict[str, str]:
        return {
            **self._env,
            "RUN_ID": run_id,
            "SEED_STEP": step.name,
            "SEED_KEY": step.idempotency_key,
        }

    async def apply(
        self,
        steps: Sequence[SeedStep],
        run_id: str,
        cancel: CancellationToken | None = None,
    ) -> SeedReport:
        """Apply ``steps`` for ``run_id``.

        Args:
            steps: Steps in any order; sorted by ``order`` (ties keep input order).
            run_id: Run identifier scoping the idempotency keys.
            cancel: Run cancellation token.

        Returns:
            SeedReport of applied and skipped steps.

        Raises:
            SeedFailureError: A step failed; earlier steps were rolled back.
            RunCancelledError: ``cancel`` fired; earlier steps were rolled back.
                Task cancellation (e.g. an enclosing timeout) rolls back too.

        """
        ordered = sorted(
            enumerate(steps),
            key=lambda item: (item[1].order if item[1].order is not None else item[0], item[0]),
        )
        report = SeedReport()
        applied_now: list[SeedStep] = []

        for _, step in ordered:
            if self.ledger.is_applied(run_id, step.idempotency_key):
                logger.info("Seed %s already applied (key=%s) - skipping", step.name, step.idempotency_key)
                report.skipped.append(step.name)
                continue

            logger.info("Applying seed %s", step.name)
            try:
                result = await self._executor(step.action, self._step_env(step, run_id), cancel)
            except (RunCancelledError, asyncio.CancelledError):
                await self._rollback(applied_now, run_id)
                raise
            except OSError as e:
                result = ActionResult(-1, f"cannot run action: {e}")

            if not result.ok:
                logger.error(
                    "Seed %s failed with exit code %d:\n%s",
                    step.name,
                    result.returncode,
                    result.output,
                )
                await self._rollback(applied_now, run_id)
                raise SeedFailureError(
                    step.name,
                    f"Seed step '{step.name}' failed with exit code {result.returncode}",
                    output=result.output,
                )

            self.ledger.record(run_id, step.idempotency_key)
            applied_now.append(step)
            report.applied.append(step.name)

        logger.info(
            "Seeding complete: %d applied, %d skipped",
            len(report.applied),
            len(report.skipped),
        )
        return report

    async def _rollback(self, applied: list[SeedStep], run_id: str) -> list[str]:
        """Best-effort rollback in reverse order; never raises.

        A key is forgotten only when its rollback action succeeded, so a
        step without rollback stays recorded and is not re-applied.
        """
        rolled_back = []
        for step in reversed(applied):
            if not step.rollback:
                logger.warning("Seed %s has no rollback action - leaving it applied", step.name)
                continue
            try:
                result = await self._executor(step.rollback, self._step_env(step, run_id), None)
            except (OSError, RunCancelledError) as e:
                logger.warning("Rollback of seed %s could not run: %s", step.name, e)
                continue
            if result.ok:
                self.ledger.forget(run_id, step.idempotency_key)
                rolled_back.append(step.name)
                logger.info("Rolled back seed %s", step.name)
            else:
                logger.warning(
                    "Rollback of seed %s failed with exit code %d",
                    step.name,
                    result.returncode,
                )
        return rolled_back
