"""Run results of the external test command."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

logger = logging.getLogger(__name__)

# Files picked up from the artifacts directory after a run
ARTIFACT_PATTERNS: tuple[str, ...] = ("*.png", "*.jpg", "*.mp4", "*.xml", "*.json", "*.log")


class FlowStatus(StrEnum):
    """Outcome of one test flow."""

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FlowResult:
    """Result of one flow parsed from the test report.

    Attributes:
        name: Flow name (``classname.name`` when a classname is present).
        status: Flow outcome.
        duration_s: Flow duration in seconds.
        message: Failure or error message, if any.

    """

    name: str
    status: FlowStatus
    duration_s: float = 0.0
    message: str = ""


@dataclass(frozen=True)
class RunResult:
    """Aggregate result of one test-command run. Never mutated.

    Attributes:
        command: The command that ran.
        exit_code: Raw exit code of the command.
        duration_s: Wall time of the run.
        flows: Per-flow results if a report could be parsed.
        artifacts: Captured artifacts (logs, screenshots, reports).
        log_path: File holding the command's captured output.

    """

    command: tuple[str, ...]
    exit_code: int
    duration_s: float
    flows: tuple[FlowResult, ...] = ()
    artifacts: tuple[Path, ...] = ()
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def failed_flows(self) -> list[FlowResult]:
        return [f for f in self.flows if f.status in (FlowStatus.FAILED, FlowStatus.ERROR)]

    def to_dict(self) -> dict[str, object]:
        return {
            "command": list(self.command),
            "exit_code": self.exit_code,
            "success": self.success,
            "duration_s": round(self.duration_s, 3),
            "flows": [
                {"name": f.name, "status": f.status.value, "duration_s": f.duration_s, "message": f.message}
                for f in self.flows
            ],
            "artifacts": [str(p) for p in self.artifacts],
            "log_path": str(self.log_path) if self.log_path else None,
        }


def parse_junit_report(path: Path) -> tuple[FlowResult, ...]:
    """Parse per-flow results from a JUnit XML report.

    Format:
    <testsuites>
      <testsuite name="login">
        <testcase name="login_ok" classname="auth" time="1.5"/>
        <testcase name="login_bad">
          <failure message="Expected 'Welcome'"/>
        </testcase>
      </testsuite>
    </testsuites>

    Returns:
        Flow results, empty if the report is missing or malformed.

    """
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        logger.warning("Failed to parse JUnit XML %s: %s", path, e)
        return ()

    testsuites = [root] if root.tag == "testsuite" else root.findall("testsuite")
    flows: list[FlowResult] = []
    for testsuite in testsuites:
        for testcase in testsuite.findall("testcase"):
            name = testcase.get("name", "unknown")
            classname = testcase.get("classname", "")
            try:
                duration = float(testcase.get("time", "0") or 0)
            except ValueError:
                duration = 0.0

            status = FlowStatus.PASSED
            message = ""
            for tag, tag_status in (
                ("failure", FlowStatus.FAILED),
                ("error", FlowStatus.ERROR),
                ("skipped", FlowStatus.SKIPPED),
            ):
                element = testcase.find(tag)
                if element is not None:
                    status = tag_status
                    message = element.get("message", "") or (element.text or "").strip()
                    break

            flows.append(
                FlowResult(
                    name=f"{classname}.{name}" if classname else name,
                    status=status,
                    duration_s=duration,
                    message=message,
                )
            )
    return tuple(flows)


def collect_artifacts(
    directory: Path,
    patterns: tuple[str, ...] = ARTIFACT_PATTERNS,
) -> tuple[Path, ...]:
    """List artifact files under ``directory`` recursively, sorted."""
    if not directory.is_dir():
        return ()
    found = {p for pattern in patterns for p in directory.rglob(pattern) if p.is_file()}
    return tuple(sorted(found))
