"""External test-command execution and results."""

from .adapter import TestRunnerAdapter
from .results import FlowResult, FlowStatus, RunResult, collect_artifacts, parse_junit_report

__all__ = [
    "FlowResult",
    "FlowStatus",
    "RunResult",
    "TestRunnerAdapter",
    "collect_artifacts",
    "parse_junit_report",
]
