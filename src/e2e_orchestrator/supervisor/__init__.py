"""Dependency-ordered supervision of auxiliary services."""

from .events import LifecycleEvent
from .graph import DependencyGraph
from .process import (
    LaunchedProcess,
    ProcessHandle,
    ProcessLauncher,
    ProcessState,
    SubprocessLauncher,
)
from .supervisor import ServiceSupervisor, validate_graph

__all__ = [
    "DependencyGraph",
    "LaunchedProcess",
    "LifecycleEvent",
    "ProcessHandle",
    "ProcessLauncher",
    "ProcessState",
    "ServiceSupervisor",
    "SubprocessLauncher",
    "validate_graph",
]
