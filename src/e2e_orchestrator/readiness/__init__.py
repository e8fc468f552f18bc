"""Readiness probing for managed services."""

from .probe import ProbeResult, ProbeStatus, ReadinessProbe, backoff_delays

__all__ = ["ProbeResult", "ProbeStatus", "ReadinessProbe", "backoff_delays"]
