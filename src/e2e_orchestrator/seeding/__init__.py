"""Idempotent data seeding."""

from .ledger import SeedLedger
from .runner import ActionResult, SeedReport, SeedRunner, run_shell_action

__all__ = ["ActionResult", "SeedLedger", "SeedReport", "SeedRunner", "run_shell_action"]
