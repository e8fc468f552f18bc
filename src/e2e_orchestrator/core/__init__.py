"""Core primitives: exceptions, cancellation and the run context."""

from .cancellation import CancellationToken
from .context import ContextKey, RunContext, generate_run_id

__all__ = ["CancellationToken", "ContextKey", "RunContext", "generate_run_id"]
