"""Test-environment orchestrator for end-to-end mobile suites.

Starts the auxiliary services a suite depends on in dependency order, serves
canned API responses from fixtures, seeds test data idempotently, runs the
external test command and tears everything down.
"""

__version__ = "0.1.0"
