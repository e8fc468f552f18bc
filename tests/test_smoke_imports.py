"""Smoke tests for module imports.

Catches broken imports, circular dependencies and missing dependencies early.
"""

import importlib

import pytest

PACKAGES = [
    "e2e_orchestrator",
    "e2e_orchestrator.config",
    "e2e_orchestrator.core",
    "e2e_orchestrator.fixtures",
    "e2e_orchestrator.mock_server",
    "e2e_orchestrator.readiness",
    "e2e_orchestrator.runner",
    "e2e_orchestrator.seeding",
    "e2e_orchestrator.supervisor",
]

MODULES = [
    "e2e_orchestrator.cli",
    "e2e_orchestrator.cli_utils",
    "e2e_orchestrator.orchestrator",
    "e2e_orchestrator.config.loader",
    "e2e_orchestrator.config.models",
    "e2e_orchestrator.core.async_utils",
    "e2e_orchestrator.core.cancellation",
    "e2e_orchestrator.core.context",
    "e2e_orchestrator.core.exceptions",
    "e2e_orchestrator.core.processes",
    "e2e_orchestrator.fixtures.pattern",
    "e2e_orchestrator.fixtures.registry",
    "e2e_orchestrator.mock_server.app",
    "e2e_orchestrator.mock_server.request_log",
    "e2e_orchestrator.mock_server.server",
    "e2e_orchestrator.readiness.probe",
    "e2e_orchestrator.runner.adapter",
    "e2e_orchestrator.runner.results",
    "e2e_orchestrator.seeding.ledger",
    "e2e_orchestrator.seeding.runner",
    "e2e_orchestrator.supervisor.events",
    "e2e_orchestrator.supervisor.graph",
    "e2e_orchestrator.supervisor.process",
    "e2e_orchestrator.supervisor.supervisor",
]


class TestSmokeImports:
    """Smoke tests to verify all modules can be imported."""

    @pytest.mark.parametrize("package", PACKAGES)
    def test_package_imports(self, package: str) -> None:
        try:
            assert importlib.import_module(package) is not None
        except ImportError as e:
            pytest.fail(f"Failed to import package {package}: {e}")

    @pytest.mark.parametrize("module", MODULES)
    def test_module_imports(self, module: str) -> None:
        try:
            assert importlib.import_module(module) is not None
        except ImportError as e:
            pytest.fail(f"Failed to import module {module}: {e}")

    def test_cli_entry_point(self) -> None:
        from e2e_orchestrator.cli import app

        assert app is not None

    def test_version(self) -> None:
        import e2e_orchestrator

        assert hasattr(e2e_orchestrator, "__version__")
