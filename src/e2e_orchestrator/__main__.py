"""Allow ``python -m e2e_orchestrator``."""

from e2e_orchestrator.cli import app

if __name__ == "__main__":
    app(prog_name="orchestrate")
