"""Ledger of applied seed steps per run.

The ledger maps a run id to the idempotency keys already applied for it.
With a path it is persisted as YAML after every change (temp file +
os.replace), so a second orchestrator process reusing the same run id skips
steps the first one applied.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from e2e_orchestrator.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "seed-ledger.yaml"


class SeedLedger:
    """Set of applied ``(run_id, idempotency_key)`` pairs.

    Attributes:
        path: Backing YAML file, None for an in-memory ledger.

    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._applied: dict[str, list[str]] = {}
        if path is not None and path.exists():
            self._applied = self._load(path)

    @classmethod
    def in_directory(cls, state_dir: Path) -> SeedLedger:
        """Ledger persisted as ``state_dir/seed-ledger.yaml``."""
        return cls(state_dir / LEDGER_FILENAME)

    @staticmethod
    def _load(path: Path) -> dict[str, list[str]]:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read seed ledger {path}: {e}", source=str(path)) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Seed ledger {path} must be a mapping", source=str(path))
        return {str(run_id): [str(k) for k in keys or []] for run_id, keys in data.items()}

    def is_applied(self, run_id: str, key: str) -> bool:
        return key in self._applied.get(run_id, ())

    def applied(self, run_id: str) -> list[str]:
        """Keys applied for ``run_id``, in application order."""
        return list(self._applied.get(run_id, ()))

    def record(self, run_id: str, key: str) -> None:
        keys = self._applied.setdefault(run_id, [])
        if key not in keys:
            keys.append(key)
            self._save()

    def forget(self, run_id: str, key: str) -> None:
        keys = self._applied.get(run_id, [])
        if key in keys:
            keys.remove(key)
            if not keys:
                del self._applied[run_id]
            self._save()

    def _save(self) -> None:
        if self.path is None:
            return
        temp_path = self.path.with_suffix(".yaml.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._applied, f, default_flow_style=False, sort_keys=True)
            os.replace(temp_path, self.path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
