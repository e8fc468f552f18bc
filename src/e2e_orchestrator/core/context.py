"""Typed key-value context passed between run stages.

Stages (supervisor, seeding, test runner) exchange ad hoc values such as the
mock server URL through an explicit RunContext instead of process-wide
globals or environment mutation. Keys are typed so readers get the value
type back without casts.

Example:
    >>> MOCK_URL = ContextKey("mock_api_url", str)
    >>> ctx = RunContext.create(artifacts_dir=Path("artifacts"))
    >>> ctx.set(MOCK_URL, "http://127.0.0.1:8998")
    >>> ctx.get(MOCK_URL)
    'http://127.0.0.1:8998'

"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar, overload

T = TypeVar("T")


@dataclass(frozen=True)
class ContextKey(Generic[T]):
    """Typed key into a RunContext.

    Attributes:
        name: Unique key name; also the exported environment variable when
            ``env_var`` is set.
        type: Expected value type, checked on set().
        env_var: Environment variable the value is exported as, if any.

    """

    name: str
    type: type[T]
    env_var: str | None = None


MOCK_API_URL: ContextKey[str] = ContextKey("mock_api_url", str, env_var="MOCK_API_URL")
DEGRADED_SERVICES: ContextKey[list] = ContextKey("degraded_services", list)


def generate_run_id() -> str:
    """Generate a fresh run identifier (32 hex chars)."""
    return uuid.uuid4().hex


@dataclass
class RunContext:
    """Per-run state shared explicitly between stages.

    Attributes:
        run_id: Identifier exported as RUN_ID to seeds and the test command.
        artifacts_dir: Directory for captured logs, reports and screenshots.

    """

    run_id: str
    artifacts_dir: Path
    _values: dict[str, Any] = field(default_factory=dict, repr=False)
    _keys: dict[str, ContextKey[Any]] = field(default_factory=dict, repr=False)

    @classmethod
    def create(cls, artifacts_dir: Path, run_id: str | None = None) -> RunContext:
        """Create a context, generating a run id when none is given."""
        return cls(run_id=run_id or generate_run_id(), artifacts_dir=artifacts_dir)

    def set(self, key: ContextKey[T], value: T) -> None:
        """Store ``value`` under ``key``.

        Raises:
            TypeError: If value is not an instance of key.type.

        """
        if not isinstance(value, key.type):
            raise TypeError(
                f"Context key '{key.name}' expects {key.type.__name__}, "
                f"got {type(value).__name__}"
            )
        self._values[key.name] = value
        self._keys[key.name] = key

    @overload
    def get(self, key: ContextKey[T]) -> T | None: ...

    @overload
    def get(self, key: ContextKey[T], default: T) -> T: ...

    def get(self, key: ContextKey[T], default: T | None = None) -> T | None:
        """Return the value for ``key`` or ``default``."""
        return self._values.get(key.name, default)

    def __contains__(self, key: ContextKey[Any]) -> bool:
        return key.name in self._values

    def environment(self) -> dict[str, str]:
        """Build environment variables exported to child processes.

        Always includes RUN_ID; adds every set key that declares ``env_var``.
        """
        env = {"RUN_ID": self.run_id}
        for name, key in self._keys.items():
            if key.env_var:
                env[key.env_var] = str(self._values[name])
        return env
