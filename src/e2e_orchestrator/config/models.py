"""Configuration models for services, readiness checks, fixtures and seeds.

Files use camelCase keys (``dependsOn``, ``timeoutMs``); the models expose
snake_case attributes and accept both spellings. All models are frozen:
configuration is read once per run and never mutated afterwards.
"""

import logging
import re
from enum import StrEnum
from typing import Any, Self
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from e2e_orchestrator.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

# Backoff defaults for readiness polling
DEFAULT_READINESS_TIMEOUT_MS = 30_000
DEFAULT_POLL_INTERVAL_MS = 200

HTTP_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

_SERVICE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_PARAM_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ReadinessKind(StrEnum):
    """Kind of liveness check performed by a ReadinessProbe."""

    TCP = "tcp"
    HTTP = "http"
    COMMAND = "command"


class ReadinessDescriptor(BaseModel):
    """How to decide that a service is ready.

    Attributes:
        kind: tcp, http or command.
        target: ``host:port`` for tcp, an http(s) URL for http, a shell
            command line for command.
        timeout_ms: Start-to-ready timeout for the service.
        poll_interval_ms: Base delay of the exponential backoff.
        expected_status: Inclusive HTTP status range counted as ready.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    kind: ReadinessKind
    target: str = Field(min_length=1)
    timeout_ms: int = Field(default=DEFAULT_READINESS_TIMEOUT_MS, alias="timeoutMs", gt=0)
    poll_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, alias="pollIntervalMs", gt=0)
    expected_status: tuple[int, int] = Field(default=(200, 399), alias="expectedStatus")

    @model_validator(mode="after")
    def validate_target(self) -> Self:
        """Reject targets that cannot be probed for the declared kind."""
        if self.kind is ReadinessKind.TCP:
            _split_host_port(self.target)
        elif self.kind is ReadinessKind.HTTP:
            parts = urlsplit(self.target)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise ValueError(f"http readiness target must be an http(s) URL: {self.target!r}")
        low, high = self.expected_status
        if low > high:
            raise ValueError(f"expectedStatus range is inverted: {low} > {high}")
        return self

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    def tcp_address(self) -> tuple[str, int]:
        """Return ``(host, port)`` of a tcp target.

        Raises:
            ConfigError: If the descriptor is not a tcp check.

        """
        if self.kind is not ReadinessKind.TCP:
            raise ConfigError(f"Not a tcp readiness descriptor: {self.kind}")
        try:
            return _split_host_port(self.target)
        except ValueError as e:
            raise ConfigError(str(e)) from e


def _split_host_port(target: str) -> tuple[str, int]:
    host, sep, port_str = target.rpartition(":")
    if not sep or not port_str.isdigit():
        raise ValueError(f"tcp readiness target must be host:port, got {target!r}")
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"tcp readiness port out of range: {port}")
    return host or "127.0.0.1", port


class ServiceSpec(BaseModel):
    """One node of the service dependency graph.

    Services are one uniform record; ``critical`` decides whether a crash
    aborts the run, ``mock`` marks the built-in mock API server whose
    command the orchestrator fills in.

    Attributes:
        name: Unique service name.
        command: Executable to launch.
        args: Arguments passed to the executable.
        env: Extra environment variables for the process.
        depends_on: Names of services that must be ready first.
        readiness: Readiness check; None means ready once spawned.
        critical: Crash aborts the run when True, degrades it otherwise.
        mock: Runs the built-in mock API server.
        cwd: Working directory for the process.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str
    command: str = ""
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    depends_on: frozenset[str] = Field(default_factory=frozenset, alias="dependsOn")
    readiness: ReadinessDescriptor | None = None
    critical: bool = True
    mock: bool = False
    cwd: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _SERVICE_NAME_RE.match(v):
            raise ValueError(f"invalid service name {v!r}")
        return v

    @field_validator("args", "depends_on", mode="before")
    @classmethod
    def coerce_none_to_empty(cls, v: Any) -> Any:
        """YAML parses empty keys as None."""
        if v is None:
            return ()
        return v

    @field_validator("args", mode="before")
    @classmethod
    def stringify_args(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return tuple(str(a) for a in v)
        return v

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        """Environment values must be strings; YAML yields ints and bools."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def validate_command(self) -> Self:
        if not self.command and not self.mock:
            raise ValueError(f"service {self.name!r} has no command")
        return self

    @property
    def argv(self) -> list[str]:
        """Command plus arguments, ready for process creation."""
        return [self.command, *self.args]


class FixtureDefinition(BaseModel):
    """Canned request/response pair served by the mock API server.

    Attributes:
        method: Upper-cased HTTP method.
        path: Path pattern; ``:name`` segments are parameters.
        status: Success response status.
        body: Success response body (JSON value or text).
        headers: Extra response headers.
        latency_ms: Delay before responding.
        failure_rate: Probability (0..1) of returning the failure response.
        failure_status: Status of the failure response.
        failure_body: Body of the failure response.
        source: File the fixture was loaded from.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    method: str
    path: str
    status: int = Field(default=200, ge=100, le=599)
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    latency_ms: int = Field(default=0, alias="latencyMs", ge=0)
    failure_rate: float = Field(default=0.0, alias="failureRate", ge=0.0, le=1.0)
    failure_status: int = Field(default=500, alias="failureStatus", ge=100, le=599)
    failure_body: Any = Field(default=None, alias="failureBody")
    source: str = ""

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        method = v.strip().upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method {v!r}")
        return method

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"fixture path must start with '/': {v!r}")
        seen: set[str] = set()
        for segment in v.strip("/").split("/"):
            if not segment.startswith(":"):
                continue
            param = segment[1:]
            if not _PARAM_NAME_RE.match(param):
                raise ValueError(f"invalid path parameter {segment!r} in {v!r}")
            if param in seen:
                raise ValueError(f"duplicate path parameter {segment!r} in {v!r}")
            seen.add(param)
        return v

    @property
    def latency_s(self) -> float:
        return self.latency_ms / 1000.0


class SeedStep(BaseModel):
    """One idempotent data-seeding step.

    Attributes:
        name: Step name used in logs and errors.
        idempotency_key: Applied at most once per run id.
        action: Shell command performing the side effect.
        order: Ordering index; steps run in ascending order.
        rollback: Optional shell command undoing the action.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1)
    action: str = Field(min_length=1)
    order: int | None = None
    rollback: str | None = None
