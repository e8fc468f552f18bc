"""Loading of service graph, fixture and seed definition files.

YAML (``.yaml``/``.yml``) and JSON (``.json``) are both accepted. Every parse
or validation problem surfaces as ConfigError naming the offending file, so
the CLI can report it before any process is spawned.
"""

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from e2e_orchestrator.config.models import FixtureDefinition, SeedStep, ServiceSpec
from e2e_orchestrator.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES: tuple[str, ...] = (".yaml", ".yml", ".json")

M = TypeVar("M", bound=BaseModel)


def read_document(path: Path) -> Any:
    """Parse a YAML or JSON document.

    Args:
        path: File to read.

    Returns:
        Parsed document (None for an empty YAML file).

    Raises:
        ConfigError: If the file is missing, unreadable or malformed.

    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"File not found: {path}", source=str(path)) from None
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read {path}: {e}", source=str(path)) from e

    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Malformed document {path}: {e}", source=str(path)) from e


def iter_definition_files(directory: Path) -> list[Path]:
    """List definition files under ``directory`` recursively, sorted by path.

    Raises:
        ConfigError: If directory does not exist or is not a directory.

    """
    if not directory.exists():
        raise ConfigError(f"Directory not found: {directory}", source=str(directory))
    if not directory.is_dir():
        raise ConfigError(f"Not a directory: {directory}", source=str(directory))
    return sorted(
        p for p in directory.rglob("*") if p.is_file() and p.suffix.lower() in DEFINITION_SUFFIXES
    )


def _entries(document: Any, key: str, source: Path) -> list[Any]:
    """Normalize a document into a list of entries.

    Accepts a bare list, a mapping with ``key`` holding a list, or a single
    mapping entry.
    """
    if document is None:
        return []
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        if key in document:
            entries = document[key]
            if entries is None:
                return []
            if not isinstance(entries, list):
                raise ConfigError(f"'{key}' must be a list in {source}", source=str(source))
            return entries
        return [document]
    raise ConfigError(
        f"Expected a list or mapping in {source}, got {type(document).__name__}",
        source=str(source),
    )


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def _validate(model: type[M], data: Any, source: Path, index: int) -> M:
    if not isinstance(data, dict):
        raise ConfigError(
            f"Entry #{index} in {source} must be a mapping, got {type(data).__name__}",
            source=str(source),
        )
    try:
        return model.model_validate(data)
    except ValidationError as e:
        label = data.get("name") or data.get("path") or f"#{index}"
        raise ConfigError(
            f"Invalid {model.__name__} {label} in {source}: {_format_validation_error(e)}",
            source=str(source),
        ) from e


def load_services(path: Path) -> list[ServiceSpec]:
    """Load a service graph file.

    Raises:
        ConfigError: On malformed entries or duplicate service names.

    """
    entries = _entries(read_document(path), "services", path)
    specs: list[ServiceSpec] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        spec = _validate(ServiceSpec, entry, path, index)
        if spec.name in seen:
            raise ConfigError(f"Duplicate service name '{spec.name}' in {path}", source=str(path))
        seen.add(spec.name)
        specs.append(spec)
    logger.debug("Loaded %d service(s) from %s", len(specs), path)
    return specs


def load_fixture_file(path: Path) -> list[FixtureDefinition]:
    """Load all fixtures from one file, tagging each with its source path."""
    fixtures = []
    for index, entry in enumerate(_entries(read_document(path), "fixtures", path)):
        if isinstance(entry, dict):
            entry = {**entry, "source": str(path)}
        fixtures.append(_validate(FixtureDefinition, entry, path, index))
    return fixtures


def load_seeds(location: Path) -> list[SeedStep]:
    """Load seed steps from a file or a directory of files.

    Steps without an explicit ``order`` get their position in the combined
    list (files in sorted path order) as ordering index.

    Raises:
        ConfigError: On malformed entries.

    """
    files: Iterable[Path] = iter_definition_files(location) if location.is_dir() else [location]
    steps: list[SeedStep] = []
    for path in files:
        for index, entry in enumerate(_entries(read_document(path), "seeds", path)):
            step = _validate(SeedStep, entry, path, index)
            if step.order is None:
                step = step.model_copy(update={"order": len(steps)})
            steps.append(step)
    logger.debug("Loaded %d seed step(s) from %s", len(steps), location)
    return steps
