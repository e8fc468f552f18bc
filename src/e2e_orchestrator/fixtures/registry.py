"""Fixture registry for the mock API server.

The registry is built once before the mock server starts serving and is an
immutable snapshot afterwards. Matching precedence for a request:

1. Exact literal-path match.
2. Parameterized pattern with the greatest number of literal segments.
3. First-registered among remaining ties.

Registration order is the sorted file path order, then entry order within a
file, so matching does not depend on filesystem listing order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from e2e_orchestrator.config.loader import iter_definition_files, load_fixture_file
from e2e_orchestrator.config.models import FixtureDefinition
from e2e_orchestrator.core.exceptions import FixtureConflictError

from .pattern import PathPattern, split_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixtureMatch:
    """Result of FixtureRegistry.match().

    Attributes:
        fixture: Matched fixture, None for the UNMATCHED sentinel.
        params: Path parameters bound by the pattern.
        index: Registration index of the fixture (-1 when unmatched).

    """

    fixture: FixtureDefinition | None
    params: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    index: int = -1

    @property
    def matched(self) -> bool:
        return self.fixture is not None


UNMATCHED = FixtureMatch(fixture=None)


@dataclass(frozen=True)
class _Entry:
    index: int
    pattern: PathPattern
    fixture: FixtureDefinition


class FixtureRegistry:
    """Index of fixtures keyed by HTTP method."""

    def __init__(self, fixtures: Iterable[FixtureDefinition] = ()) -> None:
        """Build the index.

        Args:
            fixtures: Fixtures in registration order.

        Raises:
            FixtureConflictError: If two fixtures share (method, pattern).

        """
        self._fixtures: tuple[FixtureDefinition, ...] = tuple(fixtures)
        literal: dict[str, dict[tuple[str, ...], _Entry]] = {}
        parameterized: dict[str, dict[int, list[_Entry]]] = {}
        seen: dict[tuple[str, str], FixtureDefinition] = {}

        for index, fixture in enumerate(self._fixtures):
            pattern = PathPattern.parse(fixture.path)
            key = (fixture.method, pattern.normalized)
            if key in seen:
                raise FixtureConflictError(
                    fixture.method,
                    pattern.normalized,
                    sources=[s for s in (seen[key].source, fixture.source) if s],
                )
            seen[key] = fixture

            entry = _Entry(index, pattern, fixture)
            if pattern.is_literal:
                literal.setdefault(fixture.method, {})[pattern.segments] = entry
            else:
                by_length = parameterized.setdefault(fixture.method, {})
                by_length.setdefault(len(pattern.segments), []).append(entry)

        for by_length in parameterized.values():
            for entries in by_length.values():
                entries.sort(key=lambda e: (-e.pattern.literal_count, e.index))

        self._literal = MappingProxyType({m: MappingProxyType(d) for m, d in literal.items()})
        self._parameterized = MappingProxyType(
            {
                m: MappingProxyType({n: tuple(es) for n, es in d.items()})
                for m, d in parameterized.items()
            }
        )

    @classmethod
    def load(cls, directory: Path) -> FixtureRegistry:
        """Load every fixture file under ``directory`` recursively.

        Raises:
            ConfigError: On unreadable or malformed fixture files.
            FixtureConflictError: On duplicate (method, pattern) pairs.

        """
        fixtures: list[FixtureDefinition] = []
        for path in iter_definition_files(directory):
            fixtures.extend(load_fixture_file(path))
        registry = cls(fixtures)
        logger.info("Loaded %d fixture(s) from %s", len(registry), directory)
        return registry

    def __len__(self) -> int:
        return len(self._fixtures)

    @property
    def fixtures(self) -> tuple[FixtureDefinition, ...]:
        """All fixtures in registration order."""
        return self._fixtures

    def match(self, method: str, path: str) -> FixtureMatch:
        """Find the fixture answering ``method path``.

        Returns:
            FixtureMatch for the winning fixture, or UNMATCHED.

        """
        method = method.upper()
        segments = split_path(path)

        entry = self._literal.get(method, {}).get(segments)
        if entry is not None:
            return FixtureMatch(entry.fixture, MappingProxyType({}), entry.index)

        for entry in self._parameterized.get(method, {}).get(len(segments), ()):
            params = entry.pattern.match(segments)
            if params is not None:
                return FixtureMatch(entry.fixture, MappingProxyType(params), entry.index)

        return UNMATCHED
