"""Tests for path patterns and FixtureRegistry matching precedence."""

import json
from pathlib import Path

import pytest
import yaml

from e2e_orchestrator.config.models import FixtureDefinition
from e2e_orchestrator.core.exceptions import ConfigError, FixtureConflictError
from e2e_orchestrator.fixtures import UNMATCHED, FixtureRegistry, PathPattern, split_path


def _fixture(path: str, method: str = "GET", **kwargs) -> FixtureDefinition:  # noqa: ANN003
    return FixtureDefinition(method=method, path=path, **kwargs)


class TestPathPattern:
    """Test pattern parsing and segment matching."""

    @pytest.mark.parametrize(
        ("path", "segments"),
        [
            ("/", ()),
            ("/users/42", ("users", "42")),
            ("/users/42/", ("users", "42")),
            ("/users/42?expand=true", ("users", "42")),
        ],
    )
    def test_split_path(self, path: str, segments: tuple) -> None:
        assert split_path(path) == segments

    def test_literal_count(self) -> None:
        pattern = PathPattern.parse("/users/:id/posts/:post")
        assert pattern.literal_count == 2
        assert not pattern.is_literal
        assert PathPattern.parse("/users/42").is_literal

    def test_match_binds_params(self) -> None:
        pattern = PathPattern.parse("/users/:id/posts/:post")
        assert pattern.match(("users", "7", "posts", "99")) == {"id": "7", "post": "99"}
        assert pattern.match(("users", "7", "comments", "99")) is None
        assert pattern.match(("users", "7")) is None

    def test_normalized_drops_trailing_slash(self) -> None:
        assert PathPattern.parse("/users/:id/").normalized == "/users/:id"


class TestMatching:
    """Test match() precedence."""

    def test_literal_beats_parameterized(self) -> None:
        """/users/42 wins over /users/:id regardless of registration order."""
        registry = FixtureRegistry(
            [_fixture("/users/:id", body="any user"), _fixture("/users/42", body="user 42")]
        )

        assert registry.match("GET", "/users/42").fixture.body == "user 42"
        generic = registry.match("GET", "/users/7")
        assert generic.fixture.body == "any user"
        assert dict(generic.params) == {"id": "7"}

    def test_more_literal_segments_win(self) -> None:
        registry = FixtureRegistry(
            [
                _fixture("/:kind/:id/posts", body="generic"),
                _fixture("/users/:id/posts", body="user posts"),
            ]
        )
        assert registry.match("GET", "/users/1/posts").fixture.body == "user posts"
        assert registry.match("GET", "/teams/1/posts").fixture.body == "generic"

    def test_first_registered_wins_ties(self) -> None:
        registry = FixtureRegistry(
            [_fixture("/users/:id", body="first"), _fixture("/users/:user_id", body="second")]
        )
        match = registry.match("GET", "/users/1")
        assert match.fixture.body == "first"
        assert match.index == 0

    def test_method_scoped(self) -> None:
        registry = FixtureRegistry([_fixture("/login", method="POST")])
        assert registry.match("post", "/login").matched
        assert registry.match("GET", "/login") is UNMATCHED

    def test_query_and_trailing_slash_ignored(self) -> None:
        registry = FixtureRegistry([_fixture("/api/v1/messages")])
        assert registry.match("GET", "/api/v1/messages/?page=2").matched

    def test_root_path(self) -> None:
        registry = FixtureRegistry([_fixture("/", body="root")])
        assert registry.match("GET", "/").fixture.body == "root"

    def test_unmatched_sentinel(self) -> None:
        registry = FixtureRegistry([_fixture("/users/:id")])
        match = registry.match("GET", "/users/1/extra")
        assert match is UNMATCHED
        assert not match.matched
        assert match.index == -1

    def test_deterministic(self) -> None:
        fixtures = [_fixture("/a/:x/c"), _fixture("/a/b/:y"), _fixture("/:p/b/c")]
        first = FixtureRegistry(fixtures).match("GET", "/a/b/c")
        for _ in range(5):
            assert FixtureRegistry(fixtures).match("GET", "/a/b/c").index == first.index
        assert first.index == 0


class TestConflicts:
    """Test uniqueness of (method, normalized pattern)."""

    def test_duplicate_rejected(self) -> None:
        with pytest.raises(FixtureConflictError) as exc_info:
            FixtureRegistry(
                [
                    _fixture("/users/:id", source="a.yaml"),
                    _fixture("/users/:id/", source="b.yaml"),
                ]
            )
        assert exc_info.value.sources == ["a.yaml", "b.yaml"]
        assert exc_info.value.pattern == "/users/:id"

    def test_same_path_different_method_allowed(self) -> None:
        registry = FixtureRegistry([_fixture("/users"), _fixture("/users", method="POST")])
        assert len(registry) == 2


class TestLoad:
    """Test loading a fixture directory."""

    def test_load_directory(self, tmp_path: Path) -> None:
        (tmp_path / "users").mkdir()
        (tmp_path / "users" / "get.yaml").write_text(
            yaml.safe_dump([{"method": "GET", "path": "/users/:id", "body": {"id": "?"}}])
        )
        (tmp_path / "messages.json").write_text(
            json.dumps({"fixtures": [{"method": "GET", "path": "/api/v1/messages", "body": []}]})
        )

        registry = FixtureRegistry.load(tmp_path)

        assert len(registry) == 2
        assert [f.path for f in registry.fixtures] == ["/api/v1/messages", "/users/:id"]

    def test_conflict_across_files_names_both(self, tmp_path: Path) -> None:
        for name in ("a.yaml", "b.yaml"):
            (tmp_path / name).write_text(yaml.safe_dump({"method": "GET", "path": "/ping"}))

        with pytest.raises(FixtureConflictError) as exc_info:
            FixtureRegistry.load(tmp_path)

        assert [Path(s).name for s in exc_info.value.sources] == ["a.yaml", "b.yaml"]

    def test_malformed_fixture(self, tmp_path: Path) -> None:
        (tmp_path / "bad.yaml").write_text(yaml.safe_dump({"method": "GET", "path": "no-slash"}))
        with pytest.raises(ConfigError, match="bad.yaml"):
            FixtureRegistry.load(tmp_path)
