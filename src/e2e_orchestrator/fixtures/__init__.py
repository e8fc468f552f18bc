"""Fixture loading and request matching."""

from .pattern import PathPattern, split_path
from .registry import UNMATCHED, FixtureMatch, FixtureRegistry

__all__ = ["UNMATCHED", "FixtureMatch", "FixtureRegistry", "PathPattern", "split_path"]
