"""Path patterns with ``:name`` parameter segments."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

PARAM_PREFIX = ":"


def split_path(path: str) -> tuple[str, ...]:
    """Split a request path into segments.

    Query string, fragment and trailing slash are ignored, so ``/users/42/?x=1``
    and ``/users/42`` yield the same segments.

    Example:
        >>> split_path("/api/v1/messages?page=2")
        ('api', 'v1', 'messages')

    """
    path = urlsplit(path).path
    stripped = path.strip("/")
    if not stripped:
        return ()
    return tuple(stripped.split("/"))


@dataclass(frozen=True)
class PathPattern:
    """Parsed fixture path pattern.

    Attributes:
        raw: Pattern text as written in the fixture file.
        segments: Pattern segments; parameters keep their ``:`` prefix.

    """

    raw: str
    segments: tuple[str, ...]

    @classmethod
    def parse(cls, pattern: str) -> PathPattern:
        return cls(raw=pattern, segments=split_path(pattern))

    @property
    def normalized(self) -> str:
        """Pattern text without trailing slash, used for conflict detection."""
        return "/" + "/".join(self.segments)

    @property
    def literal_count(self) -> int:
        return sum(1 for s in self.segments if not s.startswith(PARAM_PREFIX))

    @property
    def is_literal(self) -> bool:
        return self.literal_count == len(self.segments)

    def match(self, segments: tuple[str, ...]) -> dict[str, str] | None:
        """Match request segments, returning bound parameters or None."""
        if len(segments) != len(self.segments):
            return None
        params: dict[str, str] = {}
        for expected, actual in zip(self.segments, segments, strict=True):
            if expected.startswith(PARAM_PREFIX):
                if not actual:
                    return None
                params[expected[1:]] = actual
            elif expected != actual:
                return None
        return params
