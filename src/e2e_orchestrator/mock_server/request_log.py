"""Append-only request log of the mock API server."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True)
class RequestRecord:
    """One request answered by the mock server.

    Attributes:
        method: HTTP method.
        path: Request path without query string.
        query: Raw query string.
        status: Status code returned.
        fixture: Pattern of the matched fixture, None when unmatched.
        injected_failure: Whether the failure response was served.
        duration_ms: Time spent answering, latency included.
        timestamp: When the request arrived (UTC).

    """

    method: str
    path: str
    query: str
    status: int
    fixture: str | None
    injected_failure: bool = False
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def matched(self) -> bool:
        return self.fixture is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["matched"] = self.matched
        return data


class RequestLog:
    """Thread-safe append-only log with counters.

    Records are never removed or modified; readers get snapshots.
    """

    def __init__(self) -> None:
        self._records: list[RequestRecord] = []
        self._counters: Counter[str] = Counter()
        self._lock = threading.Lock()

    def append(self, record: RequestRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._counters["total"] += 1
            self._counters["matched" if record.matched else "unmatched"] += 1
            if record.injected_failure:
                self._counters["injected_failures"] += 1

    def __len__(self) -> int:
        return len(self._records)

    def entries(self) -> list[RequestRecord]:
        """Snapshot of all records, oldest first."""
        with self._lock:
            return list(self._records)

    def unmatched(self) -> list[RequestRecord]:
        """Snapshot of requests no fixture answered."""
        with self._lock:
            return [r for r in self._records if not r.matched]

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                key: self._counters[key]
                for key in ("total", "matched", "unmatched", "injected_failures")
            }
