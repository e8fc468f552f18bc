"""Lifecycle events published by the service supervisor."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .process import ProcessState


@dataclass(frozen=True)
class LifecycleEvent:
    """A service changed lifecycle state.

    Attributes:
        service: Service name.
        state: State the service entered.
        critical: Whether the service is critical.
        exit_code: Process exit code for stopped/crashed events.
        detail: Free-form detail (e.g. crash reason).
        timestamp: When the transition happened (UTC).

    """

    service: str
    state: ProcessState
    critical: bool = True
    exit_code: int | None = None
    detail: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventStream:
    """Append-only event history with replaying subscribers.

    Every subscribe() call starts from the first event ever published and
    then follows live events until close().
    """

    def __init__(self) -> None:
        self._history: list[LifecycleEvent] = []
        self._changed = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[LifecycleEvent]:
        return list(self._history)

    def publish(self, event: LifecycleEvent) -> None:
        if self._closed:
            return
        self._history.append(event)
        self._wake()

    def close(self) -> None:
        self._closed = True
        self._wake()

    def _wake(self) -> None:
        changed = self._changed
        self._changed = asyncio.Event()
        changed.set()

    async def subscribe(self) -> AsyncIterator[LifecycleEvent]:
        index = 0
        while True:
            changed = self._changed
            while index < len(self._history):
                yield self._history[index]
                index += 1
            if self._closed:
                return
            await changed.wait()
