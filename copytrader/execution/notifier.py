"""Notification sink for operator-facing events (fills, skips, faults)."""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, event: str, message: str, **fields: Any) -> None: ...


class LogNotifier:
    """Default sink: every notification becomes a structured log record."""

    def __init__(self, name: str = "copytrader.notify") -> None:
        self._log = logging.getLogger(name)

    async def notify(self, event: str, message: str, **fields: Any) -> None:
        self._log.info(event, extra={"notification": message, **fields})


class RecordingNotifier:
    """Keeps the most recent notifications in memory for the engine status."""

    def __init__(self, inner: Notifier | None = None, limit: int = 100) -> None:
        self._inner = inner
        self._limit = limit
        self.events: list[dict[str, Any]] = []

    async def notify(self, event: str, message: str, **fields: Any) -> None:
        self.events.append({"event": event, "message": message, **fields})
        if len(self.events) > self._limit:
            del self.events[: len(self.events) - self._limit]
        if self._inner is not None:
            await self._inner.notify(event, message, **fields)
