"""Persistence collaborator contract and an in-memory reference store.

The kernel only ever talks to :class:`EventRepository`; a real backend
(IndexedDB, SQLite, a remote log) is injected by the host application.
Every call the kernel makes is fire-and-forget: it catches and logs
whatever the repository raises.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from biofeedback_engine.kernel.events import KernelEvent

logger = structlog.get_logger(__name__)


class EventRepository(ABC):
    """Contract for the external event / metadata store."""

    @abstractmethod
    def write_event(self, event: KernelEvent) -> None:
        """Append a kernel event to the persisted session log."""

    @abstractmethod
    def get_meta(self, key: str) -> Any:
        """Return the stored metadata value for *key*, or ``None``."""

    @abstractmethod
    def set_meta(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable metadata value under *key*."""

    @abstractmethod
    def garbage_collect(self, now: float | None = None) -> int:
        """Drop events older than the retention window.  Returns the count removed."""

    @abstractmethod
    def get_session_log(self) -> list[dict[str, Any]]:
        """Return persisted events as serialisable dicts, oldest first."""


class InMemoryEventRepository(EventRepository):
    """Process-local store, used by the CLI simulator and the tests."""

    def __init__(self, retention_sec: float = 7 * 24 * 60 * 60) -> None:
        self._retention_sec = retention_sec
        self._events: list[dict[str, Any]] = []
        self._meta: dict[str, Any] = {}

    def write_event(self, event: KernelEvent) -> None:
        self._events.append(event.model_dump(mode="json"))

    def get_meta(self, key: str) -> Any:
        return self._meta.get(key)

    def set_meta(self, key: str, value: Any) -> None:
        self._meta[key] = value

    def garbage_collect(self, now: float | None = None) -> int:
        cutoff = (now if now is not None else time.time()) - self._retention_sec
        before = len(self._events)
        self._events = [e for e in self._events if e["timestamp"] >= cutoff]
        removed = before - len(self._events)
        if removed:
            logger.info("storage.garbage_collected", removed=removed)
        return removed

    def get_session_log(self) -> list[dict[str, Any]]:
        return list(self._events)
