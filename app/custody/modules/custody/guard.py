"""
Per-object serialization for custody mutations.

One lock per object code, created on first use and dropped once no request
holds or waits for it. Requests for different object codes never share a
lock, and a request only ever holds one, so there is no lock ordering to get
wrong.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from .errors import LockTimeout

logger = logging.getLogger(__name__)


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


@dataclass(frozen=True)
class LockHandle:
    object_code: str
    acquired_at: float
    waited_seconds: float


class ConcurrencyGuard:
    def __init__(self, timeout_seconds: float = 5.0):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._mutex = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    def _checkout(self, object_code: str) -> _LockEntry:
        with self._mutex:
            entry = self._entries.get(object_code)
            if entry is None:
                entry = _LockEntry()
                self._entries[object_code] = entry
            entry.refs += 1
            return entry

    def _checkin(self, object_code: str, entry: _LockEntry) -> None:
        with self._mutex:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(object_code) is entry:
                del self._entries[object_code]

    @contextmanager
    def acquire(self, object_code: str, timeout: float | None = None) -> Iterator[LockHandle]:
        """
        Hold the lock for object_code for the duration of the with-block.
        Raises LockTimeout if it cannot be taken within the timeout.
        """
        wait = self.timeout_seconds if timeout is None else timeout
        entry = self._checkout(object_code)
        started = time.monotonic()
        acquired = False
        try:
            acquired = entry.lock.acquire(timeout=wait)
            waited = time.monotonic() - started
            if not acquired:
                logger.warning("Custody lock timeout object_code=%s waited=%.2fs", object_code, waited)
                raise LockTimeout(
                    f"Object {object_code} is busy; retry shortly.",
                    object_code=object_code,
                )
            yield LockHandle(object_code=object_code, acquired_at=time.monotonic(), waited_seconds=waited)
        finally:
            if acquired:
                entry.lock.release()
            self._checkin(object_code, entry)

    def held_codes(self) -> list[str]:
        """Object codes with a live lock entry (held or awaited). Diagnostics only."""
        with self._mutex:
            return sorted(self._entries)
