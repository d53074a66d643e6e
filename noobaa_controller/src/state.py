from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_rfc3339(value: datetime) -> str:
    """Format *value* as RFC 3339 in UTC with a ``Z`` suffix."""
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")


class ReadWriteLock:
    """A reader/writer lock built on :class:`threading.Condition`.

    Any number of readers may hold the lock together; a writer holds it
    alone.  Waiting writers block new readers so a steady stream of
    ``state()`` calls cannot starve reconcile threads recording activity.
    The lock is not reentrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read called without a matching acquire_read")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write called without a matching acquire_write")
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass(frozen=True)
class Reporter:
    """Identity under which this controller publishes events."""

    controller: str
    instance: str | None = None


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time copy of :class:`ControllerState`, served on ``/state``."""

    last_event: datetime
    reporter: Reporter

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_event": format_rfc3339(self.last_event),
            "reporter": self.reporter.controller,
        }


class ControllerState:
    """Process-wide record of the last reconcile start and the reporter identity.

    Created once by the manager and injected into every reconcile.  Reads
    take the shared side of a :class:`ReadWriteLock`; ``record_event`` takes
    the exclusive side only for the in-memory assignment.
    """

    def __init__(
        self,
        reporter: Reporter,
        last_event: datetime | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._lock = ReadWriteLock()
        self._clock = clock
        self._reporter = reporter
        self._last_event = last_event or clock()

    @property
    def reporter(self) -> Reporter:
        return self._reporter

    def record_event(self, now: datetime | None = None) -> datetime:
        """Record a reconcile start and return the timestamp that was observed.

        The stored value only moves forward: a reconcile thread that read the
        clock earlier but reached the lock later cannot roll it back.
        """
        timestamp = now or self._clock()
        with self._lock.write_locked():
            if timestamp >= self._last_event:
                self._last_event = timestamp
        return timestamp

    def snapshot(self) -> StateSnapshot:
        with self._lock.read_locked():
            return StateSnapshot(last_event=self._last_event, reporter=self._reporter)
