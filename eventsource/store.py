"""Serialized records, histories and the in-memory store."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from operator import attrgetter
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from .errors import AGGREGATE_NOT_FOUND, EventSourceError


@dataclass(frozen=True)
class Record:
    """The serialized form of one event."""

    version: int = 0
    data: bytes = b""


class History(list):
    """An ordered list of records; sorting defaults to version order."""

    def sort(self, *, key: Callable[[Any], Any] | None = None, reverse: bool = False) -> None:
        super().sort(key=key or attrgetter("version"), reverse=reverse)


@runtime_checkable
class Store(Protocol):
    """Persistence for serialized records."""

    def save(self, aggregate_id: str, *records: Record) -> None:
        """Save the records for an aggregate."""

    def load(self, aggregate_id: str, from_version: int = 0, to_version: int = 0) -> History:
        """Load records from ``from_version``; ``to_version`` 0 means no upper bound."""


class MemoryStore:
    """An in-memory store, suitable for tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events_by_id: dict[str, History] = {}

    def save(self, aggregate_id: str, *records: Record) -> None:
        with self._lock:
            history = self._events_by_id.setdefault(aggregate_id, History())
            history.extend(records)
            history.sort()

    def load(self, aggregate_id: str, from_version: int = 0, to_version: int = 0) -> History:
        with self._lock:
            stored = self._events_by_id.get(aggregate_id)
            if stored is None:
                raise EventSourceError(
                    AGGREGATE_NOT_FOUND, f"no aggregate found with id, {aggregate_id}"
                )
            return History(
                record
                for record in stored
                if record.version >= from_version
                and (to_version == 0 or record.version <= to_version)
            )


@dataclass(frozen=True)
class StreamRecord(Record):
    """A record as read from the raw event stream."""

    offset: int = 0
    aggregate_id: str = ""


@runtime_checkable
class StreamReader(Protocol):
    """Reads the raw event stream in batches."""

    def read(self, starting_offset: int, record_count: int) -> Iterable[StreamRecord]:
        """Read up to ``record_count`` records starting at ``starting_offset``."""