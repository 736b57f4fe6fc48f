"""Saving, loading and commanding aggregates through a store and a serializer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, TextIO

from .errors import AGGREGATE_NOT_FOUND, UNHANDLED_EVENT, EventSourceError
from .events import Aggregate, Command, CommandHandler, Event, event_type
from .serializer import JSONSerializer, Serializer
from .store import MemoryStore, Store

Observer = Callable[[Event], None]


def _stamp(now: datetime) -> str:
    millis = now.microsecond // 1000
    return f"{now:%b} {now.day:>2} {now:%H:%M:%S}.{millis:03d}"


class Repository:
    """Saves events, rebuilds aggregates from them and applies commands.

    ``prototype`` is the aggregate class (or an instance of it); fresh
    aggregates are made by calling the class without arguments. The store
    defaults to an in-memory store and the serializer to an empty
    JSONSerializer. When ``debug`` is a text stream, diagnostic lines are
    written to it.
    """

    def __init__(
        self,
        prototype: Any,
        store: Store | None = None,
        serializer: Serializer | None = None,
        observers: Iterable[Observer] = (),
        debug: TextIO | None = None,
    ) -> None:
        self._prototype: type = prototype if isinstance(prototype, type) else type(prototype)
        self._store: Store = store if store is not None else MemoryStore()
        self._serializer: Serializer = serializer if serializer is not None else JSONSerializer()
        self._observers: list[Observer] = list(observers)
        self._debug = debug

    @property
    def store(self) -> Store:
        """The underlying store."""
        return self._store

    @property
    def serializer(self) -> Serializer:
        """The underlying serializer."""
        return self._serializer

    def _logf(self, message: str) -> None:
        if self._debug is None:
            return
        self._debug.write(_stamp(datetime.now()))
        self._debug.write(" ")
        self._debug.write(message)
        if not message.endswith("\n"):
            self._debug.write("\n")

    def new(self) -> Aggregate:
        """Return a new, empty aggregate."""
        return self._prototype()

    def save(self, *events: Event) -> None:
        """Serialize the events and persist them under the first event's aggregate id."""
        if not events:
            return
        aggregate_id = events[0].aggregate_id()
        records = [self._serializer.marshal_event(event) for event in events]
        self._store.save(aggregate_id, *records)

    def load(self, aggregate_id: str) -> Aggregate:
        """Rebuild the aggregate from its stored events."""
        aggregate, _ = self._load_version(aggregate_id)
        return aggregate

    def _load_version(self, aggregate_id: str) -> tuple[Aggregate, int]:
        history = self._store.load(aggregate_id, 0, 0)
        if not history:
            raise EventSourceError(
                AGGREGATE_NOT_FOUND, f"unable to load {self.new()}, {aggregate_id}"
            )

        self._logf(f"Loaded {len(history)} event(s) for aggregate id, {aggregate_id}")
        aggregate = self.new()

        version = 0
        for record in history:
            event = self._serializer.unmarshal_event(record)
            try:
                aggregate.on(event)
            except Exception as exc:
                name, _ = event_type(event)
                raise EventSourceError(
                    UNHANDLED_EVENT, f"aggregate was unable to handle event, {name}", exc
                ) from exc
            version = event.event_version()

        return aggregate, version

    def apply(self, command: Command) -> int:
        """Execute the command and return the aggregate's version afterwards."""
        if command is None:
            raise ValueError("Command provided to Repository.apply may not be None")
        aggregate_id = command.aggregate_id()
        if not aggregate_id:
            raise ValueError(
                "Command provided to Repository.apply may not contain a blank aggregate id"
            )

        try:
            aggregate, version = self._load_version(aggregate_id)
        except Exception:
            aggregate, version = self.new(), 0

        if not isinstance(aggregate, CommandHandler):
            raise TypeError(f"Aggregate, {aggregate}, does not implement CommandHandler")

        events = list(aggregate.apply(command))
        self.save(*events)

        if events:
            version = events[-1].event_version()

        for event in events:
            for observer in self._observers:
                observer(event)

        return version

    def dispatch(self, command: Command) -> None:
        """Execute the command, discarding the resulting version."""
        self.apply(command)