"""Events, commands and the protocols that aggregates implement."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Event(Protocol):
    """A change that happened to an aggregate, named in the past tense."""

    def aggregate_id(self) -> str:
        """Id of the aggregate the event refers to."""

    def event_version(self) -> int:
        """Version number of this event."""

    def event_at(self) -> datetime | None:
        """When the event occurred."""


@runtime_checkable
class Command(Protocol):
    """The data needed to mutate an aggregate."""

    def aggregate_id(self) -> str:
        """Id of the aggregate the command applies to."""


@runtime_checkable
class CommandHandler(Protocol):
    """Consumes a command and produces the resulting events."""

    def apply(self, command: Command) -> list[Event]:
        """Apply a command to the aggregate, returning new events."""


@runtime_checkable
class Aggregate(Protocol):
    """Current state of a domain object: a left fold over its events."""

    def on(self, event: Event) -> None:
        """Apply one event; raise if the event cannot be applied."""


@dataclass
class Model:
    """Default event implementation, meant to be subclassed."""

    id: str = ""
    version: int = 0
    at: datetime | None = None

    def aggregate_id(self) -> str:
        return self.id

    def event_version(self) -> int:
        return self.version

    def event_at(self) -> datetime | None:
        return self.at


@dataclass
class CommandModel:
    """Default command implementation, meant to be subclassed."""

    id: str = ""

    def aggregate_id(self) -> str:
        return self.id


def event_type(event: Any) -> tuple[str, type]:
    """Return the type name of an event (instance or class) and its class.

    An event may choose its own name by defining ``event_type()``; otherwise
    the class name is used. When a class is given and its ``event_type`` is a
    plain method, the class is instantiated without arguments to call it.
    """
    if isinstance(event, type):
        cls = event
        typer = getattr(cls, "event_type", None)
        if typer is None or not callable(typer):
            return cls.__name__, cls
        if inspect.ismethod(typer):
            return typer(), cls
        return cls().event_type(), cls

    cls = type(event)
    typer = getattr(event, "event_type", None)
    if callable(typer):
        return typer(), cls
    return cls.__name__, cls