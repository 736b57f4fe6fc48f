"""Conversion between events and serialized records."""

from __future__ import annotations

import dataclasses
import json
import typing
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .errors import INVALID_ENCODING, UNBOUND_EVENT_TYPE, EventSourceError
from .events import Event, event_type
from .store import History, Record


@runtime_checkable
class Serializer(Protocol):
    """Converts events to records and back."""

    def marshal_event(self, event: Event) -> Record:
        """Convert an event to a record."""

    def unmarshal_event(self, record: Record) -> Event:
        """Convert a record back into an event."""


def _fields_of(obj: Any) -> dict[str, Any]:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    return dict(vars(obj))


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _fields_of(value)
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _annotations(cls: type) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        merged.update(vars(klass).get("__annotations__", {}))
    return merged


def _accepts_datetime(hint: Any) -> bool:
    if hint is None:
        return False
    if isinstance(hint, str):
        return "datetime" in hint
    return hint is datetime or datetime in typing.get_args(hint)


def _build(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        raise TypeError("event data must be an object")
    hints = _annotations(cls)
    values = {
        name: datetime.fromisoformat(value)
        if isinstance(value, str) and _accepts_datetime(hints.get(name))
        else value
        for name, value in data.items()
    }
    if dataclasses.is_dataclass(cls):
        names = {f.name for f in dataclasses.fields(cls) if f.init}
        return cls(**{k: v for k, v in values.items() if k in names})
    obj = cls.__new__(cls)
    obj.__dict__.update(values)
    return obj


class JSONSerializer:
    """Serializes events as JSON with a type tag, ``{"t": type, "d": data}``."""

    def __init__(self, *events: Any) -> None:
        self._event_types: dict[str, type] = {}
        self.bind(*events)

    def bind(self, *events: Any) -> None:
        """Register event instances or classes; may be called more than once."""
        for event in events:
            name, cls = event_type(event)
            self._event_types[name] = cls

    def marshal_event(self, event: Event) -> Record:
        name, _ = event_type(event)
        try:
            data = json.dumps(
                {"t": name, "d": _fields_of(event)}, default=_encode_default
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EventSourceError(INVALID_ENCODING, "unable to encode event", exc) from exc
        return Record(version=event.event_version(), data=data)

    def unmarshal_event(self, record: Record) -> Event:
        try:
            wrapper = json.loads(record.data)
        except (TypeError, ValueError) as exc:
            raise EventSourceError(INVALID_ENCODING, "unable to unmarshal event", exc) from exc
        if not isinstance(wrapper, dict):
            raise EventSourceError(INVALID_ENCODING, "unable to unmarshal event")

        name = wrapper.get("t", "")
        cls = self._event_types.get(name) if isinstance(name, str) else None
        if cls is None:
            raise EventSourceError(UNBOUND_EVENT_TYPE, f"unbound event type, {name}")

        try:
            return _build(cls, wrapper.get("d"))
        except (TypeError, ValueError, NameError) as exc:
            raise EventSourceError(
                INVALID_ENCODING, f"unable to unmarshal event data into {cls.__name__}", exc
            ) from exc

    def marshal_all(self, *events: Event) -> History:
        """Marshal every event into a History."""
        return History(self.marshal_event(event) for event in events)