"""Error type and error codes shared by the event store components."""

from __future__ import annotations

INVALID_ENCODING = "InvalidEncoding"
"""The serializer could not encode or decode an event."""

UNBOUND_EVENT_TYPE = "UnboundEventType"
"""The serializer has no class bound to the stored event type."""

AGGREGATE_NOT_FOUND = "AggregateNotFound"
"""The requested aggregate has no events in the store."""

UNHANDLED_EVENT = "UnhandledEvent"
"""The aggregate refused to apply an event."""


class EventSourceError(Exception):
    """An error carrying a classification code, a message and an optional cause."""

    def __init__(self, code: str, message: str, cause: BaseException | None = None) -> None:
        super().__init__(code, message, cause)
        self.code = code
        self.message = message
        self.cause = cause
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"[{self.code}] {self.message} - {self.cause}"


def err_has_code(err: BaseException | None, code: str) -> bool:
    """Return True if any error along the cause chain carries ``code``."""
    while isinstance(err, EventSourceError):
        if err.code == code:
            return True
        err = err.cause
    return False


def is_not_found(err: BaseException | None) -> bool:
    """Return True if the error chain says the aggregate was not found."""
    return err_has_code(err, AGGREGATE_NOT_FOUND)