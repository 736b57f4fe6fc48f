"""Unique resource reservations kept in a DynamoDB table.

A command that implements ``Reservable`` names a resource, such as an e-mail
address, that only one owner may hold. A wrapped dispatcher or repository
reserves that resource before it runs the command. The ``api`` object is a
low-level DynamoDB client offering ``get_item(**request)``,
``put_item(**request)`` and ``delete_item(**request)`` with the service's
request and response shapes. Service errors are expected to carry
``response["Error"]["Code"]``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from .errors import EventSourceError, err_has_code
from .events import Command

DEFAULT_REGION = "us-east-1"
"""Region the singleton table is located in by default."""

HASH_KEY = "key"
"""Hash key of the singleton table."""

OWNER_FIELD = "owner"
"""Attribute holding the owner of a reservation."""

EXPIRES_FIELD = "expires"
"""Attribute holding the expiry of a reservation, in Unix seconds."""

ALREADY_RESERVED = "err:singleton:already_reserved"
"""Error code for a resource reserved by someone else."""

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

_FOREVER = 2**63 - 1


class ReservationError(Exception):
    """Raised when a resource is not available or the registry cannot work."""


@dataclass(frozen=True)
class Resource:
    """A unique resource and the owner that holds or wants it."""

    type: str = ""
    id: str = ""
    owner: str = ""

    def key(self) -> str:
        """Return the table's hash key for this resource."""
        return f"{self.type}:{self.id}"


@runtime_checkable
class Reservable(Protocol):
    """A command that requires a resource to be reserved before it runs."""

    def aggregate_id(self) -> str:
        """Id of the aggregate the command applies to."""

    def reserve(self) -> tuple[Resource, timedelta | float]:
        """Return the resource to reserve and for how long; zero means forever."""


Dispatcher = Callable[[Command], None]
RepositoryApply = Callable[[Command], int]


def _service_code(exc: BaseException) -> str | None:
    response = getattr(exc, "response", None)
    if not isinstance(response, Mapping):
        return None
    error = response.get("Error")
    if not isinstance(error, Mapping) or "Code" not in error:
        return None
    return str(error["Code"])


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _as_callable(target: Any, method: str) -> Callable[[Command], Any]:
    bound = getattr(target, method, None)
    if callable(bound):
        return bound
    if callable(target):
        return target
    raise TypeError(f"{target!r} has no {method} method and is not callable")


class Registry:
    """Reserves, checks and releases unique resources."""

    def __init__(self, table_name: str, api: Any = None) -> None:
        self.table_name = table_name
        self.region = DEFAULT_REGION
        self._api = api

    @property
    def api(self) -> Any:
        """The DynamoDB client; raises if none was given."""
        if self._api is None:
            raise ReservationError("no DynamoDB client configured")
        return self._api

    def _key(self, resource: Resource) -> dict[str, Any]:
        return {HASH_KEY: {"S": resource.key()}}

    def is_available(self, resource: Resource) -> None:
        """Return if the resource may be reserved by its owner; raise otherwise."""
        out = self.api.get_item(
            TableName=self.table_name,
            ConsistentRead=True,
            Key=self._key(resource),
        )
        item = (out or {}).get("Item") or {}
        if not item:
            return

        try:
            owner = item.get(OWNER_FIELD, {}).get("S", "")
            expires_at = int(item.get(EXPIRES_FIELD, {}).get("N", "0"))
        except (AttributeError, TypeError, ValueError) as exc:
            raise ReservationError(f"unable to read reservation: {exc}") from exc

        if owner != resource.owner:
            raise ReservationError("not the owner")
        if expires_at < int(time.time()):
            raise ReservationError("not found")

    def reserve(self, resource: Resource, duration: timedelta | float = 0) -> None:
        """Reserve the resource for its owner; a zero duration lasts forever.

        The owner may reserve the same resource any number of times.
        """
        seconds = _seconds(duration)
        expires_at = _FOREVER if seconds == 0 else int(time.time() + seconds)

        self.api.put_item(
            TableName=self.table_name,
            Item={
                HASH_KEY: {"S": resource.key()},
                OWNER_FIELD: {"S": resource.owner},
                EXPIRES_FIELD: {"N": str(expires_at)},
            },
            ConditionExpression="attribute_not_exists(#key) or #owner = :owner",
            ExpressionAttributeNames={"#key": HASH_KEY, "#owner": OWNER_FIELD},
            ExpressionAttributeValues={":owner": {"S": resource.owner}},
        )

    def release(self, resource: Resource) -> None:
        """Remove the reservation so the resource can be reserved again."""
        self.api.delete_item(TableName=self.table_name, Key=self._key(resource))

    def _reserve_for(self, command: Command) -> None:
        if not isinstance(command, Reservable):
            return
        resource, duration = command.reserve()
        try:
            self.reserve(resource, duration)
        except ReservationError:
            raise
        except Exception as exc:
            if _service_code(exc) == CONDITIONAL_CHECK_FAILED:
                raise EventSourceError(
                    ALREADY_RESERVED,
                    f"{resource.type} resource already exists, {resource.id}",
                    exc,
                ) from exc
            raise

    def wrap(self, dispatcher: Any) -> Dispatcher:
        """Return a dispatcher that reserves resources before dispatching.

        ``dispatcher`` is an object with a ``dispatch`` method or a callable.
        """
        target = _as_callable(dispatcher, "dispatch")

        def dispatch(command: Command) -> None:
            self._reserve_for(command)
            target(command)

        return dispatch

    def wrap_repository(self, repository: Any) -> RepositoryApply:
        """Return an apply function that reserves resources before applying.

        ``repository`` is an object with an ``apply`` method or a callable.
        """
        target = _as_callable(repository, "apply")

        def apply(command: Command) -> int:
            self._reserve_for(command)
            return target(command)

        return apply


def is_already_reserved(err: BaseException | None) -> bool:
    """Return True if the error says the resource is held by someone else."""
    return err_has_code(err, ALREADY_RESERVED)


def make_create_table_input(
    table_name: str, read_capacity: int, write_capacity: int
) -> dict[str, Any]:
    """Return the CreateTable request for a singleton table."""
    return {
        "TableName": table_name,
        "AttributeDefinitions": [{"AttributeName": HASH_KEY, "AttributeType": "S"}],
        "KeySchema": [{"AttributeName": HASH_KEY, "KeyType": "HASH"}],
        "ProvisionedThroughput": {
            "ReadCapacityUnits": read_capacity,
            "WriteCapacityUnits": write_capacity,
        },
    }