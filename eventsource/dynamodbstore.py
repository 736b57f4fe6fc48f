"""A store that keeps events in DynamoDB items, several events per item.

Events of one aggregate are grouped into partitions of ``events_per_item``
versions. Each event is an attribute of the partition's item named
``_<version>`` that holds the serialized event as binary. The ``api`` object
is a low-level DynamoDB client offering ``update_item(**request)`` and
``query(**request)`` with the service's request and response shapes.
Service errors are expected to carry ``response["Error"]["Code"]``.
"""

from __future__ import annotations

import base64
import json
import re
from typing import Any, Iterable, Mapping, TextIO

from .store import History, Record

DEFAULT_REGION = "us-east-1"
"""Region the table is located in by default."""

HASH_KEY = "key"
"""Hash key of the table; holds the aggregate id."""

RANGE_KEY = "partition"
"""Range key of the table; the page number of a group of events."""

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

_PREFIX = "_"
_VERSION_PATTERN = re.compile(r"[+-]?[0-9]+")


class DynamoDBStoreError(Exception):
    """Raised when the store cannot complete an operation."""


class ConditionalCheckFailedError(DynamoDBStoreError):
    """Raised when saved records conflict with records already stored."""

    def __init__(self) -> None:
        super().__init__(CONDITIONAL_CHECK_FAILED)


class InvalidKeyError(ValueError):
    """Raised for an attribute name that is not an event key."""

    def __init__(self) -> None:
        super().__init__("invalid event key")


def is_key(key: str) -> bool:
    """Return True if the attribute name holds an event."""
    return key.startswith(_PREFIX)


def make_key(version: int) -> str:
    """Return the attribute name for an event version."""
    return f"{_PREFIX}{version}"


def version_from_key(key: str) -> int:
    """Return the event version encoded in an attribute name."""
    if not key.startswith(_PREFIX):
        raise InvalidKeyError()
    digits = key[len(_PREFIX):]
    if not _VERSION_PATTERN.fullmatch(digits):
        raise InvalidKeyError()
    return int(digits)


def changes(record: Mapping[str, Any] | None) -> list[Record]:
    """Return the events added by a DynamoDB stream record, ordered by version."""
    stream = (record or {}).get("dynamodb") or {}
    new_image = stream.get("NewImage") or {}
    old_image = stream.get("OldImage") or {}

    added = {key for key in new_image if is_key(key)}
    added.difference_update(key for key in old_image if is_key(key))

    items = [
        Record(version=version_from_key(key), data=new_image[key].get("B", b""))
        for key in added
    ]
    items.sort(key=lambda item: item.version)
    return items


def table_name(event_source: str) -> str:
    """Extract the table name from a DynamoDB stream event source ARN."""
    segments = event_source.split("/")
    if len(segments) < 2:
        raise ValueError("invalid event source arn")
    return segments[1]


def select_partition(version: int, events_per_item: int) -> int:
    """Return the partition holding ``version``, rounding toward zero."""
    quotient = abs(version) // abs(events_per_item)
    return -quotient if (version < 0) != (events_per_item < 0) else quotient


def make_create_table_input(
    table_name: str,
    read_capacity: int,
    write_capacity: int,
    hash_key: str = HASH_KEY,
    range_key: str = RANGE_KEY,
) -> dict[str, Any]:
    """Return the default CreateTable request for an event table."""
    return {
        "TableName": table_name,
        "AttributeDefinitions": [
            {"AttributeName": hash_key, "AttributeType": "S"},
            {"AttributeName": range_key, "AttributeType": "N"},
        ],
        "KeySchema": [
            {"AttributeName": hash_key, "KeyType": "HASH"},
            {"AttributeName": range_key, "KeyType": "RANGE"},
        ],
        "ProvisionedThroughput": {
            "ReadCapacityUnits": read_capacity,
            "WriteCapacityUnits": write_capacity,
        },
        "StreamSpecification": {
            "StreamEnabled": True,
            "StreamViewType": "NEW_AND_OLD_IMAGES",
        },
    }


def _validate(records: list[Record]) -> None:
    if not records:
        raise ValueError("no records to save")
    for previous, current in zip(records, records[1:]):
        if previous.version == current.version:
            raise ValueError("version numbers must be unique")


def make_update_item_input(
    table_name: str,
    hash_key: str,
    range_key: str,
    events_per_item: int,
    aggregate_id: str,
    records: Iterable[Record],
) -> dict[str, Any]:
    """Return the UpdateItem request that adds the records to their partition."""
    ordered = sorted(records, key=lambda record: record.version)
    _validate(ordered)

    partition_id = select_partition(ordered[0].version, events_per_item)
    names: dict[str, str] = {"#revision": "revision"}
    values: dict[str, Any] = {":one": {"N": "1"}}
    conditions = []
    assignments = []

    for record in ordered:
        key = make_key(record.version)
        name_ref = f"#{key}"
        value_ref = f":{key}"
        conditions.append(f"attribute_not_exists({name_ref})")
        assignments.append(f"{name_ref} = {value_ref}")
        names[name_ref] = key
        values[value_ref] = {"B": record.data}

    return {
        "TableName": table_name,
        "Key": {
            hash_key: {"S": aggregate_id},
            range_key: {"N": str(partition_id)},
        },
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": values,
        "ConditionExpression": " AND ".join(conditions),
        "UpdateExpression": "ADD #revision :one SET " + ", ".join(assignments),
    }


def make_query_input(
    table_name: str,
    hash_key: str,
    range_key: str,
    aggregate_id: str,
    from_partition: int,
    to_partition: int,
) -> dict[str, Any]:
    """Return the Query request for an aggregate; ``to_partition`` 0 means all partitions."""
    request: dict[str, Any] = {
        "TableName": table_name,
        "Select": "ALL_ATTRIBUTES",
        "ConsistentRead": True,
        "ExpressionAttributeNames": {"#key": hash_key},
        "ExpressionAttributeValues": {":key": {"S": aggregate_id}},
    }
    if to_partition == 0:
        request["KeyConditionExpression"] = "#key = :key"
    else:
        request["KeyConditionExpression"] = (
            "#key = :key AND #partition >= :from AND #partition <= :to"
        )
        request["ExpressionAttributeNames"]["#partition"] = range_key
        request["ExpressionAttributeValues"][":from"] = {"N": str(from_partition)}
        request["ExpressionAttributeValues"][":to"] = {"N": str(to_partition)}
    return request


def _service_error(exc: BaseException) -> tuple[str, str] | None:
    response = getattr(exc, "response", None)
    if not isinstance(response, Mapping):
        return None
    error = response.get("Error")
    if not isinstance(error, Mapping) or "Code" not in error:
        return None
    return str(error["Code"]), str(error.get("Message", ""))


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


class DynamoDBStore:
    """An event store backed by a DynamoDB table."""

    def __init__(
        self,
        table_name: str,
        api: Any = None,
        region: str = DEFAULT_REGION,
        events_per_item: int = 100,
        debug: TextIO | None = None,
    ) -> None:
        self.table_name = table_name
        self.region = region
        self.events_per_item = events_per_item
        self.hash_key = HASH_KEY
        self.range_key = RANGE_KEY
        self._api = api
        self._debug = debug

    @property
    def api(self) -> Any:
        """The DynamoDB client; raises if none was given."""
        if self._api is None:
            raise DynamoDBStoreError("no DynamoDB client configured")
        return self._api

    def save(self, aggregate_id: str, *records: Record) -> None:
        """Add the records to the aggregate; re-saving identical records is allowed."""
        if not records:
            return

        ordered = sorted(records, key=lambda record: record.version)
        request = make_update_item_input(
            self.table_name,
            self.hash_key,
            self.range_key,
            self.events_per_item,
            aggregate_id,
            ordered,
        )

        if self._debug is not None:
            json.dump(request, self._debug, indent=2, default=_json_default)
            self._debug.write("\n")

        try:
            self.api.update_item(**request)
        except DynamoDBStoreError:
            raise
        except Exception as exc:
            error = _service_error(exc)
            if error is None:
                raise
            code, message = error
            if code == CONDITIONAL_CHECK_FAILED:
                self._check_idempotent(aggregate_id, ordered)
                return
            raise DynamoDBStoreError(f"Save failed. {message} [{code}]") from exc

    def _check_idempotent(self, aggregate_id: str, records: list[Record]) -> None:
        if not records:
            return
        history = self.load(aggregate_id, 0, records[-1].version)
        if len(history) < len(records):
            raise ConditionalCheckFailedError()
        if list(history[len(history) - len(records):]) != list(records):
            raise ConditionalCheckFailedError()

    def load(self, aggregate_id: str, from_version: int = 0, to_version: int = 0) -> History:
        """Load records from ``from_version``; ``to_version`` 0 means no upper bound."""
        request = make_query_input(
            self.table_name,
            self.hash_key,
            self.range_key,
            aggregate_id,
            select_partition(from_version, self.events_per_item),
            select_partition(to_version, self.events_per_item),
        )

        history = History()
        while True:
            out = self.api.query(**request)
            items = out.get("Items") or []
            if not items:
                break

            for item in items:
                for key, value in item.items():
                    if not is_key(key):
                        continue
                    version = version_from_key(key)
                    if version < from_version:
                        continue
                    if to_version > 0 and version > to_version:
                        continue
                    history.append(Record(version=version, data=value.get("B", b"")))

            start_key = out.get("LastEvaluatedKey")
            if not start_key:
                break
            request = {**request, "ExclusiveStartKey": start_key}

        history.sort()
        return history