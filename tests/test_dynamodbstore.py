import io
import json

import pytest

from eventsource.dynamodbstore import (
    CONDITIONAL_CHECK_FAILED,
    DEFAULT_REGION,
    HASH_KEY,
    RANGE_KEY,
    ConditionalCheckFailedError,
    DynamoDBStore,
    DynamoDBStoreError,
    InvalidKeyError,
    changes,
    is_key,
    make_create_table_input,
    make_key,
    make_query_input,
    make_update_item_input,
    select_partition,
    table_name,
    version_from_key,
)
from eventsource.store import Record


class FakeClientError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.response = {"Error": {"Code": code, "Message": message}}


class FakeDynamoDB:
    """In-memory table answering update_item and query one item per page."""

    def __init__(self):
        self.items = {}
        self.queries = 0

    def update_item(self, **request):
        key = request["Key"]
        hash_value = next(v["S"] for v in key.values() if "S" in v)
        partition = int(next(v["N"] for v in key.values() if "N" in v))
        item = self.items.setdefault(
            (hash_value, partition), {k: dict(v) for k, v in key.items()}
        )
        names = request["ExpressionAttributeNames"]
        values = request["ExpressionAttributeValues"]
        event_refs = [ref for ref in names if ref.startswith("#_")]
        if any(names[ref] in item for ref in event_refs):
            raise FakeClientError(CONDITIONAL_CHECK_FAILED, "condition failed")
        for ref in event_refs:
            item[names[ref]] = values[":" + names[ref]]
        revision = int(item.get("revision", {"N": "0"})["N"]) + 1
        item["revision"] = {"N": str(revision)}
        return {}

    def query(self, **request):
        self.queries += 1
        values = request["ExpressionAttributeValues"]
        aggregate_id = values[":key"]["S"]
        low = int(values[":from"]["N"]) if ":from" in values else None
        high = int(values[":to"]["N"]) if ":to" in values else None
        matching = sorted(
            (partition, item)
            for (hash_value, partition), item in self.items.items()
            if hash_value == aggregate_id
            and (low is None or partition >= low)
            and (high is None or partition <= high)
        )
        start = request.get("ExclusiveStartKey")
        if start is not None:
            after = int(start[RANGE_KEY]["N"])
            matching = [(p, i) for p, i in matching if p > after]
        if not matching:
            return {"Items": []}
        partition, item = matching[0]
        out = {"Items": [item]}
        if len(matching) > 1:
            out["LastEvaluatedKey"] = {RANGE_KEY: {"N": str(partition)}}
        return out


class FailingDynamoDB:
    def update_item(self, **request):
        raise FakeClientError("ProvisionedThroughputExceededException", "slow down")


HISTORY = [
    Record(version=1, data=b"a"),
    Record(version=2, data=b"b"),
    Record(version=3, data=b"c"),
]


def test_changes_simple():
    record = {
        "dynamodb": {
            "NewImage": {"_1": {"B": b"a"}, "_2": {"B": b"b"}, "_3": {"B": b"c"}},
            "OldImage": {"_1": {"B": b"a"}},
        }
    }
    records = changes(record)
    assert len(records) == 2
    assert records == [Record(version=2, data=b"b"), Record(version=3, data=b"c")]


def test_changes_empty_record():
    assert changes(None) == []
    assert changes({}) == []


def test_changes_ignores_non_event_attributes():
    record = {"dynamodb": {"NewImage": {"key": {"S": "abc"}, "_5": {"B": b"e"}}}}
    assert changes(record) == [Record(version=5, data=b"e")]


def test_changes_invalid_key():
    record = {"dynamodb": {"NewImage": {"_x": {"B": b"e"}}}}
    with pytest.raises(InvalidKeyError):
        changes(record)


def test_table_name():
    arn = "arn:aws:dynamodb:us-west-2:000000000000:table/table-local-orgs/stream/2017-03-14T04:49:34.930"
    assert table_name(arn) == "table-local-orgs"
    with pytest.raises(ValueError):
        table_name("bogus")


def test_key_round_trip():
    key = make_key(1)
    assert is_key(key)
    assert version_from_key(key) == 1


@pytest.mark.parametrize("key,version", [("_1", 1), ("_42", 42)])
def test_version_from_key(key, version):
    assert version_from_key(key) == version


@pytest.mark.parametrize("key", ["1", "_a", "_"])
def test_version_from_key_invalid(key):
    with pytest.raises(InvalidKeyError):
        version_from_key(key)


@pytest.mark.parametrize(
    "version,per_item,expected", [(0, 100, 0), (99, 100, 0), (100, 100, 1), (3, 2, 1)]
)
def test_select_partition(version, per_item, expected):
    assert select_partition(version, per_item) == expected


def test_make_create_table_input():
    request = make_create_table_input("events", 20, 30)
    assert request["TableName"] == "events"
    assert request["KeySchema"] == [
        {"AttributeName": HASH_KEY, "KeyType": "HASH"},
        {"AttributeName": RANGE_KEY, "KeyType": "RANGE"},
    ]
    assert request["AttributeDefinitions"][1] == {
        "AttributeName": RANGE_KEY,
        "AttributeType": "N",
    }
    assert request["ProvisionedThroughput"] == {
        "ReadCapacityUnits": 20,
        "WriteCapacityUnits": 30,
    }
    assert request["StreamSpecification"]["StreamViewType"] == "NEW_AND_OLD_IMAGES"


def test_make_update_item_input_sorts_and_builds_expressions():
    records = [Record(version=2, data=b"b"), Record(version=1, data=b"a")]
    request = make_update_item_input("events", "key", "partition", 100, "abc", records)
    assert request["Key"] == {"key": {"S": "abc"}, "partition": {"N": "0"}}
    assert request["ConditionExpression"] == (
        "attribute_not_exists(#_1) AND attribute_not_exists(#_2)"
    )
    assert request["UpdateExpression"] == "ADD #revision :one SET #_1 = :_1, #_2 = :_2"
    assert request["ExpressionAttributeNames"] == {
        "#revision": "revision",
        "#_1": "_1",
        "#_2": "_2",
    }
    assert request["ExpressionAttributeValues"][":_2"] == {"B": b"b"}


def test_make_update_item_input_partition_from_first_version():
    request = make_update_item_input(
        "events", "key", "partition", 2, "abc", [Record(version=5, data=b"x")]
    )
    assert request["Key"]["partition"] == {"N": "2"}


def test_make_update_item_input_rejects_empty():
    with pytest.raises(ValueError, match="no records"):
        make_update_item_input("events", "key", "partition", 100, "abc", [])


def test_make_update_item_input_rejects_duplicate_versions():
    records = [Record(version=1, data=b"a"), Record(version=1, data=b"b")]
    with pytest.raises(ValueError, match="unique"):
        make_update_item_input("events", "key", "partition", 100, "abc", records)


def test_make_query_input_all_partitions():
    request = make_query_input("events", "key", "partition", "abc", 0, 0)
    assert request["KeyConditionExpression"] == "#key = :key"
    assert request["ExpressionAttributeValues"] == {":key": {"S": "abc"}}


def test_make_query_input_partition_range():
    request = make_query_input("events", "key", "partition", "abc", 1, 3)
    assert request["KeyConditionExpression"] == (
        "#key = :key AND #partition >= :from AND #partition <= :to"
    )
    assert request["ExpressionAttributeNames"]["#partition"] == "partition"
    assert request["ExpressionAttributeValues"][":from"] == {"N": "1"}
    assert request["ExpressionAttributeValues"][":to"] == {"N": "3"}


def test_store_defaults():
    store = DynamoDBStore("blah")
    assert store.region == DEFAULT_REGION
    assert store.events_per_item == 100


def test_store_save_empty_without_client():
    store = DynamoDBStore("blah")
    assert store.save("abc") is None
    with pytest.raises(DynamoDBStoreError):
        store.load("abc")


def test_save_and_fetch():
    store = DynamoDBStore("events", api=FakeDynamoDB())
    store.save("abc", *HISTORY)
    found = store.load("abc", 0, 0)
    assert list(found) == HISTORY
    assert len(found) == len(HISTORY)


def test_save_and_load_from_version():
    store = DynamoDBStore("events", api=FakeDynamoDB())
    store.save("abc", *HISTORY)
    found = store.load("abc", 2, 0)
    assert list(found) == HISTORY[1:]


def test_save_idempotent():
    store = DynamoDBStore("events", api=FakeDynamoDB())
    store.save("abc", *HISTORY)
    store.save("abc", *HISTORY)
    assert list(store.load("abc", 0, 0)) == HISTORY


def test_save_optimistic_lock():
    store = DynamoDBStore("events", api=FakeDynamoDB())
    store.save("abc", Record(version=1, data=b"a"), Record(version=2, data=b"b"))
    with pytest.raises(ConditionalCheckFailedError):
        store.save("abc", Record(version=2, data=b"c"), Record(version=3, data=b"d"))


def test_load_partition():
    store = DynamoDBStore("events", api=FakeDynamoDB(), events_per_item=2)
    store.save("abc", *HISTORY)
    found = store.load("abc", 0, 1)
    assert list(found) == HISTORY[0:1]


def test_load_follows_pages_in_order():
    api = FakeDynamoDB()
    store = DynamoDBStore("events", api=api, events_per_item=2)
    store.save("abc", Record(version=3, data=b"c"))
    store.save("abc", Record(version=1, data=b"a"))
    store.save("abc", Record(version=5, data=b"e"))
    found = store.load("abc")
    assert [record.version for record in found] == [1, 3, 5]
    assert api.queries == 3


def test_save_other_service_error():
    store = DynamoDBStore("events", api=FailingDynamoDB())
    with pytest.raises(DynamoDBStoreError, match=r"slow down \[ProvisionedThroughputExceededException\]"):
        store.save("abc", Record(version=1, data=b"a"))


def test_debug_writes_request():
    out = io.StringIO()
    store = DynamoDBStore("events", api=FakeDynamoDB(), debug=out)
    store.save("abc", Record(version=1, data=b"a"))
    written = json.loads(out.getvalue())
    assert written["TableName"] == "events"
    assert written["ExpressionAttributeValues"][":_1"] == {"B": "YQ=="}
    assert out.getvalue().endswith("\n")