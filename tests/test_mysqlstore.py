import sqlite3

import pytest

from eventsource.mysqlstore import (
    CHECK_INDEX_SQL,
    CREATE_INDEX_SQL,
    CREATE_SQL,
    MySQLStore,
    MySQLStoreError,
    create_if_not_exists,
    expand,
)
from eventsource.store import History, Record

TABLE = "sample"


class _Cursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, query, params=()):
        self._cursor.execute(query.replace("%s", "?"), params)

    def fetchall(self):
        return self._cursor.fetchall()

    def close(self):
        self._cursor.close()


class _Connection:
    def __init__(self, conn):
        self._conn = conn

    def cursor(self):
        return _Cursor(self._conn.cursor())


class _Accessor:
    def __init__(self, db):
        self.db = db
        self.closed = 0

    def open(self):
        return self.db

    def close(self, db):
        self.closed += 1


class _FailingAccessor:
    def open(self):
        raise ConnectionError("refused")

    def close(self, db):
        pass


@pytest.fixture
def accessor():
    conn = sqlite3.connect(":memory:")
    conn.execute(
        f"CREATE TABLE {TABLE} (id INTEGER PRIMARY KEY AUTOINCREMENT,"
        " aggregate_id TEXT, data BLOB, version INTEGER)"
    )
    conn.execute(f"CREATE UNIQUE INDEX idx_{TABLE} ON {TABLE} (aggregate_id, version)")
    yield _Accessor(_Connection(conn))
    conn.close()


def _history():
    return History(
        [
            Record(version=1, data=b"a"),
            Record(version=2, data=b"b"),
            Record(version=3, data=b"c"),
        ]
    )


def test_save_empty_needs_no_connection():
    store = MySQLStore("blah", None)
    store.save("abc")
    assert store.table_name == "blah"


def test_save_and_fetch(accessor):
    store = MySQLStore(TABLE, accessor)
    history = _history()
    store.save("abc", *history)

    found = store.load("abc", 0, 0)
    assert found == history
    assert len(found) == 3
    assert accessor.closed == 2


def test_save_and_read(accessor):
    store = MySQLStore(TABLE, accessor)
    history = _history()
    store.save("abc", *history)

    found = store.read(0, len(history))
    assert len(found) == len(history)
    for item in found:
        assert item.offset > 0
        assert item.aggregate_id == "abc"
        assert item.data
        assert item.version > 0
    assert [item.version for item in found] == [1, 2, 3]


def test_read_respects_offset_and_count(accessor):
    store = MySQLStore(TABLE, accessor)
    store.save("abc", *_history())
    found = store.read(2, 1)
    assert [(item.offset, item.data) for item in found] == [(2, b"b")]


def test_save_idempotent(accessor):
    store = MySQLStore(TABLE, accessor)
    history = _history()
    store.save("abc", *history)
    store.save("abc", *history)

    found = store.load("abc", 0, 0)
    assert found == history
    assert len(found) == len(history)


def test_save_optimistic_lock(accessor):
    store = MySQLStore(TABLE, accessor)
    store.save("abc", Record(version=1, data=b"a"), Record(version=2, data=b"b"))

    with pytest.raises(MySQLStoreError, match="conflicting records"):
        store.save("abc", Record(version=2, data=b"c"), Record(version=3, data=b"d"))


def test_load_partition(accessor):
    store = MySQLStore(TABLE, accessor)
    history = _history()
    store.save("abc", *history)

    found = store.load("abc", 0, 1)
    assert len(found) == 1
    assert found == history[0:1]


def test_load_from_version(accessor):
    store = MySQLStore(TABLE, accessor)
    history = _history()
    store.save("abc", *history)
    assert store.load("abc", 2, 0) == history[1:]


def test_load_unknown_aggregate_is_empty(accessor):
    store = MySQLStore(TABLE, accessor)
    assert store.load("missing") == []


def test_connection_failure_is_wrapped():
    store = MySQLStore(TABLE, _FailingAccessor())
    with pytest.raises(MySQLStoreError, match="save failed; unable to connect to db"):
        store.save("abc", Record(version=1, data=b"a"))
    with pytest.raises(MySQLStoreError, match="load failed; unable to connect to db"):
        store.load("abc")


def test_expand():
    assert expand("SELECT * FROM ${TABLE} t, idx_${TABLE}", "events") == (
        "SELECT * FROM events t, idx_events"
    )


class _FakeCursor:
    def __init__(self, db):
        self._db = db
        self._rows = []

    def execute(self, query, params=()):
        if self._db.fail_on and self._db.fail_on in query:
            raise RuntimeError("boom")
        self._db.executed.append(query)
        self._rows = [(self._db.index_count,)] if "COUNT(*)" in query else []

    def fetchall(self):
        return self._rows

    def close(self):
        pass


class _FakeDB:
    def __init__(self, index_count, fail_on=None):
        self.index_count = index_count
        self.fail_on = fail_on
        self.executed = []

    def cursor(self):
        return _FakeCursor(self)


def test_create_if_not_exists_creates_index():
    db = _FakeDB(index_count=0)
    create_if_not_exists(db, "events")
    assert db.executed == [
        expand(CREATE_SQL, "events"),
        expand(CHECK_INDEX_SQL, "events"),
        expand(CREATE_INDEX_SQL, "events"),
    ]


def test_create_if_not_exists_skips_existing_index():
    db = _FakeDB(index_count=1)
    create_if_not_exists(db, "events")
    assert db.executed == [expand(CREATE_SQL, "events"), expand(CHECK_INDEX_SQL, "events")]


def test_create_if_not_exists_reports_table_failure():
    db = _FakeDB(index_count=0, fail_on="CREATE TABLE")
    with pytest.raises(MySQLStoreError, match="unable to create table"):
        create_if_not_exists(db, "events")


def test_create_if_not_exists_reports_index_failure():
    db = _FakeDB(index_count=0, fail_on="CREATE UNIQUE INDEX")
    with pytest.raises(MySQLStoreError, match="unable to create index"):
        create_if_not_exists(db, "events")