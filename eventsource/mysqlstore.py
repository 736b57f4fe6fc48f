"""An event store backed by a MySQL table.

The store talks to the database through an ``Accessor`` that hands out
DB-API 2.0 connections (``cursor()``, ``execute(query, params)``,
``fetchall()``, ``close()``) using the ``%s`` parameter style. The store
never commits; committing or rolling back belongs to the accessor's
``close``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Protocol, Sequence, runtime_checkable

from .store import History, Record, StreamRecord

CREATE_SQL = """
	CREATE TABLE IF NOT EXISTS ${TABLE} (
		id           INT PRIMARY KEY AUTO_INCREMENT,
		aggregate_id VARCHAR(255),
		data         VARBINARY(4096),
		version      INT
	) ENGINE=InnoDB AUTO_INCREMENT=0 DEFAULT CHARSET=utf8;
"""
"""SQL that creates the event table."""

CHECK_INDEX_SQL = """
	SELECT
		COUNT(*) IndexIsThere
	FROM
		INFORMATION_SCHEMA.STATISTICS
	WHERE table_schema=DATABASE()
		AND table_name='${TABLE}' AND index_name='idx_${TABLE}';
"""
"""SQL that counts the indexes named after the table."""

CREATE_INDEX_SQL = """
	CREATE UNIQUE INDEX idx_${TABLE}
	ON ${TABLE} (aggregate_id, version);
"""
"""SQL that creates the unique (aggregate_id, version) index."""

_INSERT_SQL = "INSERT INTO ${TABLE} (aggregate_id, data, version) VALUES (%s, %s, %s)"
_SELECT_SQL = (
    "SELECT data, version FROM ${TABLE} WHERE aggregate_id = %s"
    " AND version >= %s AND version <= %s ORDER BY version ASC"
)
_READ_SQL = "SELECT id, aggregate_id, data, version FROM ${TABLE} WHERE id >= %s ORDER BY ID LIMIT %s"

_MAX_INT32 = 2**31 - 1


class MySQLStoreError(Exception):
    """Raised when the MySQL store cannot complete an operation."""


@runtime_checkable
class Accessor(Protocol):
    """Hands out database connections to the store."""

    def open(self) -> Any:
        """Return a DB-API connection."""

    def close(self, db: Any) -> None:
        """Release a connection obtained from ``open``."""


def expand(template: str, table_name: str) -> str:
    """Substitute the table name for every ``${TABLE}`` in the template."""
    return template.replace("${TABLE}", table_name)


def _execute(db: Any, query: str, params: Sequence[Any] = ()) -> None:
    cursor = db.cursor()
    try:
        cursor.execute(query, tuple(params))
    finally:
        cursor.close()


def _query(db: Any, query: str, params: Sequence[Any] = ()) -> list[Sequence[Any]]:
    cursor = db.cursor()
    try:
        cursor.execute(query, tuple(params))
        return list(cursor.fetchall())
    finally:
        cursor.close()


def create_if_not_exists(db: Any, table_name: str) -> None:
    """Create the event table and its unique index unless they already exist."""
    try:
        _execute(db, expand(CREATE_SQL, table_name))
    except Exception as exc:
        raise MySQLStoreError(f"unable to create table: {exc}") from exc

    try:
        rows = _query(db, expand(CHECK_INDEX_SQL, table_name))
    except Exception as exc:
        raise MySQLStoreError(f"query failed to determine if index exists: {exc}") from exc

    try:
        exists = int(rows[0][0])
    except (IndexError, TypeError, ValueError) as exc:
        raise MySQLStoreError(
            f"unable to read response for whether index exists: {exc}"
        ) from exc

    if exists > 0:
        return

    try:
        _execute(db, expand(CREATE_INDEX_SQL, table_name))
    except Exception as exc:
        raise MySQLStoreError(f"unable to create index: {exc}") from exc


class MySQLStore:
    """Stores serialized events in a MySQL table, one row per event."""

    def __init__(self, table_name: str, accessor: Accessor | None) -> None:
        self.table_name = table_name
        self.accessor = accessor

    def _expand(self, statement: str) -> str:
        return expand(statement, self.table_name)

    @contextmanager
    def _connect(self, failure: str) -> Iterator[Any]:
        if self.accessor is None:
            raise MySQLStoreError(f"{failure}: no accessor configured")
        try:
            db = self.accessor.open()
        except Exception as exc:
            raise MySQLStoreError(f"{failure}: {exc}") from exc
        try:
            yield db
        finally:
            self.accessor.close(db)

    def save(self, aggregate_id: str, *records: Record) -> None:
        """Insert the records; re-saving identical records is allowed."""
        if not records:
            return

        with self._connect("save failed; unable to connect to db") as db:
            insert = self._expand(_INSERT_SQL)
            for record in records:
                try:
                    _execute(db, insert, (aggregate_id, record.data, record.version))
                except Exception:
                    self._check_idempotent(db, aggregate_id, records)
                    return

    def _check_idempotent(self, db: Any, aggregate_id: str, records: Sequence[Record]) -> None:
        segments = History(records)
        segments.sort()
        from_version = segments[0].version
        to_version = segments[-1].version
        try:
            loaded = self._load(db, aggregate_id, from_version, to_version)
        except MySQLStoreError as exc:
            raise MySQLStoreError(
                f"unable to retrieve version {from_version}-{to_version}"
                f" for aggregate, {aggregate_id}"
            ) from exc

        if list(segments) != list(loaded):
            raise MySQLStoreError(
                "unable to save records; conflicting records detected for aggregate, "
                f"{aggregate_id}"
            )

    def load(self, aggregate_id: str, from_version: int = 0, to_version: int = 0) -> History:
        """Load records from ``from_version``; ``to_version`` 0 means no upper bound."""
        with self._connect("load failed; unable to connect to db") as db:
            return self._load(db, aggregate_id, from_version, to_version)

    def _load(self, db: Any, aggregate_id: str, from_version: int, to_version: int) -> History:
        if to_version == 0:
            to_version = _MAX_INT32

        try:
            rows = _query(db, self._expand(_SELECT_SQL), (aggregate_id, from_version, to_version))
        except Exception as exc:
            raise MySQLStoreError(f"load failed; unable to query rows: {exc}") from exc

        history = History()
        for row in rows:
            try:
                data, version = row
                history.append(Record(version=int(version), data=bytes(data)))
            except (TypeError, ValueError) as exc:
                raise MySQLStoreError(f"load failed; unable to parse row: {exc}") from exc
        return history

    def read(self, starting_offset: int, record_count: int) -> list[StreamRecord]:
        """Read up to ``record_count`` rows of the raw stream from ``starting_offset``."""
        with self._connect("load failed; unable to connect to db") as db:
            try:
                rows = _query(db, self._expand(_READ_SQL), (starting_offset, record_count))
            except Exception as exc:
                raise MySQLStoreError(
                    f"read failed; unable to read records from db: {exc}"
                ) from exc

            records = []
            for row in rows:
                try:
                    offset, aggregate_id, data, version = row
                    records.append(
                        StreamRecord(
                            version=int(version),
                            data=bytes(data),
                            offset=int(offset),
                            aggregate_id=str(aggregate_id),
                        )
                    )
                except (TypeError, ValueError) as exc:
                    raise MySQLStoreError(
                        f"failed to scan stream record from db: {exc}"
                    ) from exc
            return records