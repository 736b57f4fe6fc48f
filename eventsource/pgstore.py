"""An event store backed by a PostgreSQL table.

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
		id           SERIAL PRIMARY KEY,
		aggregate_id VARCHAR(255) NOT NULL,
		data         BYTEA,
		version      INT
	);
"""
"""SQL that creates the event table."""

CHECK_INDEX_SQL = """
	SELECT count(*)
  FROM pg_indexes
  WHERE schemaname = 'public'
    AND tablename  = '${TABLE}'
    AND indexname  = 'idx_${TABLE}';
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
_MAX_VERSION_SQL = "SELECT MAX(version) FROM ${TABLE} WHERE aggregate_id = %s"

_MAX_INT32 = 2**31 - 1


class PostgresStoreError(Exception):
    """Raised when the PostgreSQL store cannot complete an operation."""


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
        raise PostgresStoreError(f"unable to create table: {exc}") from exc

    try:
        rows = _query(db, expand(CHECK_INDEX_SQL, table_name))
    except Exception as exc:
        raise PostgresStoreError(f"query failed to determine if index exists: {exc}") from exc

    try:
        exists = int(rows[0][0])
    except (IndexError, TypeError, ValueError) as exc:
        raise PostgresStoreError(
            f"unable to read response for whether index exists: {exc}"
        ) from exc

    if exists > 0:
        return

    try:
        _execute(db, expand(CREATE_INDEX_SQL, table_name))
    except Exception as exc:
        raise PostgresStoreError(f"unable to create index: {exc}") from exc


class PostgresStore:
    """Stores serialized events in a PostgreSQL table, one row per event."""

    def __init__(self, table_name: str, accessor: Accessor | None) -> None:
        self.table_name = table_name
        self.accessor = accessor

    def _expand(self, statement: str) -> str:
        return expand(statement, self.table_name)

    @contextmanager
    def _connect(self, failure: str) -> Iterator[Any]:
        if self.accessor is None:
            raise PostgresStoreError(f"{failure}: no accessor configured")
        try:
            db = self.accessor.open()
        except Exception as exc:
            raise PostgresStoreError(f"{failure}: {exc}") from exc
        try:
            yield db
        finally:
            self.accessor.close(db)

    def _max_version(self, db: Any, aggregate_id: str) -> int:
        try:
            rows = _query(db, self._expand(_MAX_VERSION_SQL), (aggregate_id,))
        except Exception as exc:
            raise PostgresStoreError(f"unable to query database: {exc}") from exc
        if not rows:
            return 0
        try:
            value = rows[0][0]
            return 0 if value is None else int(value)
        except (IndexError, TypeError, ValueError) as exc:
            raise PostgresStoreError(
                f"unable to read version info from database: {exc}"
            ) from exc

    def save(self, aggregate_id: str, *records: Record) -> None:
        """Insert the records; re-saving identical records is allowed.

        Records at or below the stored maximum version are checked against
        what is stored instead of being inserted.
        """
        if not records:
            return

        with self._connect("save failed; unable to connect to db") as db:
            try:
                max_version = self._max_version(db, aggregate_id)
            except PostgresStoreError as exc:
                raise PostgresStoreError(
                    f"save failed; unable to connect to db: {exc}"
                ) from exc

            items = History(records)
            items.sort()

            if max_version >= items[0].version:
                self._check_idempotent(db, aggregate_id, items)
                return

            insert = self._expand(_INSERT_SQL)
            for record in items:
                try:
                    _execute(db, insert, (aggregate_id, record.data, record.version))
                except Exception:
                    # Failures of individual inserts are not reported.
                    continue

    def _check_idempotent(self, db: Any, aggregate_id: str, records: Sequence[Record]) -> None:
        segments = History(records)
        segments.sort()
        from_version = segments[0].version
        to_version = segments[-1].version
        try:
            loaded = self._load(db, aggregate_id, from_version, to_version)
        except PostgresStoreError as exc:
            raise PostgresStoreError(
                f"unable to retrieve version {from_version}-{to_version}"
                f" for aggregate, {aggregate_id}"
            ) from exc

        if list(segments) != list(loaded):
            raise PostgresStoreError(
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
            raise PostgresStoreError(f"load failed; unable to query rows: {exc}") from exc

        history = History()
        for row in rows:
            try:
                data, version = row
                history.append(Record(version=int(version), data=bytes(data)))
            except (TypeError, ValueError) as exc:
                raise PostgresStoreError(f"load failed; unable to parse row: {exc}") from exc
        return history

    def read(self, starting_offset: int, record_count: int) -> list[StreamRecord]:
        """Read up to ``record_count`` rows of the raw stream from ``starting_offset``."""
        with self._connect("load failed; unable to connect to db") as db:
            try:
                rows = _query(db, self._expand(_READ_SQL), (starting_offset, record_count))
            except Exception as exc:
                raise PostgresStoreError(
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
                    raise PostgresStoreError(
                        f"failed to scan stream record from db: {exc}"
                    ) from exc
            return records