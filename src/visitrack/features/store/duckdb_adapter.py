from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

import duckdb

from visitrack.core.errors import StoreError
from visitrack.core.logging import get_logger

from .locks import KeyedLocks
from .schema import RECORDS_TABLE_NAME, create_schema, kind_spec
from .service import Row, RowPredicate, row_matches


def _naive_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def encode_row(row: Row) -> str:
    return json.dumps(
        row,
        sort_keys=True,
        separators=(",", ":"),
        default=lambda v: v.isoformat() if isinstance(v, datetime) else str(v),
    )


def decode_row(kind: str, body: str) -> Row:
    row: Row = json.loads(body)
    for name in kind_spec(kind).datetime_fields:
        value = row.get(name)
        if isinstance(value, str):
            row[name] = datetime.fromisoformat(value)
    return row


class DuckDBStore:
    """
    DuckDB persistence adapter. Owns the connection and schema.

    Every record kind lives in one `records` table; the row body is JSON and the
    owner/ts columns carry what scans filter on. Each operation runs on its own
    cursor so concurrent callers never share a connection object.
    """

    def __init__(
        self, path: str, *, clean_slate: bool = False, lock_timeout_seconds: float = 5.0
    ) -> None:
        self.path = path
        self.clean_slate = clean_slate
        self._locks = KeyedLocks(timeout_seconds=lock_timeout_seconds)
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._logger = get_logger(__name__)

    def open(self) -> None:
        if self._conn is not None:
            return
        if self.clean_slate and os.path.exists(self.path):
            os.remove(self.path)

        # Ensure parent dir exists
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        try:
            self._conn = duckdb.connect(self.path)
            create_schema(self._conn)
        except duckdb.Error as e:
            raise StoreError(f"Failed to open DuckDB store at {self.path}") from e
        self._logger.info("store_open", extra={"backend": "duckdb", "path": self.path})

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise StoreError("DuckDBStore not opened. Call open() first.")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def _cursor(self, op: str) -> Iterator[duckdb.DuckDBPyConnection]:
        t0 = time.perf_counter()
        cur = self.conn.cursor()
        try:
            yield cur
        except duckdb.Error as e:
            raise StoreError(f"DuckDB {op} failed: {e}") from e
        finally:
            cur.close()
            self._logger.debug(
                "store_op",
                extra={"op": op, "duration_ms": (time.perf_counter() - t0) * 1000.0},
            )

    @contextmanager
    def _transaction(self, op: str) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._cursor(op) as cur:
            cur.begin()
            try:
                yield cur
            except BaseException:
                cur.rollback()
                raise
            cur.commit()

    @staticmethod
    def _select_body(cur: duckdb.DuckDBPyConnection, kind: str, key: str) -> str | None:
        res = cur.execute(
            f"SELECT body FROM {RECORDS_TABLE_NAME} WHERE kind = ? AND key = ?",
            [kind, key],
        ).fetchone()
        return str(res[0]) if res else None

    @staticmethod
    def _params(kind: str, row: Row) -> tuple[Any, Any, str]:
        spec = kind_spec(kind)
        owner = row.get(spec.owner_field) if spec.owner_field else None
        return owner, _naive_utc(row.get(spec.time_field)), encode_row(row)

    def _insert(self, cur: duckdb.DuckDBPyConnection, kind: str, key: str, row: Row) -> None:
        owner, ts, body = self._params(kind, row)
        cur.execute(
            f"""
            INSERT INTO {RECORDS_TABLE_NAME} (kind, key, owner, seq, ts, body)
            VALUES (?, ?, ?, nextval('records_seq'), ?, ?)
            """,
            [kind, key, owner, ts, body],
        )

    def _replace(self, cur: duckdb.DuckDBPyConnection, kind: str, key: str, row: Row) -> None:
        owner, ts, body = self._params(kind, row)
        cur.execute(
            f"UPDATE {RECORDS_TABLE_NAME} SET owner = ?, ts = ?, body = ? WHERE kind = ? AND key = ?",
            [owner, ts, body, kind, key],
        )

    def get(self, kind: str, key: str) -> Row | None:
        with self._cursor("get") as cur:
            body = self._select_body(cur, kind, key)
        return decode_row(kind, body) if body is not None else None

    def create(self, kind: str, key: str, row: Row) -> Row:
        with self._cursor("create") as cur:
            self._insert(cur, kind, key, row)
        return decode_row(kind, encode_row(row))

    def update(self, kind: str, key: str, update_fn: Callable[[Row], Row | None]) -> Row | None:
        with self._locks.hold((kind, key)), self._transaction("update") as cur:
            body = self._select_body(cur, kind, key)
            if body is None:
                return None
            current = decode_row(kind, body)
            new_row = update_fn(current)
            if new_row is None:
                return decode_row(kind, body)
            self._replace(cur, kind, key, new_row)
        return decode_row(kind, encode_row(new_row))

    def upsert(
        self,
        kind: str,
        key: str,
        create_fn: Callable[[], Row],
        update_fn: Callable[[Row], Row],
    ) -> Row:
        with self._locks.hold((kind, key)), self._transaction("upsert") as cur:
            body = self._select_body(cur, kind, key)
            if body is None:
                new_row = create_fn()
                self._insert(cur, kind, key, new_row)
            else:
                new_row = update_fn(decode_row(kind, body))
                self._replace(cur, kind, key, new_row)
        return decode_row(kind, encode_row(new_row))

    def delete_if(self, kind: str, key: str, predicate: RowPredicate) -> bool:
        with self._locks.hold((kind, key)), self._transaction("delete") as cur:
            body = self._select_body(cur, kind, key)
            if body is None or not predicate(decode_row(kind, body)):
                return False
            cur.execute(
                f"DELETE FROM {RECORDS_TABLE_NAME} WHERE kind = ? AND key = ?",
                [kind, key],
            )
            return True

    def scan(
        self,
        kind: str,
        *,
        owner: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        where: RowPredicate | None = None,
    ) -> list[Row]:
        sql = f"SELECT body FROM {RECORDS_TABLE_NAME} WHERE kind = ?"
        params: list[Any] = [kind]
        # coarse filtering in SQL; row_matches below applies the exact semantics
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)
        if since is not None:
            sql += " AND ts >= ?"
            params.append(_naive_utc(since))
        if until is not None:
            sql += " AND ts <= ?"
            params.append(_naive_utc(until))
        sql += " ORDER BY seq"

        with self._cursor("scan") as cur:
            bodies = [str(r[0]) for r in cur.execute(sql, params).fetchall()]

        rows = [decode_row(kind, b) for b in bodies]
        return [
            r
            for r in rows
            if row_matches(kind, r, owner=owner, since=since, until=until, where=where)
        ]

    def count(self, kind: str) -> int:
        """
        Convenience method for sanity checks/tests.
        """
        with self._cursor("count") as cur:
            res = cur.execute(
                f"SELECT COUNT(*) FROM {RECORDS_TABLE_NAME} WHERE kind = ?",
                [kind],
            ).fetchone()
        return int(res[0]) if res else 0
