from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from visitrack.core.errors import StoreError
from visitrack.core.logging import get_logger

from .locks import KeyedLocks
from .schema import KINDS, kind_spec

Row = dict[str, Any]
RowPredicate = Callable[[Row], bool]


class VisitorStore(Protocol):
    """
    Keyed row storage for every record kind in .schema.KINDS.

    Rows are plain dicts. Read-modify-write (update, upsert, delete_if) is atomic
    per (kind, key); different keys never serialize on each other.
    """

    def open(self) -> None: ...
    def close(self) -> None: ...

    def get(self, kind: str, key: str) -> Row | None: ...

    def create(self, kind: str, key: str, row: Row) -> Row: ...

    def update(
        self, kind: str, key: str, update_fn: Callable[[Row], Row | None]
    ) -> Row | None: ...

    def upsert(
        self,
        kind: str,
        key: str,
        create_fn: Callable[[], Row],
        update_fn: Callable[[Row], Row],
    ) -> Row: ...

    def delete_if(self, kind: str, key: str, predicate: RowPredicate) -> bool: ...

    def scan(
        self,
        kind: str,
        *,
        owner: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        where: RowPredicate | None = None,
    ) -> list[Row]: ...


def row_matches(
    kind: str,
    row: Row,
    *,
    owner: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    where: RowPredicate | None = None,
) -> bool:
    """
    Shared scan filter. Time bounds are inclusive on both ends; rows with no
    timestamp never match a bounded scan.
    """
    spec = kind_spec(kind)
    if owner is not None and (spec.owner_field is None or row.get(spec.owner_field) != owner):
        return False
    if since is not None or until is not None:
        ts = row.get(spec.time_field)
        if ts is None:
            return False
        if since is not None and ts < since:
            return False
        if until is not None and ts > until:
            return False
    if where is not None and not where(row):
        return False
    return True


class MemoryStore:
    """
    In-process store. One insertion-ordered dict per kind.

    Row objects are replaced, never mutated in place, so a scan snapshot stays
    consistent while writers proceed. Callers always receive copies.
    """

    def __init__(self, *, lock_timeout_seconds: float = 5.0) -> None:
        self._locks = KeyedLocks(timeout_seconds=lock_timeout_seconds)
        self._tables_lock = threading.Lock()
        self._tables: dict[str, dict[str, Row]] = {kind: {} for kind in KINDS}
        self._is_open = False
        self._logger = get_logger(__name__)

    def open(self) -> None:
        if self._is_open:
            return
        self._is_open = True
        self._logger.info("store_open", extra={"backend": "memory"})

    def close(self) -> None:
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _table(self, kind: str) -> dict[str, Row]:
        if not self._is_open:
            raise StoreError("MemoryStore not open. Call open() first.")
        kind_spec(kind)
        return self._tables[kind]

    def get(self, kind: str, key: str) -> Row | None:
        table = self._table(kind)
        with self._tables_lock:
            row = table.get(key)
        return copy.deepcopy(row) if row is not None else None

    def create(self, kind: str, key: str, row: Row) -> Row:
        table = self._table(kind)
        stored = copy.deepcopy(row)
        with self._tables_lock:
            if key in table:
                raise StoreError(f"{kind} already exists: {key!r}")
            table[key] = stored
        return copy.deepcopy(stored)

    def update(self, kind: str, key: str, update_fn: Callable[[Row], Row | None]) -> Row | None:
        table = self._table(kind)
        with self._locks.hold((kind, key)):
            with self._tables_lock:
                current = table.get(key)
            if current is None:
                return None
            new_row = update_fn(copy.deepcopy(current))
            if new_row is None:
                return copy.deepcopy(current)
            stored = copy.deepcopy(new_row)
            with self._tables_lock:
                table[key] = stored
            return copy.deepcopy(stored)

    def upsert(
        self,
        kind: str,
        key: str,
        create_fn: Callable[[], Row],
        update_fn: Callable[[Row], Row],
    ) -> Row:
        table = self._table(kind)
        with self._locks.hold((kind, key)):
            with self._tables_lock:
                current = table.get(key)
            if current is None:
                new_row = create_fn()
            else:
                new_row = update_fn(copy.deepcopy(current))
            stored = copy.deepcopy(new_row)
            with self._tables_lock:
                table[key] = stored
            return copy.deepcopy(stored)

    def delete_if(self, kind: str, key: str, predicate: RowPredicate) -> bool:
        table = self._table(kind)
        with self._locks.hold((kind, key)):
            with self._tables_lock:
                current = table.get(key)
            if current is None or not predicate(copy.deepcopy(current)):
                return False
            with self._tables_lock:
                del table[key]
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
        table = self._table(kind)
        with self._tables_lock:
            snapshot = list(table.values())
        return [
            copy.deepcopy(row)
            for row in snapshot
            if row_matches(kind, row, owner=owner, since=since, until=until, where=where)
        ]
