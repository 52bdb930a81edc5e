from __future__ import annotations

from dataclasses import dataclass

VISITOR = "visitor"
SESSION = "session"
PAGE_VIEW = "page_view"
EVENT = "event"
FORM = "form"
LIVE_VISITOR = "live_visitor"


@dataclass(frozen=True, slots=True)
class KindSpec:
    """
    How the store indexes one record kind.

    time_field: timestamp used by range scans
    owner_field: visitor reference used by owner scans (None for root records)
    datetime_fields: fields decoded back to datetime when read from JSON
    """

    time_field: str
    owner_field: str | None
    datetime_fields: tuple[str, ...]


KINDS: dict[str, KindSpec] = {
    VISITOR: KindSpec("first_visit", None, ("first_visit", "last_visit", "updated_at")),
    SESSION: KindSpec("start_time", "visitor_id", ("start_time", "end_time")),
    PAGE_VIEW: KindSpec("timestamp", "visitor_id", ("timestamp",)),
    EVENT: KindSpec("timestamp", "visitor_id", ("timestamp",)),
    FORM: KindSpec("submitted_at", "visitor_id", ("submitted_at",)),
    LIVE_VISITOR: KindSpec("last_activity_at", None, ("last_activity_at", "created_at")),
}


def kind_spec(kind: str) -> KindSpec:
    try:
        return KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown record kind={kind!r}. Allowed={sorted(KINDS)}") from None


RECORDS_TABLE_NAME = "records"

RECORDS_DDL = f"""
CREATE TABLE IF NOT EXISTS {RECORDS_TABLE_NAME} (
    kind TEXT NOT NULL,
    key TEXT NOT NULL,
    owner TEXT,

    seq BIGINT NOT NULL,
    ts TIMESTAMP,

    body TEXT NOT NULL,

    PRIMARY KEY (kind, key)
);
"""

RECORDS_SEQUENCE_DDL = "CREATE SEQUENCE IF NOT EXISTS records_seq START 1;"

# owner and ts stay unindexed: DuckDB applies updates to indexed columns as delete+insert.
RECORDS_INDEXES: list[str] = []


def create_schema(conn) -> None:
    """
    Create sequence/table/indexes. No migrations. Safe to call on every open.
    """
    conn.execute(RECORDS_SEQUENCE_DDL)
    conn.execute(RECORDS_DDL)
    for ddl in RECORDS_INDEXES:
        conn.execute(ddl)
