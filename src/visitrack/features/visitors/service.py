from __future__ import annotations

import math
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from visitrack.core.config import VisitorsConfig
from visitrack.core.errors import NotFoundError, ValidationError, require
from visitrack.features.identity.service import IdentityResolver
from visitrack.features.identity.types import Visitor
from visitrack.features.recorder.schema import FormSubmission, PageView, VisitorEvent
from visitrack.features.sessions.types import VisitorSession
from visitrack.features.store.schema import EVENT, FORM, PAGE_VIEW, SESSION, VISITOR
from visitrack.features.store.service import Row, VisitorStore

MAX_PAGE_SIZE = 100
FILTER_KEYS = ("type", "status", "email", "country")


@dataclass
class VisitorDetails:
    visitor: Visitor
    sessions: list[VisitorSession] = field(default_factory=list)
    page_views: list[PageView] = field(default_factory=list)
    events: list[VisitorEvent] = field(default_factory=list)
    forms: list[FormSubmission] = field(default_factory=list)


@dataclass
class VisitorSummary:
    visitor: Visitor
    sessions: int = 0
    page_views: int = 0
    events: int = 0
    forms: int = 0


@dataclass
class VisitorPage:
    visitors: list[VisitorSummary]
    total: int
    pages: int
    current_page: int


class VisitorQueries:
    """Back-office reads over Visitor records and their activity."""

    def __init__(
        self,
        *,
        store: VisitorStore,
        identity: IdentityResolver,
        limits: VisitorsConfig | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.limits = limits or VisitorsConfig()

    def get_visitor(self, visitor_id: str) -> VisitorDetails:
        require(visitor_id=visitor_id)
        visitor = self.identity.get(visitor_id)
        if visitor is None:
            raise NotFoundError("Visitor", visitor_id)

        lim = self.limits
        sessions = _newest(self.store.scan(SESSION, owner=visitor_id), "start_time")
        page_views = _newest(self.store.scan(PAGE_VIEW, owner=visitor_id), "timestamp")
        events = _newest(self.store.scan(EVENT, owner=visitor_id), "timestamp")
        forms = _newest(self.store.scan(FORM, owner=visitor_id), "submitted_at")
        return VisitorDetails(
            visitor=visitor,
            sessions=[VisitorSession.from_row(r) for r in sessions[: lim.recent_sessions]],
            page_views=[PageView.from_row(r) for r in page_views[: lim.recent_page_views]],
            events=[VisitorEvent.from_row(r) for r in events[: lim.recent_events]],
            forms=[FormSubmission.from_row(r) for r in forms[: lim.recent_forms]],
        )

    def list_visitors(
        self,
        page: int = 1,
        limit: int = 20,
        filters: Mapping[str, Any] | None = None,
    ) -> VisitorPage:
        page = _positive_int("page", page)
        limit = _positive_int("limit", limit)
        if limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be <= {MAX_PAGE_SIZE}", fields=("limit",))

        where = _visitor_filter(filters or {})
        rows = self.store.scan(VISITOR, where=where)
        rows.sort(key=lambda r: r["last_visit"], reverse=True)
        total = len(rows)

        offset = (page - 1) * limit
        window = rows[offset : offset + limit]
        counts = self._activity_counts({r["visitor_id"] for r in window})
        return VisitorPage(
            visitors=[
                VisitorSummary(
                    visitor=Visitor.from_row(r),
                    sessions=counts[SESSION][r["visitor_id"]],
                    page_views=counts[PAGE_VIEW][r["visitor_id"]],
                    events=counts[EVENT][r["visitor_id"]],
                    forms=counts[FORM][r["visitor_id"]],
                )
                for r in window
            ],
            total=total,
            pages=math.ceil(total / limit),
            current_page=page,
        )

    def set_visitor_status(self, visitor_id: str, status: str) -> Visitor:
        return self.identity.set_status(visitor_id, status)

    def _activity_counts(self, visitor_ids: set[str]) -> dict[str, Counter[str]]:
        out: dict[str, Counter[str]] = {}
        for kind in (SESSION, PAGE_VIEW, EVENT, FORM):
            if not visitor_ids:
                out[kind] = Counter()
                continue
            rows = self.store.scan(kind, where=lambda r: r.get("visitor_id") in visitor_ids)
            out[kind] = Counter(r["visitor_id"] for r in rows)
        return out


def _newest(rows: list[Row], time_field: str) -> list[Row]:
    # scans come back in insertion order; reversing first keeps ties newest-inserted first
    return sorted(reversed(rows), key=lambda r: r[time_field], reverse=True)


def _positive_int(name: str, value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer", fields=(name,)) from e
    if n < 1:
        raise ValidationError(f"{name} must be >= 1", fields=(name,))
    return n


def _visitor_filter(filters: Mapping[str, Any]):
    unknown = set(filters) - set(FILTER_KEYS)
    if unknown:
        raise ValidationError(
            f"unknown filter(s): {', '.join(sorted(unknown))}", fields=tuple(sorted(unknown))
        )
    classification = _opt_upper(filters.get("type"))
    status = _opt_upper(filters.get("status"))
    email = (filters.get("email") or "").strip().lower() or None
    country = filters.get("country") or None

    def match(row: Row) -> bool:
        if classification is not None and row.get("classification") != classification:
            return False
        if status is not None and row.get("status") != status:
            return False
        if email is not None and email not in (row.get("email") or "").lower():
            return False
        if country is not None and row.get("country") != country:
            return False
        return True

    return match


def _opt_upper(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip().upper()
    return s or None
