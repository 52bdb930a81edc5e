from __future__ import annotations

from datetime import datetime

from visitrack.core.errors import ValidationError, require
from visitrack.core.ids import IdsService
from visitrack.core.logging import get_logger
from visitrack.core.types import Clock, SystemClock, ensure_utc
from visitrack.features.enrichment.service import EnrichmentService
from visitrack.features.store.schema import SESSION
from visitrack.features.store.service import Row, VisitorStore

from .types import VisitorSession, compute_duration


class SessionTracker:
    """
    Maintains VisitorSession records keyed by session_id.

    Update rules for a known session:
      - page_views += 1 on every call
      - exit_page / is_active overwritten when supplied
      - end_time only moves forward; duration is always recomputed from
        start_time and the latest end_time, never carried over
    """

    def __init__(
        self,
        *,
        store: VisitorStore,
        enrichment: EnrichmentService,
        ids: IdsService,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.enrichment = enrichment
        self.ids = ids
        self.clock = clock or SystemClock()
        self._logger = get_logger(__name__)

    def track_session(
        self,
        *,
        visitor_id: str,
        session_id: str,
        entry_page: str,
        ip: str | None = None,
        user_agent: str | None = None,
        exit_page: str | None = None,
        end_time: datetime | str | None = None,
        is_active: bool | None = None,
    ) -> VisitorSession:
        require(visitor_id=visitor_id, session_id=session_id, entry_page=entry_page)
        end_dt = _parse_end_time(end_time)
        now = self.clock.now()

        # only a new session needs the snapshot; the lookup happens outside the key lock
        facts = None
        if self.store.get(SESSION, session_id) is None:
            facts = self.enrichment.enrich(ip, user_agent)

        def create() -> Row:
            s = VisitorSession(
                id=self.ids.next_id("ses"),
                session_id=session_id,
                visitor_id=visitor_id,
                entry_page=entry_page,
                start_time=now,
                is_active=True if is_active is None else bool(is_active),
                page_views=0,
                ip_address=ip,
            )
            if facts is not None:
                s.device = facts.device
                s.browser = facts.browser
                s.os = facts.os
            if exit_page:
                s.exit_page = exit_page
            if end_dt is not None:
                s.end_time = end_dt
                s.duration = compute_duration(s.start_time, end_dt)
            return s.as_row()

        def update(row: Row) -> Row:
            s = VisitorSession.from_row(row)
            s.page_views += 1
            if exit_page:
                s.exit_page = exit_page
            if end_dt is not None and (s.end_time is None or end_dt > s.end_time):
                s.end_time = end_dt
            if s.end_time is not None:
                s.duration = compute_duration(s.start_time, s.end_time)
            if is_active is not None:
                s.is_active = bool(is_active)
            return s.as_row()

        session = VisitorSession.from_row(self.store.upsert(SESSION, session_id, create, update))
        self._logger.debug(
            "session_tracked",
            extra={
                "feature": "sessions",
                "visitor_id": visitor_id,
                "session_id": session_id,
                "op": "close" if session.is_closed else "touch",
            },
        )
        return session

    def sessions_for(self, visitor_id: str) -> list[VisitorSession]:
        return [VisitorSession.from_row(r) for r in self.store.scan(SESSION, owner=visitor_id)]


def _parse_end_time(end_time: datetime | str | None) -> datetime | None:
    if end_time is None or end_time == "":
        return None
    if isinstance(end_time, datetime):
        return ensure_utc(end_time)
    try:
        return ensure_utc(datetime.fromisoformat(str(end_time).replace("Z", "+00:00")))
    except ValueError as e:
        raise ValidationError(
            f"end_time must be an ISO 8601 timestamp, got {end_time!r}", fields=("end_time",)
        ) from e
