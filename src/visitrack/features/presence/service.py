from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from visitrack.core.errors import optional_count, require
from visitrack.core.logging import get_logger
from visitrack.core.types import Clock, SystemClock
from visitrack.features.enrichment.service import EnrichmentService
from visitrack.features.store.schema import LIVE_VISITOR
from visitrack.features.store.service import Row, VisitorStore

from .state import presence_state
from .types import LiveVisitor

# smallest step that keeps last_activity_at strictly increasing under a coarse clock
_TICK = timedelta(microseconds=1)


class PresenceRegister:
    """
    Heartbeat-driven live presence, one LiveVisitor per visitor_id.

    A bare heartbeat (no counters from the client) advances time_on_site by
    time_step_seconds and page_views by page_step; the client is expected to call
    roughly every time_step_seconds.
    """

    def __init__(
        self,
        *,
        store: VisitorStore,
        enrichment: EnrichmentService,
        clock: Clock | None = None,
        time_step_seconds: int = 5,
        page_step: int = 1,
    ) -> None:
        self.store = store
        self.enrichment = enrichment
        self.clock = clock or SystemClock()
        self.time_step_seconds = int(time_step_seconds)
        self.page_step = int(page_step)
        self._logger = get_logger(__name__)

    def heartbeat(
        self,
        *,
        visitor_id: str,
        current_page: str,
        is_active: bool = True,
        ip: str | None = None,
        user_agent: str | None = None,
        page_title: str | None = None,
        email: str | None = None,
        name: str | None = None,
        time_on_site: Any = None,
        page_views: Any = None,
    ) -> LiveVisitor:
        require(visitor_id=visitor_id, current_page=current_page)
        tos = optional_count("time_on_site", time_on_site)
        pvs = optional_count("page_views", page_views)
        now = self.clock.now()

        facts = None
        if self.store.get(LIVE_VISITOR, visitor_id) is None:
            facts = self.enrichment.enrich(ip, user_agent)

        def create() -> Row:
            lv = LiveVisitor(
                visitor_id=visitor_id,
                current_page=current_page,
                is_active=bool(is_active),
                last_activity_at=now,
                created_at=now,
                page_title=page_title or None,
                time_on_site=tos if tos is not None else 0,
                page_views=pvs if pvs is not None else 1,
                email=email or None,
                name=name or None,
                ip_address=ip,
            )
            if facts is not None:
                lv.country = facts.country
                lv.city = facts.city
                lv.device = facts.device
                lv.browser = facts.browser
            return lv.as_row()

        def update(row: Row) -> Row:
            lv = LiveVisitor.from_row(row)
            lv.current_page = current_page
            if page_title:
                lv.page_title = page_title
            lv.is_active = bool(is_active)
            lv.last_activity_at = _next_activity(lv.last_activity_at, now)
            lv.time_on_site = tos if tos is not None else lv.time_on_site + self.time_step_seconds
            lv.page_views = pvs if pvs is not None else lv.page_views + self.page_step
            if email:
                lv.email = email
            if name:
                lv.name = name
            if ip:
                lv.ip_address = ip
            return lv.as_row()

        live = LiveVisitor.from_row(self.store.upsert(LIVE_VISITOR, visitor_id, create, update))
        self._logger.debug(
            "heartbeat",
            extra={"feature": "presence", "op": "heartbeat", "visitor_id": visitor_id},
        )
        return live

    def list_live(self) -> list[LiveVisitor]:
        """
        Snapshot of visitors flagged active and seen within the live window,
        most recently active first.
        """
        now = self.clock.now()
        rows = self.store.scan(
            LIVE_VISITOR,
            where=lambda r: bool(r.get("is_active"))
            and presence_state(r["last_activity_at"], now).live,
        )
        live = [LiveVisitor.from_row(r) for r in rows]
        live.sort(key=lambda lv: lv.last_activity_at, reverse=True)
        return live

    def get(self, visitor_id: str) -> LiveVisitor | None:
        row = self.store.get(LIVE_VISITOR, visitor_id)
        return LiveVisitor.from_row(row) if row is not None else None


def _next_activity(previous: datetime, now: datetime) -> datetime:
    if now > previous:
        return now
    return previous + _TICK
