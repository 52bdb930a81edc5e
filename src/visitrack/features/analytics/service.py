from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from visitrack.core.errors import ValidationError
from visitrack.core.logging import get_logger
from visitrack.core.types import Clock, SystemClock, ensure_utc
from visitrack.features.store.schema import FORM, PAGE_VIEW, SESSION, VISITOR
from visitrack.features.store.service import VisitorStore

TOP_N = 10
DEFAULT_WINDOW = timedelta(days=7)


def top_n(values: Iterable[str | None], n: int = TOP_N) -> list[tuple[str, int]]:
    """
    Frequency count, descending, capped at n. Empty values are skipped.
    Ties keep first-seen order (Counter preserves insertion order, sorted is stable).
    """
    counts = Counter(v for v in values if v)
    return sorted(counts.items(), key=lambda kv: -kv[1])[:n]


@dataclass(frozen=True)
class AnalyticsReport:
    start: datetime
    end: datetime

    total_visitors: int = 0
    new_visitors: int = 0
    returning_visitors: int = 0
    total_page_views: int = 0
    avg_time_on_site: int = 0  # seconds
    form_submissions: int = 0
    leads_generated: int = 0
    lead_conversion_rate: float = 0.0

    top_pages: list[tuple[str, int]] = field(default_factory=list)
    top_countries: list[tuple[str, int]] = field(default_factory=list)
    top_devices: list[tuple[str, int]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "total_visitors": self.total_visitors,
            "new_visitors": self.new_visitors,
            "returning_visitors": self.returning_visitors,
            "total_page_views": self.total_page_views,
            "avg_time_on_site": self.avg_time_on_site,
            "form_submissions": self.form_submissions,
            "leads_generated": self.leads_generated,
            "lead_conversion_rate": self.lead_conversion_rate,
            "top_pages": [{"path": k, "views": c} for k, c in self.top_pages],
            "top_countries": [{"country": k, "visitors": c} for k, c in self.top_countries],
            "top_devices": [{"device": k, "visitors": c} for k, c in self.top_devices],
        }


@dataclass(frozen=True)
class StatsSummary:
    live_visitors: int
    today_visitors: int
    today_page_views: int
    today_leads: int
    avg_time_on_site: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "live_visitors": self.live_visitors,
            "today_visitors": self.today_visitors,
            "today_page_views": self.today_page_views,
            "today_leads": self.today_leads,
            "avg_time_on_site": self.avg_time_on_site,
        }


class AnalyticsAggregator:
    """
    Read-only windowed statistics. Every count is taken over records whose own
    timestamp lies in [start, end] inclusive.
    """

    def __init__(self, store: VisitorStore, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._logger = get_logger(__name__)

    def aggregate(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> AnalyticsReport:
        end_dt = ensure_utc(end) if end is not None else self.clock.now()
        start_dt = ensure_utc(start) if start is not None else end_dt - DEFAULT_WINDOW
        if start_dt > end_dt:
            raise ValidationError("start must not be after end", fields=("start", "end"))

        visitors = self.store.scan(VISITOR, since=start_dt, until=end_dt)
        sessions = self.store.scan(SESSION, since=start_dt, until=end_dt)
        page_views = self.store.scan(PAGE_VIEW, since=start_dt, until=end_dt)
        forms = self.store.scan(FORM, since=start_dt, until=end_dt)

        total_visitors = len(visitors)
        # current total_visits, not a point-in-time count
        new_visitors = sum(1 for v in visitors if v.get("total_visits") == 1)
        leads = sum(1 for f in forms if (f.get("email") or "").strip())

        durations = [s["duration"] for s in sessions if s.get("duration") is not None]
        # half-up; durations are never negative
        avg = int(sum(durations) / len(durations) + 0.5) if durations else 0

        report = AnalyticsReport(
            start=start_dt,
            end=end_dt,
            total_visitors=total_visitors,
            new_visitors=new_visitors,
            returning_visitors=total_visitors - new_visitors,
            total_page_views=len(page_views),
            avg_time_on_site=avg,
            form_submissions=len(forms),
            leads_generated=leads,
            lead_conversion_rate=(leads / total_visitors) if total_visitors else 0.0,
            top_pages=top_n(pv.get("path") for pv in page_views),
            top_countries=top_n(v.get("country") for v in visitors),
            top_devices=top_n(v.get("device") for v in visitors),
        )
        self._logger.debug(
            "analytics_aggregated",
            extra={"feature": "analytics", "scanned": total_visitors + len(page_views)},
        )
        return report

    def stats_summary(self, *, live_visitors: int) -> StatsSummary:
        """
        Today's numbers (UTC midnight up to the next midnight) plus the
        caller-supplied live count.
        """
        now = self.clock.now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1) - timedelta(microseconds=1)
        report = self.aggregate(day_start, day_end)
        return StatsSummary(
            live_visitors=live_visitors,
            today_visitors=report.total_visitors,
            today_page_views=report.total_page_views,
            today_leads=report.leads_generated,
            avg_time_on_site=report.avg_time_on_site,
        )
