from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from visitrack.core.errors import ValidationError
from visitrack.core.types import ManualClock
from visitrack.features.analytics.service import AnalyticsAggregator, top_n
from visitrack.features.identity.types import Visitor
from visitrack.features.recorder.schema import FormSubmission, PageView
from visitrack.features.sessions.types import VisitorSession
from visitrack.features.store.schema import FORM, PAGE_VIEW, SESSION, VISITOR
from visitrack.features.store.service import MemoryStore

DAY = datetime(2026, 3, 2, tzinfo=UTC)


def _store():
    s = MemoryStore()
    s.open()
    return s


def _visitor(store, vid, at, *, visits=1, country=None, device=None):
    v = Visitor(
        id=f"vis_{vid}",
        visitor_id=vid,
        first_visit=at,
        last_visit=at,
        total_visits=visits,
        country=country,
        device=device,
    )
    store.create(VISITOR, vid, v.as_row())


def _page_view(store, n, path, at):
    pv = PageView(id=f"pv{n}", visitor_id="v", url=path, path=path, timestamp=at)
    store.create(PAGE_VIEW, pv.id, pv.as_row())


def _session(store, sid, at, duration):
    s = VisitorSession(
        id=sid, session_id=sid, visitor_id="v", entry_page="/", start_time=at, duration=duration
    )
    store.create(SESSION, sid, s.as_row())


def _form(store, fid, at, email=None):
    f = FormSubmission(
        id=fid, visitor_id="v", form_type="contact", page="/", submitted_at=at, email=email
    )
    store.create(FORM, fid, f.as_row())


def test_top_n_stable_tie_break_and_cap():
    assert top_n(["/a", "/b", "/c"]) == [("/a", 1), ("/b", 1), ("/c", 1)]
    assert top_n(["/a", "/b", "/c", "/b", "/c"]) == [("/b", 2), ("/c", 2), ("/a", 1)]
    assert top_n([None, "", "x"]) == [("x", 1)]
    assert len(top_n([f"/p{i}" for i in range(25)])) == 10


def test_aggregate_counts_over_inclusive_range():
    store = _store()
    start, end = DAY, DAY + timedelta(days=1)

    _visitor(store, "new1", start, country="US", device="desktop")
    _visitor(store, "ret1", DAY + timedelta(hours=3), visits=4, country="DE", device="mobile")
    _visitor(store, "new2", end, country="US", device="mobile")
    _visitor(store, "old", start - timedelta(seconds=1), country="FR")

    for i, path in enumerate(["/jobs", "/", "/jobs", "/about"]):
        _page_view(store, i, path, DAY + timedelta(minutes=i))
    _page_view(store, 99, "/outside", end + timedelta(seconds=1))

    _session(store, "s1", DAY, 10)
    _session(store, "s2", DAY, 20)
    _session(store, "s3", DAY, None)

    _form(store, "f1", DAY, email="a@b.com")
    _form(store, "f2", DAY, email="  ")
    _form(store, "f3", DAY)

    r = AnalyticsAggregator(store).aggregate(start, end)

    assert r.total_visitors == 3
    assert r.new_visitors == 2
    assert r.returning_visitors == 1
    assert r.total_page_views == 4
    assert r.avg_time_on_site == 15
    assert r.form_submissions == 3
    assert r.leads_generated == 1
    assert r.lead_conversion_rate == pytest.approx(1 / 3)
    assert r.top_pages == [("/jobs", 2), ("/", 1), ("/about", 1)]
    assert r.top_countries == [("US", 2), ("DE", 1)]
    assert r.top_devices == [("mobile", 2), ("desktop", 1)]

    d = r.as_dict()
    assert d["top_pages"][0] == {"path": "/jobs", "views": 2}
    assert d["top_countries"][0] == {"country": "US", "visitors": 2}


def test_empty_range_is_zeroed_report():
    r = AnalyticsAggregator(_store()).aggregate(DAY, DAY + timedelta(hours=1))

    assert r.total_visitors == 0
    assert r.avg_time_on_site == 0
    assert r.lead_conversion_rate == 0.0
    assert r.top_pages == [] and r.top_countries == [] and r.top_devices == []


def test_start_after_end_rejected():
    with pytest.raises(ValidationError):
        AnalyticsAggregator(_store()).aggregate(DAY, DAY - timedelta(seconds=1))


def test_default_window_is_last_seven_days():
    store = _store()
    now = DAY + timedelta(days=10)
    _visitor(store, "recent", now - timedelta(days=6))
    _visitor(store, "stale", now - timedelta(days=8))

    r = AnalyticsAggregator(store, clock=ManualClock(now)).aggregate()

    assert r.total_visitors == 1
    assert r.end == now
    assert r.start == now - timedelta(days=7)


def test_stats_summary_covers_today_only():
    store = _store()
    now = DAY + timedelta(hours=14)
    _visitor(store, "today", DAY + timedelta(hours=1))
    _visitor(store, "yesterday", DAY - timedelta(hours=1))
    _page_view(store, 1, "/", DAY + timedelta(hours=2))
    _form(store, "f1", DAY + timedelta(hours=3), email="a@b.com")

    s = AnalyticsAggregator(store, clock=ManualClock(now)).stats_summary(live_visitors=2)

    assert s.as_dict() == {
        "live_visitors": 2,
        "today_visitors": 1,
        "today_page_views": 1,
        "today_leads": 1,
        "avg_time_on_site": 0,
    }


def test_avg_time_on_site_rounds_half_up():
    store = _store()
    _session(store, "s1", DAY, 2)
    _session(store, "s2", DAY, 3)

    r = AnalyticsAggregator(store).aggregate(DAY, DAY + timedelta(hours=1))

    assert r.avg_time_on_site == 3
