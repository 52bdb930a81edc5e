from __future__ import annotations

from datetime import UTC, datetime

import pytest

from visitrack.core.errors import NotFoundError, ValidationError
from visitrack.core.ids import IdsService
from visitrack.core.types import ManualClock
from visitrack.features.enrichment.service import EnrichmentFacts, EnrichmentService
from visitrack.features.identity.service import IdentityResolver
from visitrack.features.identity.types import ANONYMOUS, IDENTIFIED, LEAD
from visitrack.features.store.service import MemoryStore


class DummyEnricher:
    """Returns queued facts in order, then the last one forever."""

    def __init__(self, *facts):
        self.facts = list(facts) or [EnrichmentFacts()]

    def enrich(self, ip, user_agent):
        if len(self.facts) > 1:
            return self.facts.pop(0)
        return self.facts[0]


class DummyStore(MemoryStore):
    """MemoryStore that counts calls, to prove validation happens first."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    def upsert(self, *a, **kw):
        self.calls += 1
        return super().upsert(*a, **kw)


def _resolver(*facts):
    store = DummyStore()
    store.open()
    clock = ManualClock(datetime(2026, 1, 1, 9, 0, tzinfo=UTC))
    svc = IdentityResolver(
        store=store,
        enrichment=EnrichmentService(DummyEnricher(*facts)),
        ids=IdsService(instance="test"),
        clock=clock,
    )
    return svc, store, clock


def test_first_sight_creates_anonymous_visitor():
    svc, _, clock = _resolver(EnrichmentFacts(country="US", device="desktop"))

    v = svc.resolve_visitor(
        visitor_id="v1",
        page="/home",
        ip="1.2.3.4",
        user_agent="ua",
        referrer="https://google.com",
        utm={"utm_source": "google", "utm_campaign": "spring"},
    )

    assert v.id == "vis_test_00000001"
    assert v.classification == ANONYMOUS
    assert v.status == "ACTIVE"
    assert v.total_visits == 1
    assert v.total_page_views == 1
    assert v.pages_visited == ["/home"]
    assert v.first_visit == v.last_visit == clock.now()
    assert v.country == "US"
    assert v.utm_source == "google"
    assert v.utm_campaign == "spring"
    assert v.referrer == "https://google.com"


def test_first_sight_with_email_is_identified():
    svc, _, _ = _resolver()
    v = svc.resolve_visitor(visitor_id="v1", page="/", contact={"email": "a@b.com"})
    assert v.classification == IDENTIFIED
    assert v.email == "a@b.com"


def test_repeat_sight_bumps_counters_and_keeps_attribution():
    svc, _, clock = _resolver(
        EnrichmentFacts(country="US", city="NYC"), EnrichmentFacts(device="mobile")
    )

    svc.resolve_visitor(
        visitor_id="v1", page="/a", ip="1.2.3.4", referrer="r1", utm={"source": "google"}
    )
    clock.advance(minutes=3)
    v = svc.resolve_visitor(
        visitor_id="v1", page="/b", ip="5.6.7.8", referrer="r2", utm={"source": "bing"}
    )

    assert v.total_visits == 2
    assert v.total_page_views == 2
    assert v.pages_visited == ["/a", "/b"]
    assert v.last_visit == clock.now()
    assert v.ip_address == "5.6.7.8"
    # set once
    assert v.referrer == "r1"
    assert v.utm_source == "google"
    # empty lookup keeps stored geo, new device fact applied
    assert v.country == "US"
    assert v.city == "NYC"
    assert v.device == "mobile"


def test_contact_fields_merge_and_are_never_erased():
    svc, _, _ = _resolver()
    svc.resolve_visitor(visitor_id="v1", page="/", contact={"name": "Ann", "phone": "123"})
    v = svc.resolve_visitor(visitor_id="v1", page="/", contact={"name": "", "company": "Acme"})

    assert v.name == "Ann"
    assert v.phone == "123"
    assert v.company == "Acme"


def test_classification_never_regresses():
    svc, _, _ = _resolver()
    svc.resolve_visitor(visitor_id="v1", page="/")
    svc.escalate_to_lead(visitor_id="v1", page="/contact", contact={"email": "a@b.com"})

    v = svc.resolve_visitor(visitor_id="v1", page="/", contact={"email": "a@b.com"})
    assert v.classification == LEAD

    v = svc.resolve_visitor(visitor_id="v1", page="/")
    assert v.classification == LEAD


def test_escalate_to_lead_adds_score_every_time():
    svc, _, _ = _resolver()
    svc.resolve_visitor(visitor_id="v1", page="/")

    svc.escalate_to_lead(visitor_id="v1", page="/contact", contact={"email": "a@b.com"})
    v = svc.escalate_to_lead(visitor_id="v1", page="/contact", contact={"email": "a@b.com"})

    assert v.classification == LEAD
    assert v.lead_score == 20
    assert v.email == "a@b.com"


def test_escalate_unknown_visitor_creates_lead():
    svc, _, _ = _resolver()
    v = svc.escalate_to_lead(visitor_id="ghost", page="/contact", contact={"email": "g@b.com"})

    assert v.classification == LEAD
    assert v.lead_score == 10
    assert v.total_visits == 1
    assert v.pages_visited == ["/contact"]


def test_escalate_requires_email():
    svc, _, _ = _resolver()
    with pytest.raises(ValidationError):
        svc.escalate_to_lead(visitor_id="v1", page="/", contact={"name": "x"})


@pytest.mark.parametrize("visitor_id,page", [("", "/"), ("v1", None), (None, None)])
def test_validation_happens_before_store_access(visitor_id, page):
    svc, store, _ = _resolver()
    with pytest.raises(ValidationError):
        svc.resolve_visitor(visitor_id=visitor_id, page=page)
    assert store.calls == 0


def test_set_status():
    svc, _, _ = _resolver()
    svc.resolve_visitor(visitor_id="v1", page="/")

    assert svc.set_status("v1", "converted").status == "CONVERTED"
    with pytest.raises(ValidationError):
        svc.set_status("v1", "GONE")
    with pytest.raises(NotFoundError):
        svc.set_status("missing", "IDLE")
