from __future__ import annotations

from datetime import UTC, datetime

import pytest

from visitrack.core.errors import ValidationError
from visitrack.core.ids import IdsService
from visitrack.core.types import ManualClock
from visitrack.features.enrichment.service import EnrichmentService
from visitrack.features.identity.service import IdentityResolver
from visitrack.features.identity.types import LEAD
from visitrack.features.recorder.service import EventRecorder
from visitrack.features.store.schema import FORM, PAGE_VIEW
from visitrack.features.store.service import MemoryStore

T0 = datetime(2026, 1, 1, 8, 30, tzinfo=UTC)


def _recorder():
    store = MemoryStore()
    store.open()
    clock = ManualClock(T0)
    ids = IdsService(instance="test")
    identity = IdentityResolver(
        store=store, enrichment=EnrichmentService(), ids=ids, clock=clock
    )
    rec = EventRecorder(store=store, identity=identity, ids=ids, clock=clock)
    return rec, identity, store, clock


def test_page_view_defaults_and_coercion():
    rec, _, store, _ = _recorder()
    pv = rec.record_page_view(
        visitor_id="v1", url="https://x.io/jobs", path="/jobs", time_on_page="12.7", scroll_depth=80
    )

    assert pv.id == "pv_test_00000001"
    assert pv.clicks == 0
    assert pv.time_on_page == 12
    assert pv.scroll_depth == 80
    assert pv.timestamp == T0
    assert store.get(PAGE_VIEW, pv.id)["path"] == "/jobs"


@pytest.mark.parametrize("field", ["clicks", "time_on_page", "scroll_depth"])
def test_page_view_rejects_bad_metrics(field):
    rec, _, _, _ = _recorder()
    with pytest.raises(ValidationError):
        rec.record_page_view(visitor_id="v1", url="u", path="/", **{field: "lots"})
    with pytest.raises(ValidationError):
        rec.record_page_view(visitor_id="v1", url="u", path="/", **{field: -1})


def test_page_view_requires_url_and_path():
    rec, _, _, _ = _recorder()
    with pytest.raises(ValidationError) as ei:
        rec.record_page_view(visitor_id="v1", url="", path=None)
    assert ei.value.fields == ("url", "path")


def test_event_value_is_stringified():
    rec, _, _, _ = _recorder()
    ev = rec.record_event(
        visitor_id="v1", event_type="click", page="/", event_category="cta", event_value=42
    )
    assert ev.id == "evt_test_00000001"
    assert ev.event_value == "42"
    assert ev.event_category == "cta"


def test_event_requires_type():
    rec, _, _, _ = _recorder()
    with pytest.raises(ValidationError):
        rec.record_event(visitor_id="v1", event_type="", page="/")


def test_form_without_email_does_not_escalate():
    rec, identity, _, _ = _recorder()
    identity.resolve_visitor(visitor_id="v1", page="/")

    form = rec.record_form_submission(visitor_id="v1", form_type="newsletter", page="/")

    assert form.is_lead is False
    assert form.is_processed is False
    assert identity.get("v1").lead_score == 0


def test_two_emailed_forms_add_twenty_lead_score():
    rec, identity, _, _ = _recorder()
    identity.resolve_visitor(visitor_id="v1", page="/")

    for _ in range(2):
        rec.record_form_submission(
            visitor_id="v1", form_type="contact", page="/contact", email="a@b.com", name="Ann"
        )

    v = identity.get("v1")
    assert v.classification == LEAD
    assert v.lead_score == 20
    assert v.name == "Ann"


def test_custom_fields_passed_through_and_isolated():
    rec, _, store, _ = _recorder()
    payload = {"role": "CTO", "interests": ["payroll", "hiring"]}

    form = rec.record_form_submission(
        visitor_id="v1", form_type="demo", page="/demo", custom_fields=payload
    )
    payload["interests"].append("mutated")

    assert store.get(FORM, form.id)["custom_fields"] == {
        "role": "CTO",
        "interests": ["payroll", "hiring"],
    }


def test_custom_fields_must_be_mapping():
    rec, _, _, _ = _recorder()
    with pytest.raises(ValidationError):
        rec.record_form_submission(
            visitor_id="v1", form_type="demo", page="/", custom_fields=["not", "a", "map"]
        )


def test_reads_are_newest_first():
    rec, _, _, clock = _recorder()
    rec.record_page_view(visitor_id="v1", url="u1", path="/1")
    clock.advance(seconds=10)
    rec.record_page_view(visitor_id="v1", url="u2", path="/2")
    rec.record_page_view(visitor_id="v2", url="u3", path="/3")

    assert [pv.path for pv in rec.page_views_for("v1")] == ["/2", "/1"]


def test_custom_fields_must_be_json_serialisable():
    rec, _, _, _ = _recorder()
    with pytest.raises(ValidationError):
        rec.record_form_submission(
            visitor_id="v1", form_type="demo", page="/", custom_fields={"when": T0}
        )


def test_custom_fields_stored_in_json_shape():
    rec, _, store, _ = _recorder()
    form = rec.record_form_submission(
        visitor_id="v1", form_type="demo", page="/", custom_fields={"tags": ("a", "b")}
    )

    assert form.custom_fields == {"tags": ["a", "b"]}
    assert store.get(FORM, form.id)["custom_fields"] == {"tags": ["a", "b"]}
