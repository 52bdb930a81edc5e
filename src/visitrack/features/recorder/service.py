from __future__ import annotations

import json
from typing import Any

from visitrack.core.errors import ValidationError, optional_count, require
from visitrack.core.ids import IdsService
from visitrack.core.logging import get_logger
from visitrack.core.types import Clock, SystemClock
from visitrack.features.identity.service import IdentityResolver
from visitrack.features.identity.types import ContactFields
from visitrack.features.store.schema import EVENT, FORM, PAGE_VIEW
from visitrack.features.store.service import VisitorStore

from .schema import FormSubmission, PageView, StructuredData, VisitorEvent


class EventRecorder:
    """
    Appends immutable PageView / VisitorEvent / FormSubmission records.

    Contracts enforced:
    - required fields are validated before the store is touched
    - records are never updated after creation
    - a form submission carrying an email escalates its visitor to LEAD
    """

    def __init__(
        self,
        *,
        store: VisitorStore,
        identity: IdentityResolver,
        ids: IdsService,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.ids = ids
        self.clock = clock or SystemClock()
        self._logger = get_logger(__name__)

    def record_page_view(
        self,
        *,
        visitor_id: str,
        url: str,
        path: str,
        title: str | None = None,
        referrer: str | None = None,
        time_on_page: Any = None,
        scroll_depth: Any = None,
        clicks: Any = None,
    ) -> PageView:
        require(visitor_id=visitor_id, url=url, path=path)
        pv = PageView(
            id=self.ids.next_id("pv"),
            visitor_id=visitor_id,
            url=url,
            path=path,
            timestamp=self.clock.now(),
            title=title or None,
            referrer=referrer or None,
            time_on_page=optional_count("time_on_page", time_on_page),
            scroll_depth=optional_count("scroll_depth", scroll_depth),
            clicks=optional_count("clicks", clicks) or 0,
        )
        self.store.create(PAGE_VIEW, pv.id, pv.as_row())
        self._logger.debug(
            "page_view_recorded",
            extra={"feature": "recorder", "kind": PAGE_VIEW, "visitor_id": visitor_id},
        )
        return pv

    def record_event(
        self,
        *,
        visitor_id: str,
        event_type: str,
        page: str,
        event_category: str | None = None,
        event_label: str | None = None,
        event_value: Any = None,
        element: str | None = None,
    ) -> VisitorEvent:
        require(visitor_id=visitor_id, event_type=event_type, page=page)
        ev = VisitorEvent(
            id=self.ids.next_id("evt"),
            visitor_id=visitor_id,
            event_type=event_type,
            page=page,
            timestamp=self.clock.now(),
            event_category=event_category or None,
            event_label=event_label or None,
            event_value=None if event_value is None or event_value == "" else str(event_value),
            element=element or None,
        )
        self.store.create(EVENT, ev.id, ev.as_row())
        self._logger.debug(
            "event_recorded",
            extra={"feature": "recorder", "kind": EVENT, "visitor_id": visitor_id},
        )
        return ev

    def record_form_submission(
        self,
        *,
        visitor_id: str,
        form_type: str,
        page: str,
        form_name: str | None = None,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        company: str | None = None,
        message: str | None = None,
        custom_fields: StructuredData | None = None,
    ) -> FormSubmission:
        require(visitor_id=visitor_id, form_type=form_type, page=page)
        if custom_fields is not None and not hasattr(custom_fields, "items"):
            raise ValidationError("custom_fields must be a mapping", fields=("custom_fields",))

        contact = ContactFields.coerce(
            {"email": email, "name": name, "phone": phone, "company": company}
        )
        form = FormSubmission(
            id=self.ids.next_id("form"),
            visitor_id=visitor_id,
            form_type=form_type,
            page=page,
            submitted_at=self.clock.now(),
            form_name=form_name or None,
            email=contact.email,
            name=contact.name,
            phone=contact.phone,
            company=contact.company,
            message=message or None,
            custom_fields=_json_payload(custom_fields) if custom_fields else None,
        )
        self.store.create(FORM, form.id, form.as_row())

        if form.is_lead:
            self.identity.escalate_to_lead(visitor_id=visitor_id, page=page, contact=contact)

        self._logger.debug(
            "form_recorded",
            extra={
                "feature": "recorder",
                "kind": FORM,
                "visitor_id": visitor_id,
                "op": "lead" if form.is_lead else "append",
            },
        )
        return form

    # ----------------------------
    # Reads (newest first)
    # ----------------------------
    def page_views_for(self, visitor_id: str) -> list[PageView]:
        rows = self.store.scan(PAGE_VIEW, owner=visitor_id)
        return [PageView.from_row(r) for r in reversed(rows)]

    def events_for(self, visitor_id: str) -> list[VisitorEvent]:
        rows = self.store.scan(EVENT, owner=visitor_id)
        return [VisitorEvent.from_row(r) for r in reversed(rows)]

    def forms_for(self, visitor_id: str) -> list[FormSubmission]:
        rows = self.store.scan(FORM, owner=visitor_id)
        return [FormSubmission.from_row(r) for r in reversed(rows)]


def _json_payload(custom_fields: StructuredData) -> dict[str, Any]:
    """
    Detached JSON-shaped copy of the payload, identical for every store backend.
    """
    try:
        return json.loads(json.dumps(dict(custom_fields)))
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"custom_fields must be JSON-serialisable: {e}", fields=("custom_fields",)
        ) from e
