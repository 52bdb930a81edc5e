from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from visitrack.core.errors import NotFoundError, ValidationError, require
from visitrack.core.ids import IdsService
from visitrack.core.logging import get_logger
from visitrack.core.types import Clock, SystemClock
from visitrack.features.enrichment.service import EnrichmentFacts, EnrichmentService
from visitrack.features.store.schema import VISITOR
from visitrack.features.store.service import Row, VisitorStore

from .types import (
    ANONYMOUS,
    IDENTIFIED,
    LEAD,
    LEAD_SCORE_STEP,
    VISITOR_STATUSES,
    ContactFields,
    Utm,
    Visitor,
    escalate,
)

# an empty lookup keeps the stored value
_FACT_FIELDS = (
    "country",
    "city",
    "region",
    "timezone",
    "device",
    "os",
    "browser",
    "browser_version",
)


class IdentityResolver:
    """
    Maps a client visitor_id to its durable Visitor record.

    - First sight creates the record: enrichment, set-once attribution,
      IDENTIFIED when an email is known, otherwise ANONYMOUS.
    - Later sights bump counters, refresh device facts, merge contact fields and
      may escalate ANONYMOUS -> IDENTIFIED.
    - LEAD is reached only through escalate_to_lead (the form submission path).
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

    # ----------------------------
    # Public API
    # ----------------------------
    def resolve_visitor(
        self,
        *,
        visitor_id: str,
        page: str,
        ip: str | None = None,
        user_agent: str | None = None,
        referrer: str | None = None,
        utm: Utm | Mapping[str, Any] | None = None,
        contact: ContactFields | Mapping[str, Any] | None = None,
        screen_resolution: str | None = None,
    ) -> Visitor:
        require(visitor_id=visitor_id, page=page)

        utm_v = Utm.coerce(utm)
        contact_v = ContactFields.coerce(contact)
        facts = self.enrichment.enrich(ip, user_agent)
        now = self.clock.now()

        def create() -> Row:
            v = Visitor(
                id=self.ids.next_id("vis"),
                visitor_id=visitor_id,
                first_visit=now,
                last_visit=now,
                classification=IDENTIFIED if contact_v.email else ANONYMOUS,
                ip_address=ip,
                user_agent=user_agent,
                screen_resolution=screen_resolution,
                referrer=referrer or None,
                utm_source=utm_v.source,
                utm_medium=utm_v.medium,
                utm_campaign=utm_v.campaign,
                utm_term=utm_v.term,
                utm_content=utm_v.content,
                total_visits=1,
                total_page_views=1,
                pages_visited=[page],
                updated_at=now,
            )
            _apply_contact(v, contact_v)
            _apply_facts(v, facts)
            return v.as_row()

        def update(row: Row) -> Row:
            v = Visitor.from_row(row)
            v.last_visit = max(v.last_visit, now)
            v.total_visits += 1
            v.total_page_views += 1
            if ip:
                v.ip_address = ip
            if user_agent:
                v.user_agent = user_agent
            if screen_resolution:
                v.screen_resolution = screen_resolution
            _apply_facts(v, facts)
            _apply_contact(v, contact_v)
            if contact_v.email:
                v.classification = escalate(v.classification, IDENTIFIED)
            v.pages_visited.append(page)
            v.updated_at = now
            return v.as_row()

        visitor = Visitor.from_row(self.store.upsert(VISITOR, visitor_id, create, update))
        self._logger.debug(
            "visitor_resolved",
            extra={"feature": "identity", "op": "resolve", "visitor_id": visitor_id},
        )
        return visitor

    def escalate_to_lead(
        self,
        *,
        visitor_id: str,
        page: str | None,
        contact: ContactFields | Mapping[str, Any] | None,
    ) -> Visitor:
        """
        Merge contact fields, classify as LEAD and add LEAD_SCORE_STEP.

        The score is added on every call; repeat submissions keep accumulating.
        A form from a visitor that was never tracked creates the record.
        """
        require(visitor_id=visitor_id)
        contact_v = ContactFields.coerce(contact)
        if not contact_v.email:
            raise ValidationError("email required to escalate to lead", fields=("email",))
        now = self.clock.now()

        def create() -> Row:
            v = Visitor(
                id=self.ids.next_id("vis"),
                visitor_id=visitor_id,
                first_visit=now,
                last_visit=now,
                classification=LEAD,
                lead_score=LEAD_SCORE_STEP,
                pages_visited=[page] if page else [],
                updated_at=now,
            )
            _apply_contact(v, contact_v)
            return v.as_row()

        def update(row: Row) -> Row:
            v = Visitor.from_row(row)
            _apply_contact(v, contact_v)
            v.classification = escalate(v.classification, LEAD)
            v.lead_score += LEAD_SCORE_STEP
            v.updated_at = now
            return v.as_row()

        visitor = Visitor.from_row(self.store.upsert(VISITOR, visitor_id, create, update))
        self._logger.info(
            "visitor_lead",
            extra={"feature": "identity", "visitor_id": visitor_id, "op": "lead"},
        )
        return visitor

    def get(self, visitor_id: str) -> Visitor | None:
        row = self.store.get(VISITOR, visitor_id)
        return Visitor.from_row(row) if row is not None else None

    def set_status(self, visitor_id: str, status: str) -> Visitor:
        require(visitor_id=visitor_id, status=status)
        status_n = str(status).strip().upper()
        if status_n not in VISITOR_STATUSES:
            raise ValidationError(
                f"Invalid status {status!r}. Must be one of: {', '.join(VISITOR_STATUSES)}",
                fields=("status",),
            )
        now = self.clock.now()

        def update(row: Row) -> Row:
            v = Visitor.from_row(row)
            v.status = status_n
            v.updated_at = now
            return v.as_row()

        row = self.store.update(VISITOR, visitor_id, update)
        if row is None:
            raise NotFoundError("Visitor", visitor_id)
        return Visitor.from_row(row)


# ----------------------------
# Internal helpers
# ----------------------------
def _apply_contact(v: Visitor, contact: ContactFields) -> None:
    for name, value in contact.present().items():
        setattr(v, name, value)


def _apply_facts(v: Visitor, facts: EnrichmentFacts) -> None:
    for name in _FACT_FIELDS:
        value = getattr(facts, name)
        if value is not None:
            setattr(v, name, value)
