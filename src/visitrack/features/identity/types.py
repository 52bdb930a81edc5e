from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

ANONYMOUS = "ANONYMOUS"
IDENTIFIED = "IDENTIFIED"
LEAD = "LEAD"

# classification only ever moves to a higher rank
CLASSIFICATION_RANK: dict[str, int] = {ANONYMOUS: 0, IDENTIFIED: 1, LEAD: 2}

ACTIVE = "ACTIVE"
IDLE = "IDLE"
LEFT = "LEFT"
CONVERTED = "CONVERTED"

VISITOR_STATUSES: tuple[str, ...] = (ACTIVE, IDLE, LEFT, CONVERTED)

LEAD_SCORE_STEP = 10

CONTACT_FIELDS: tuple[str, ...] = ("email", "name", "phone", "company", "position")


def escalate(current: str, target: str) -> str:
    """Return whichever classification ranks higher."""
    if CLASSIFICATION_RANK[target] > CLASSIFICATION_RANK[current]:
        return target
    return current


@dataclass(frozen=True, slots=True)
class ContactFields:
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None

    @classmethod
    def coerce(cls, value: ContactFields | Mapping[str, Any] | None) -> ContactFields:
        if value is None:
            return cls()
        if isinstance(value, ContactFields):
            return value
        return cls(**{name: _blank_to_none(value.get(name)) for name in CONTACT_FIELDS})

    def present(self) -> dict[str, str]:
        """Only the fields that carry a non-blank value."""
        out: dict[str, str] = {}
        for name in CONTACT_FIELDS:
            v = _blank_to_none(getattr(self, name))
            if v is not None:
                out[name] = v
        return out


@dataclass(frozen=True, slots=True)
class Utm:
    source: str | None = None
    medium: str | None = None
    campaign: str | None = None
    term: str | None = None
    content: str | None = None

    @classmethod
    def coerce(cls, value: Utm | Mapping[str, Any] | None) -> Utm:
        if value is None:
            return cls()
        if isinstance(value, Utm):
            return value
        return cls(
            **{
                name: _blank_to_none(value.get(name, value.get(f"utm_{name}")))
                for name in ("source", "medium", "campaign", "term", "content")
            }
        )


@dataclass(slots=True)
class Visitor:
    id: str
    visitor_id: str
    first_visit: datetime
    last_visit: datetime

    classification: str = ANONYMOUS
    status: str = ACTIVE

    # contact, merged incrementally and never erased
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None

    # enrichment
    ip_address: str | None = None
    user_agent: str | None = None
    country: str | None = None
    city: str | None = None
    region: str | None = None
    timezone: str | None = None
    device: str | None = None
    os: str | None = None
    browser: str | None = None
    browser_version: str | None = None
    screen_resolution: str | None = None

    # attribution, first sight only
    referrer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None

    total_visits: int = 1
    total_page_views: int = 1
    lead_score: int = 0
    pages_visited: list[str] = field(default_factory=list)

    updated_at: datetime | None = None

    def as_row(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Visitor:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in names})


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None
