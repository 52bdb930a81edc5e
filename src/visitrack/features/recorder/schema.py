from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any

# Opaque structured payload (form custom fields). Stored and returned as given.
StructuredData = Mapping[str, Any]


class _Record:
    """
    Append-only record helpers shared by PageView, VisitorEvent and FormSubmission.
    """

    __slots__ = ()

    def as_row(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in row.items() if k in names})


@dataclass(frozen=True, slots=True)
class PageView(_Record):
    id: str
    visitor_id: str
    url: str
    path: str
    timestamp: datetime

    title: str | None = None
    referrer: str | None = None
    time_on_page: int | None = None
    scroll_depth: int | None = None
    clicks: int = 0


@dataclass(frozen=True, slots=True)
class VisitorEvent(_Record):
    id: str
    visitor_id: str
    event_type: str
    page: str
    timestamp: datetime

    event_category: str | None = None
    event_label: str | None = None
    event_value: str | None = None
    element: str | None = None


@dataclass(frozen=True, slots=True)
class FormSubmission(_Record):
    id: str
    visitor_id: str
    form_type: str
    page: str
    submitted_at: datetime

    form_name: str | None = None
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    company: str | None = None
    message: str | None = None
    custom_fields: dict[str, Any] | None = None
    is_processed: bool = False

    @property
    def is_lead(self) -> bool:
        return bool(self.email and self.email.strip())
