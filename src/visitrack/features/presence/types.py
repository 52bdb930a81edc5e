from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class LiveVisitor:
    visitor_id: str
    current_page: str
    is_active: bool
    last_activity_at: datetime
    created_at: datetime

    page_title: str | None = None
    time_on_site: int = 0  # seconds
    page_views: int = 1

    # snapshot facts
    email: str | None = None
    name: str | None = None
    ip_address: str | None = None
    country: str | None = None
    city: str | None = None
    device: str | None = None
    browser: str | None = None

    def as_row(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LiveVisitor:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in names})
