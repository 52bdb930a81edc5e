from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class VisitorSession:
    id: str
    session_id: str
    visitor_id: str
    entry_page: str
    start_time: datetime

    exit_page: str | None = None
    end_time: datetime | None = None
    duration: int | None = None  # whole seconds, computed from start/end

    page_views: int = 0
    is_active: bool = True

    # snapshot at session start
    device: str | None = None
    browser: str | None = None
    os: str | None = None
    ip_address: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.end_time is not None

    def as_row(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> VisitorSession:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in names})


def compute_duration(start_time: datetime, end_time: datetime) -> int:
    """
    Whole seconds between start and end, clamped at zero for client clock skew.
    """
    seconds = int((end_time - start_time).total_seconds())
    return max(0, seconds)
