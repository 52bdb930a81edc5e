from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

# Single source of truth for what "live", "active" and "expired" mean.
LIVE_WINDOW = timedelta(minutes=5)
INACTIVE_AFTER = timedelta(minutes=10)
EXPIRE_AFTER = timedelta(hours=24)


@dataclass(frozen=True, slots=True)
class PresenceState:
    """
    live:    seen within LIVE_WINDOW (listed by list_live when also flagged active)
    active:  seen within INACTIVE_AFTER (the reaper deactivates once this is False)
    expired: not seen for EXPIRE_AFTER (the reaper deletes)
    """

    live: bool
    active: bool
    expired: bool


def presence_state(last_activity_at: datetime, now: datetime) -> PresenceState:
    age = now - last_activity_at
    return PresenceState(
        live=age < LIVE_WINDOW,
        active=age < INACTIVE_AFTER,
        expired=age >= EXPIRE_AFTER,
    )
