from __future__ import annotations

import time
from dataclasses import dataclass

from visitrack.core.errors import StoreError
from visitrack.core.logging import get_logger
from visitrack.core.types import Clock, SystemClock
from visitrack.features.store.schema import LIVE_VISITOR
from visitrack.features.store.service import Row, VisitorStore

from .state import presence_state


@dataclass(frozen=True, slots=True)
class ReapResult:
    scanned: int = 0
    deactivated: int = 0
    deleted: int = 0
    failed: int = 0


class PresenceReaper:
    """
    Sweeps LiveVisitor records: deactivates the idle ones, deletes the expired ones.

    The scan only nominates candidates. Every write re-reads the record under its
    key lock and re-checks staleness against the clock, so a heartbeat that lands
    between the scan and the write keeps the visitor alive.
    """

    def __init__(
        self,
        *,
        store: VisitorStore,
        clock: Clock | None = None,
        interval_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.interval_seconds = float(interval_seconds)
        self._logger = get_logger(__name__)
        self._periodic_proc_started = False

    def reap(self) -> ReapResult:
        started = time.perf_counter()
        now = self.clock.now()
        candidates = self.store.scan(
            LIVE_VISITOR,
            where=lambda r: not presence_state(r["last_activity_at"], now).active,
        )

        deactivated = deleted = failed = 0
        for row in candidates:
            visitor_id = row["visitor_id"]
            try:
                if presence_state(row["last_activity_at"], now).expired:
                    if self._delete_expired(visitor_id):
                        deleted += 1
                elif row.get("is_active") and self._deactivate(visitor_id):
                    deactivated += 1
            except StoreError as e:
                failed += 1
                self._logger.warning(
                    "reap_record_failed",
                    extra={"feature": "presence", "visitor_id": visitor_id, "reason": str(e)},
                )

        result = ReapResult(
            scanned=len(candidates),
            deactivated=deactivated,
            deleted=deleted,
            failed=failed,
        )
        self._logger.info(
            "reap_sweep",
            extra={
                "feature": "presence",
                "scanned": result.scanned,
                "deactivated": result.deactivated,
                "deleted": result.deleted,
                "failed": result.failed,
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
            },
        )
        return result

    def _deactivate(self, visitor_id: str) -> bool:
        changed = False

        def fn(row: Row) -> Row | None:
            nonlocal changed
            state = presence_state(row["last_activity_at"], self.clock.now())
            if state.active or not row.get("is_active"):
                return None
            changed = True
            return {**row, "is_active": False}

        self.store.update(LIVE_VISITOR, visitor_id, fn)
        return changed

    def _delete_expired(self, visitor_id: str) -> bool:
        return self.store.delete_if(
            LIVE_VISITOR,
            visitor_id,
            lambda r: presence_state(r["last_activity_at"], self.clock.now()).expired,
        )

    # ----------------------------
    # Scheduling
    # ----------------------------
    def start(self, env) -> None:
        """
        Start a SimPy process that sweeps every `interval_seconds`.
        Call once after env is created.
        """
        if self._periodic_proc_started:
            return
        self._periodic_proc_started = True
        env.process(self._periodic_proc(env))

    def _periodic_proc(self, env):
        while True:
            yield env.timeout(self.interval_seconds)
            try:
                self.reap()
            except StoreError as e:
                self._logger.warning(
                    "reap_sweep_failed",
                    extra={"feature": "presence", "reason": str(e)},
                )
