from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from visitrack.core.config import TrackingConfig
from visitrack.core.ids import IdsService
from visitrack.core.logging import get_logger, set_level
from visitrack.core.types import Clock, SystemClock
from visitrack.features.analytics.service import (
    AnalyticsAggregator,
    AnalyticsReport,
    StatsSummary,
)
from visitrack.features.enrichment.service import Enricher, EnrichmentService
from visitrack.features.identity.service import IdentityResolver
from visitrack.features.identity.types import ContactFields, Utm, Visitor
from visitrack.features.presence.reaper import PresenceReaper, ReapResult
from visitrack.features.presence.service import PresenceRegister
from visitrack.features.presence.types import LiveVisitor
from visitrack.features.recorder.schema import (
    FormSubmission,
    PageView,
    StructuredData,
    VisitorEvent,
)
from visitrack.features.recorder.service import EventRecorder
from visitrack.features.sessions.service import SessionTracker
from visitrack.features.sessions.types import VisitorSession
from visitrack.features.store.duckdb_adapter import DuckDBStore
from visitrack.features.store.service import MemoryStore, VisitorStore
from visitrack.features.visitors.service import VisitorDetails, VisitorPage, VisitorQueries


class TrackingEngine:
    """
    The operation surface of the tracking core.

    Owns the store handles: call open() before use and close() when done, or use
    the engine as a context manager.
    """

    def __init__(
        self,
        *,
        store: VisitorStore,
        presence_store: VisitorStore | None = None,
        enrichment: EnrichmentService,
        ids: IdsService,
        clock: Clock | None = None,
        cfg: TrackingConfig | None = None,
    ) -> None:
        self.store = store
        self.presence_store = presence_store if presence_store is not None else store
        self.enrichment = enrichment
        self.ids = ids
        self.clock = clock or SystemClock()
        self.cfg = cfg

        presence_cfg = cfg.presence if cfg is not None else None
        reaper_cfg = cfg.reaper if cfg is not None else None

        self.identity = IdentityResolver(
            store=store, enrichment=enrichment, ids=ids, clock=self.clock
        )
        self.sessions = SessionTracker(
            store=store, enrichment=enrichment, ids=ids, clock=self.clock
        )
        self.recorder = EventRecorder(
            store=store, identity=self.identity, ids=ids, clock=self.clock
        )
        self.presence = PresenceRegister(
            store=self.presence_store,
            enrichment=enrichment,
            clock=self.clock,
            time_step_seconds=presence_cfg.heartbeat_time_step_seconds if presence_cfg else 5,
            page_step=presence_cfg.heartbeat_page_step if presence_cfg else 1,
        )
        self.reaper = PresenceReaper(
            store=self.presence_store,
            clock=self.clock,
            interval_seconds=reaper_cfg.interval_seconds if reaper_cfg else 60.0,
        )
        self.analytics = AnalyticsAggregator(store, clock=self.clock)
        self.visitors = VisitorQueries(
            store=store,
            identity=self.identity,
            limits=cfg.visitors if cfg is not None else None,
        )
        self._logger = get_logger(__name__)

    # ----------------------------
    # Lifecycle
    # ----------------------------
    def open(self) -> None:
        self.store.open()
        if self.presence_store is not self.store:
            self.presence_store.open()
        self._logger.info("engine_open", extra={"feature": "bootstrap"})

    def close(self) -> None:
        try:
            if self.presence_store is not self.store:
                self.presence_store.close()
            self.store.close()
        finally:
            self.enrichment.close()
        self._logger.info("engine_close", extra={"feature": "bootstrap"})

    def __enter__(self) -> TrackingEngine:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ----------------------------
    # Ingestion
    # ----------------------------
    def track_visitor(
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
        return self.identity.resolve_visitor(
            visitor_id=visitor_id,
            page=page,
            ip=ip,
            user_agent=user_agent,
            referrer=referrer,
            utm=utm,
            contact=contact,
            screen_resolution=screen_resolution,
        )

    def track_session(self, **kwargs: Any) -> VisitorSession:
        return self.sessions.track_session(**kwargs)

    def track_page_view(self, **kwargs: Any) -> PageView:
        return self.recorder.record_page_view(**kwargs)

    def track_event(self, **kwargs: Any) -> VisitorEvent:
        return self.recorder.record_event(**kwargs)

    def track_form_submission(
        self,
        *,
        visitor_id: str,
        form_type: str,
        page: str,
        custom_fields: StructuredData | None = None,
        **kwargs: Any,
    ) -> FormSubmission:
        return self.recorder.record_form_submission(
            visitor_id=visitor_id,
            form_type=form_type,
            page=page,
            custom_fields=custom_fields,
            **kwargs,
        )

    def heartbeat(self, **kwargs: Any) -> LiveVisitor:
        return self.presence.heartbeat(**kwargs)

    # ----------------------------
    # Reads and maintenance
    # ----------------------------
    def list_live(self) -> list[LiveVisitor]:
        return self.presence.list_live()

    def get_visitor(self, visitor_id: str) -> VisitorDetails:
        return self.visitors.get_visitor(visitor_id)

    def list_visitors(
        self,
        page: int = 1,
        limit: int = 20,
        filters: Mapping[str, Any] | None = None,
    ) -> VisitorPage:
        return self.visitors.list_visitors(page=page, limit=limit, filters=filters)

    def set_visitor_status(self, visitor_id: str, status: str) -> Visitor:
        return self.visitors.set_visitor_status(visitor_id, status)

    def aggregate(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> AnalyticsReport:
        return self.analytics.aggregate(start, end)

    def stats_summary(self) -> StatsSummary:
        return self.analytics.stats_summary(live_visitors=len(self.list_live()))

    def reap(self) -> ReapResult:
        return self.reaper.reap()


def build_store(cfg: TrackingConfig) -> VisitorStore:
    if cfg.storage.backend == "memory":
        return MemoryStore(lock_timeout_seconds=cfg.storage.lock_timeout_seconds)
    return DuckDBStore(
        path=cfg.storage.duckdb_path,
        clean_slate=cfg.storage.clean_slate,
        lock_timeout_seconds=cfg.storage.lock_timeout_seconds,
    )


def bootstrap_engine(
    cfg: TrackingConfig,
    *,
    enricher: Enricher | None = None,
    clock: Clock | None = None,
    ids: IdsService | None = None,
    open_stores: bool = True,
) -> TrackingEngine:
    """
    Build a TrackingEngine from config. Stores are opened unless open_stores=False;
    the caller owns close().
    """
    logger = get_logger("visitrack", cfg.logging.level)

    store = build_store(cfg)
    # "memory" keeps live presence in process; "shared" uses the durable store
    presence_store: VisitorStore = store
    if cfg.presence.backend == "memory":
        presence_store = MemoryStore(lock_timeout_seconds=cfg.storage.lock_timeout_seconds)

    engine = TrackingEngine(
        store=store,
        presence_store=presence_store,
        enrichment=EnrichmentService(enricher, timeout_seconds=cfg.enrichment.timeout_seconds),
        ids=ids or IdsService(),
        clock=clock,
        cfg=cfg,
    )
    # service loggers exist now; apply the configured level to all of them
    set_level(cfg.logging.level)
    if open_stores:
        engine.open()
    logger.info(
        "engine_ready",
        extra={
            "feature": "bootstrap",
            "backend": cfg.storage.backend,
            "path": cfg.storage.duckdb_path if cfg.storage.backend == "duckdb" else None,
        },
    )
    return engine
