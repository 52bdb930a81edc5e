from __future__ import annotations

from datetime import UTC, datetime, timedelta

from visitrack.core.config import parse_config
from visitrack.core.ids import IdsService
from visitrack.core.types import ManualClock
from visitrack.features.bootstrap.service import bootstrap_engine
from visitrack.features.enrichment.service import EnrichmentFacts
from visitrack.features.store.duckdb_adapter import DuckDBStore
from visitrack.features.store.schema import LIVE_VISITOR, VISITOR
from visitrack.features.store.service import MemoryStore

T0 = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)


class DummyEnricher:
    def enrich(self, ip, user_agent):
        return EnrichmentFacts(country="GB", device="tablet")


def _cfg(tmp_path, **presence):
    return parse_config(
        {
            "storage": {
                "backend": "duckdb",
                "duckdb_path": str(tmp_path / "engine.duckdb"),
                "clean_slate": True,
            },
            "presence": presence,
            "logging": {"level": "WARNING"},
        }
    )


def test_shared_presence_uses_durable_store(tmp_path):
    engine = bootstrap_engine(
        _cfg(tmp_path, backend="shared"),
        enricher=DummyEnricher(),
        clock=ManualClock(T0),
        ids=IdsService(instance="t"),
    )
    try:
        assert isinstance(engine.store, DuckDBStore)
        assert engine.presence_store is engine.store

        engine.track_visitor(visitor_id="v1", page="/", ip="1.2.3.4")
        engine.heartbeat(visitor_id="v1", current_page="/", ip="1.2.3.4")

        assert engine.store.count(VISITOR) == 1
        assert engine.store.count(LIVE_VISITOR) == 1
        assert engine.get_visitor("v1").visitor.country == "GB"
        assert [lv.visitor_id for lv in engine.list_live()] == ["v1"]
    finally:
        engine.close()


def test_memory_presence_keeps_live_state_out_of_duckdb(tmp_path):
    engine = bootstrap_engine(_cfg(tmp_path, backend="memory"), clock=ManualClock(T0))
    try:
        assert isinstance(engine.presence_store, MemoryStore)
        engine.heartbeat(visitor_id="v1", current_page="/")

        assert engine.store.count(LIVE_VISITOR) == 0
        assert len(engine.list_live()) == 1
    finally:
        engine.close()


def test_data_survives_reopen(tmp_path):
    cfg = _cfg(tmp_path, backend="shared")
    engine = bootstrap_engine(cfg, clock=ManualClock(T0))
    engine.track_visitor(visitor_id="v1", page="/")
    engine.close()

    reopened = parse_config({**cfg.raw, "storage": {**cfg.raw["storage"], "clean_slate": False}})
    engine2 = bootstrap_engine(reopened, clock=ManualClock(T0 + timedelta(minutes=1)))
    try:
        v = engine2.track_visitor(visitor_id="v1", page="/jobs")
        assert v.total_visits == 2
        assert v.pages_visited == ["/", "/jobs"]
    finally:
        engine2.close()


def test_config_steps_flow_into_presence(tmp_path):
    engine = bootstrap_engine(
        _cfg(tmp_path, heartbeat_time_step_seconds=15, heartbeat_page_step=2),
        clock=ManualClock(T0),
    )
    try:
        engine.heartbeat(visitor_id="v1", current_page="/")
        lv = engine.heartbeat(visitor_id="v1", current_page="/")
        assert (lv.time_on_site, lv.page_views) == (15, 3)
    finally:
        engine.close()
