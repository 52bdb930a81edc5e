from __future__ import annotations

from datetime import datetime
from typing import Any

import simpy.rt

from visitrack.core.config import load_config
from visitrack.core.logging import get_logger
from visitrack.features.bootstrap.service import TrackingEngine, bootstrap_engine
from visitrack.features.presence.reaper import ReapResult


def open_engine(config_path: str) -> TrackingEngine:
    cfg = load_config(config_path)
    return bootstrap_engine(cfg)


def report(
    config_path: str, start: datetime | None = None, end: datetime | None = None
) -> dict[str, Any]:
    engine = open_engine(config_path)
    try:
        return engine.aggregate(start, end).as_dict()
    finally:
        engine.close()


def live(config_path: str) -> list[dict[str, Any]]:
    engine = open_engine(config_path)
    try:
        return [lv.as_row() for lv in engine.list_live()]
    finally:
        engine.close()


def reap(config_path: str, *, watch: bool = False, until: float | None = None) -> ReapResult:
    """
    One sweep, or with watch=True periodic sweeps on a wall-clock SimPy
    environment until `until` seconds have elapsed (forever when None).
    """
    engine = open_engine(config_path)
    try:
        if not watch:
            return engine.reap()

        logger = get_logger(__name__)
        env = simpy.rt.RealtimeEnvironment(factor=1.0, strict=False)
        engine.reaper.start(env)
        logger.info("reaper_watch", extra={"feature": "presence", "op": "watch"})
        try:
            env.run(until=until)
        except KeyboardInterrupt:
            logger.info("reaper_stopped", extra={"feature": "presence", "reason": "interrupt"})
        return engine.reap()
    finally:
        engine.close()
