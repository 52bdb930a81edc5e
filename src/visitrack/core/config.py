from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

STORAGE_BACKENDS = {"duckdb", "memory"}
PRESENCE_BACKENDS = {"memory", "shared"}


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "duckdb"
    duckdb_path: str = "data/visitrack.duckdb"
    clean_slate: bool = False
    lock_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class PresenceConfig:
    backend: str = "memory"  # "memory" | "shared"
    heartbeat_time_step_seconds: int = 5
    heartbeat_page_step: int = 1


@dataclass(frozen=True)
class ReaperConfig:
    interval_seconds: float = 60.0


@dataclass(frozen=True)
class EnrichmentConfig:
    timeout_seconds: float = 2.0


@dataclass(frozen=True)
class VisitorsConfig:
    recent_sessions: int = 10
    recent_page_views: int = 20
    recent_events: int = 50
    recent_forms: int = 50


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class TrackingConfig:
    storage: StorageConfig
    logging: LoggingConfig
    presence: PresenceConfig = PresenceConfig()
    reaper: ReaperConfig = ReaperConfig()
    enrichment: EnrichmentConfig = EnrichmentConfig()
    visitors: VisitorsConfig = VisitorsConfig()
    raw: dict[str, Any] | None = None  # original parsed YAML (for debugging)


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text())
    if not isinstance(data, dict):
        raise ValueError("Config YAML must parse to a dict at the top level.")
    return data


def parse_config(data: dict[str, Any]) -> TrackingConfig:
    for key in ["storage", "logging"]:
        if key not in data:
            raise ValueError(f"Missing required top-level config section: '{key}'")

    storage = data.get("storage") or {}
    logging_cfg = data.get("logging") or {}
    presence = data.get("presence") or {}
    reaper = data.get("reaper") or {}
    enrichment = data.get("enrichment") or {}
    visitors = data.get("visitors") or {}

    storage_cfg = StorageConfig(
        backend=str(storage.get("backend", "duckdb")).strip().lower(),
        duckdb_path=str(storage.get("duckdb_path", StorageConfig.duckdb_path)),
        clean_slate=bool(storage.get("clean_slate", False)),
        lock_timeout_seconds=float(storage.get("lock_timeout_seconds", 5.0)),
    )
    if storage_cfg.backend not in STORAGE_BACKENDS:
        raise ValueError(f"Unsupported storage.backend: {storage_cfg.backend!r}")
    if storage_cfg.lock_timeout_seconds <= 0:
        raise ValueError("storage.lock_timeout_seconds must be > 0")

    presence_cfg = PresenceConfig(
        backend=str(presence.get("backend", "memory")).strip().lower(),
        heartbeat_time_step_seconds=int(presence.get("heartbeat_time_step_seconds", 5)),
        heartbeat_page_step=int(presence.get("heartbeat_page_step", 1)),
    )
    if presence_cfg.backend not in PRESENCE_BACKENDS:
        raise ValueError(f"Unsupported presence.backend: {presence_cfg.backend!r}")

    reaper_cfg = ReaperConfig(interval_seconds=float(reaper.get("interval_seconds", 60.0)))
    if reaper_cfg.interval_seconds <= 0:
        raise ValueError("reaper.interval_seconds must be > 0")

    enrichment_cfg = EnrichmentConfig(
        timeout_seconds=float(enrichment.get("timeout_seconds", 2.0)),
    )
    if enrichment_cfg.timeout_seconds <= 0:
        raise ValueError("enrichment.timeout_seconds must be > 0")

    visitors_cfg = VisitorsConfig(
        recent_sessions=int(visitors.get("recent_sessions", 10)),
        recent_page_views=int(visitors.get("recent_page_views", 20)),
        recent_events=int(visitors.get("recent_events", 50)),
        recent_forms=int(visitors.get("recent_forms", 50)),
    )

    log_cfg = LoggingConfig(level=str(logging_cfg.get("level", "INFO")).upper())

    return TrackingConfig(
        storage=storage_cfg,
        logging=log_cfg,
        presence=presence_cfg,
        reaper=reaper_cfg,
        enrichment=enrichment_cfg,
        visitors=visitors_cfg,
        raw=data,
    )


def load_config(path: str | Path) -> TrackingConfig:
    data = load_yaml(path)
    return parse_config(data)
