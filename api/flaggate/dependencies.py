from typing import Optional

from fastapi import Request

from flaggate.config import Settings
from flaggate.database import DatabaseSource, get_engine, session_factory
from flaggate.services.gate import Gate
from flaggate.services.snapshot import FlagSource, SnapshotManager
from flaggate.sources import HttpSource, JsonFileSource

settings = Settings.from_env()
feature_manager = SnapshotManager(fetch_timeout=settings.fetch_timeout)
gate = Gate(feature_manager)


def build_source(cfg: Settings) -> Optional[FlagSource]:
    if cfg.source == "file":
        return JsonFileSource(cfg.flags_file, section=cfg.section)
    if cfg.source == "http":
        if not cfg.api_url:
            raise ValueError("FLAGS_SOURCE=http needs FLAGS_API_URL")
        return HttpSource(cfg.api_url, section=cfg.section, timeout=cfg.fetch_timeout)
    if cfg.source == "database":
        return DatabaseSource(session_factory(get_engine(cfg.database_url)))
    if cfg.source == "none":
        return None
    raise ValueError(f"unknown FLAGS_SOURCE {cfg.source!r}")


def get_manager() -> SnapshotManager:
    return feature_manager


def get_source(request: Request) -> Optional[FlagSource]:
    # built once by the app lifespan
    return getattr(request.app.state, "flag_source", None)
