from __future__ import annotations

from fastapi import Request

from docjob.api.errors import APIError
from docjob.config.load_config import AppConfig, default_app_config
from docjob.runtime.engine import JobEngine


def get_engine(request: Request) -> JobEngine:
    """FastAPI dependency: the engine built by the app lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if not isinstance(engine, JobEngine):
        raise APIError(
            status_code=503,
            code="engine_unavailable",
            message="Job engine is not running (DOCJOB_ENABLE_ENGINE=0?).",
        )
    return engine


def get_app_config(request: Request) -> AppConfig:
    cfg = getattr(request.app.state, "app_config", None)
    if isinstance(cfg, AppConfig):
        return cfg
    return default_app_config()
