from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from docjob.api.errors import (
    APIError,
    api_error_handler,
    invalid_state_handler,
    not_found_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from docjob.config.load_config import ConfigError, default_app_config, env_bool, load_app_config
from docjob.errors import InvalidStateError, NotFoundError
from docjob.runtime.engine import JobEngine
from docjob.runtime.handlers import default_registry
from docjob.storage.sqlite_store import SQLiteStore

from .routers.chunking import router as chunking_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("DOCJOB_CORS_ORIGINS", "").strip()
    if not raw:
        # Local dev defaults.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        try:
            cfg = load_app_config()
        except ConfigError as e:
            logger.warning("config not loaded, using defaults: %s", e)
            cfg = default_app_config()
        app.state.app_config = cfg

        # Single-instance assumption: one engine per process owns the SQLite file.
        engine: JobEngine | None = None
        store: SQLiteStore | None = None
        app.state.reconciled_running_jobs = 0
        if env_bool("DOCJOB_ENABLE_ENGINE", True):
            store = SQLiteStore()
            engine = JobEngine(store, config=cfg.engine, registry=default_registry(store, cfg))
            if env_bool("DOCJOB_RECONCILE_ON_STARTUP", True):
                app.state.reconciled_running_jobs = len(engine.scheduler.reconcile())
            engine.start(reconcile=False)
            app.state.engine = engine
        try:
            yield
        finally:
            if engine is not None:
                await engine.shutdown()
                app.state.engine = None
            if store is not None:
                store.close()

    app = FastAPI(title="docjob API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(InvalidStateError, invalid_state_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(chunking_router, prefix="/api/v1", tags=["chunking"])

    return app


app = create_app()
