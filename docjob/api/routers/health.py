from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from docjob.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "docjob",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/engine")
async def system_engine(request: Request) -> dict[str, Any]:
    engine = getattr(request.app.state, "engine", None)
    engine_snapshot: dict[str, Any] = {"enabled": engine is not None, "started": False}
    if engine is not None:
        engine_snapshot.update(engine.snapshot())
    return {
        "ts": time.time(),
        "engine": engine_snapshot,
        "startup": {
            "reconciled_running_jobs": getattr(request.app.state, "reconciled_running_jobs", 0),
        },
    }
