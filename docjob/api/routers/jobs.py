from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from docjob.api.dependencies import get_engine
from docjob.api.errors import APIError
from docjob.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from docjob.runtime.engine import JobEngine, JobStatusView
from docjob.storage.sqlite_store import JOB_STATUSES


router = APIRouter()


class CreateJobRequest(BaseModel):
    type: str = Field(min_length=1, description="Handler name, e.g. text_transform.")
    payload: dict[str, Any] = Field(default_factory=dict)


class CancelJobRequest(BaseModel):
    reason: str = Field(default="Canceled by user request")


# Engine calls are synchronous and short; routes are `async def` so they run on the engine's event loop.


@router.post("/jobs")
async def create_job(req: CreateJobRequest, engine: JobEngine = Depends(get_engine)) -> dict[str, Any]:
    job_id = engine.enqueue(req.type.strip(), req.payload)
    view = engine.get_status(job_id)
    return {"job": {"id": view.id, "type": view.type, "status": view.status}}


@router.get("/jobs")
async def list_jobs(
    status: list[str] | None = Query(default=None),
    type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    engine: JobEngine = Depends(get_engine),
) -> dict[str, Any]:
    for s in status or []:
        if s not in JOB_STATUSES:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message=f"Unknown status: {s}",
                details={"allowed": list(JOB_STATUSES)},
            )

    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor)
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    page = engine.store.list_page(
        statuses=status or None,
        job_type=(type.strip() if type else None),
        limit=int(limit),
        cursor=(cursor_obj.created_at, cursor_obj.job_id) if cursor_obj is not None else None,
    )
    next_cursor = page["next_cursor"]
    return {
        "items": [JobStatusView.from_record(j).to_dict() for j in page["items"]],
        "next_cursor": encode_cursor(Cursor(created_at=next_cursor[0], job_id=next_cursor[1])) if next_cursor else None,
    }


@router.get("/jobs/stats")
async def job_stats(engine: JobEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"stats": engine.get_stats()}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, engine: JobEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"job": engine.get_status(job_id).to_dict()}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    req: CancelJobRequest | None = None,
    engine: JobEngine = Depends(get_engine),
) -> dict[str, Any]:
    reason = req.reason if req is not None else "Canceled by user request"
    view = engine.cancel(job_id, reason=reason)
    return {"job": view.to_dict()}


@router.get("/jobs/{job_id}/audit")
async def get_job_audit(job_id: str, engine: JobEngine = Depends(get_engine)) -> dict[str, Any]:
    engine.get_status(job_id)
    return {"items": engine.store.list_audit(job_id)}
