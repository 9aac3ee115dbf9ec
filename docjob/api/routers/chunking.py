from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from docjob.api.dependencies import get_app_config
from docjob.api.errors import APIError
from docjob.chunking import ProcessedChunk, TextChunk, chunk_text, merge_chunks
from docjob.config.load_config import AppConfig


router = APIRouter()


class ChunkingOptions(BaseModel):
    max_chunk_size: int | None = Field(default=None, ge=1)
    overlap_size: int | None = Field(default=None, ge=0)
    split_on_sentence: bool | None = None
    preserve_speakers: bool | None = None


class ChunkRequest(BaseModel):
    text: str
    config: ChunkingOptions | None = None


class ChunkModel(BaseModel):
    id: str
    text: str
    start_offset: int
    end_offset: int
    speakers: list[str] = Field(default_factory=list)
    overlap_prefix: str | None = None
    overlap_suffix: str | None = None


class ProcessedChunkModel(BaseModel):
    chunk_id: str
    processed_text: str


class MergeRequest(BaseModel):
    processed: list[ProcessedChunkModel]
    chunks: list[ChunkModel]
    min_overlap_ratio: float | None = Field(default=None, ge=0.0, le=1.0)


@router.post("/chunking/chunk")
def chunk(req: ChunkRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    overrides = req.config.model_dump(exclude_none=True) if req.config is not None else None
    try:
        chunking_cfg = cfg.chunking.with_overrides(overrides)
    except ValueError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    return chunk_text(req.text, chunking_cfg).to_dict()


@router.post("/chunking/merge")
def merge(req: MergeRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    originals = [TextChunk.from_dict(c.model_dump()) for c in req.chunks]
    processed = [ProcessedChunk(chunk_id=p.chunk_id, processed_text=p.processed_text) for p in req.processed]
    ratio = cfg.merge.min_overlap_ratio if req.min_overlap_ratio is None else req.min_overlap_ratio
    return {"text": merge_chunks(processed, originals, min_overlap_ratio=ratio)}
