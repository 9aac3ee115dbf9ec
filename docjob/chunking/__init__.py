"""Deterministic chunk/merge for long source text.

`chunk_text` splits a document into bounded, overlapping, sentence-aligned
fragments; `merge_chunks` reassembles independently processed fragments and
strips the duplicated overlap at each seam. Both are pure functions.
"""

from __future__ import annotations

from docjob.chunking.chunker import ChunkingConfig, ChunkingResult, TextChunk, chunk_text, extract_speakers
from docjob.chunking.merger import ProcessedChunk, merge_chunks, strip_overlap_prefix

__all__ = [
    "ChunkingConfig",
    "ChunkingResult",
    "ProcessedChunk",
    "TextChunk",
    "chunk_text",
    "extract_speakers",
    "merge_chunks",
    "strip_overlap_prefix",
]
