from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from docjob.chunking.chunker import TextChunk
from docjob.errors import MergeReferenceMissing


logger = logging.getLogger(__name__)


DEFAULT_MIN_OVERLAP_RATIO = 0.7


@dataclass(frozen=True)
class ProcessedChunk:
    chunk_id: str
    processed_text: str


def strip_overlap_prefix(text: str, overlap: str | None, *, min_ratio: float = DEFAULT_MIN_OVERLAP_RATIO) -> str:
    """Remove a duplicated seam from the start of `text`.

    Exact match first. If the transform rewrote the start of the seam, try
    suffixes of `overlap` from full length down to `min_ratio` of it and strip
    the longest one `text` starts with. Heuristic only: an arbitrary rewrite
    can defeat it, in which case `text` is returned unchanged.
    """
    if not overlap:
        return text
    if text.startswith(overlap):
        return text[len(overlap) :]

    n = len(overlap)
    # Tolerance keeps e.g. 10 * 0.7 at 7 rather than 8.
    shortest = max(1, math.ceil(n * float(min_ratio) - 1e-9))
    for length in range(n - 1, shortest - 1, -1):
        candidate = overlap[n - length :]
        if text.startswith(candidate):
            return text[length:]
    return text


def merge_chunks(
    processed: Iterable[ProcessedChunk],
    original_chunks: Sequence[TextChunk],
    *,
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO,
    strict: bool = False,
) -> str:
    """Reassemble processed fragments into one text.

    Fragments are ordered by chunk id. A fragment with no original chunk is
    logged and skipped (or raises MergeReferenceMissing when `strict`).
    """
    by_id = {c.id: c for c in original_chunks}
    ordered = sorted(processed, key=lambda p: p.chunk_id)

    parts: list[str] = []
    prev_verbatim = False
    for item in ordered:
        original = by_id.get(item.chunk_id)
        if original is None:
            if strict:
                raise MergeReferenceMissing(item.chunk_id)
            logger.warning("merge: original chunk not found, skipping %s", item.chunk_id)
            continue

        verbatim = item.processed_text == original.text
        fragment = item.processed_text
        if parts and original.overlap_prefix:
            fragment = strip_overlap_prefix(fragment, original.overlap_prefix, min_ratio=min_overlap_ratio)

        if parts:
            # Untouched neighbours are already contiguous in the source text.
            if not (prev_verbatim and verbatim) and not parts[-1].endswith("\n"):
                parts.append("\n")
        parts.append(fragment)
        prev_verbatim = verbatim

    return "".join(parts)
