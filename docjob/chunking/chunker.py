from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Any


logger = logging.getLogger(__name__)


SENTENCE_END_RE = re.compile(r"[。！？．!?]")
SPEAKER_RE = re.compile(r"^([^：:\n]+)[：:]\s*", re.MULTILINE)

# How far past the hard boundary to look for a sentence end.
SENTENCE_LOOKAHEAD = 50
# An adjusted boundary may not shrink the chunk below this share of its hard size.
MIN_SENTENCE_CHUNK_RATIO = 0.7
MAX_SPEAKER_NAME_LEN = 20


@dataclass(frozen=True)
class ChunkingConfig:
    max_chunk_size: int = 300
    overlap_size: int = 50
    split_on_sentence: bool = True
    preserve_speakers: bool = True

    def __post_init__(self) -> None:
        if int(self.max_chunk_size) < 1:
            raise ValueError(f"max_chunk_size must be >= 1, got {self.max_chunk_size}")
        if int(self.overlap_size) < 0:
            raise ValueError(f"overlap_size must be >= 0, got {self.overlap_size}")

    def with_overrides(self, overrides: dict[str, Any] | None) -> "ChunkingConfig":
        """Return a copy with known keys replaced; unknown keys are ignored."""
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in _CONFIG_FIELDS}
        return replace(self, **known)


_CONFIG_FIELDS = frozenset({"max_chunk_size", "overlap_size", "split_on_sentence", "preserve_speakers"})


@dataclass(frozen=True)
class TextChunk:
    id: str
    text: str
    start_offset: int
    end_offset: int
    speakers: tuple[str, ...] = ()
    # Leading text already covered by earlier chunks (duplicated at the seam).
    overlap_prefix: str | None = None
    # Trailing text that the next chunk repeats.
    overlap_suffix: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["speakers"] = list(self.speakers)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TextChunk":
        return cls(
            id=str(data["id"]),
            text=str(data["text"]),
            start_offset=int(data["start_offset"]),
            end_offset=int(data["end_offset"]),
            speakers=tuple(data.get("speakers") or ()),
            overlap_prefix=data.get("overlap_prefix"),
            overlap_suffix=data.get("overlap_suffix"),
        )


@dataclass(frozen=True)
class ChunkingResult:
    chunks: tuple[TextChunk, ...]
    total_chars: int
    config: ChunkingConfig = field(default_factory=ChunkingConfig)

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunks": [c.to_dict() for c in self.chunks],
            "total_chunks": self.total_chunks,
            "total_chars": self.total_chars,
            "config": asdict(self.config),
        }


def adjust_for_sentence_boundary(text: str, start: int, end: int) -> int:
    """Move `end` to just after the last sentence terminator near it, if that keeps the chunk large enough."""
    window = text[start : end + SENTENCE_LOOKAHEAD]
    last = None
    for m in SENTENCE_END_RE.finditer(window):
        last = m
    if last is None:
        return end
    adjusted = start + last.start() + 1
    if adjusted >= start + (end - start) * MIN_SENTENCE_CHUNK_RATIO:
        return min(adjusted, len(text))
    return end


def extract_speakers(text: str) -> tuple[str, ...]:
    """Distinct `name: ...` speakers in order of first appearance."""
    seen: dict[str, None] = {}
    for m in SPEAKER_RE.finditer(text):
        name = m.group(1).strip()
        if name and len(name) <= MAX_SPEAKER_NAME_LEN:
            seen.setdefault(name, None)
    return tuple(seen)


def _chunk_id(index: int, width: int) -> str:
    return f"chunk-{index:0{width}d}"


def chunk_text(text: str, config: ChunkingConfig | None = None) -> ChunkingResult:
    """Split `text` into bounded, overlapping, sentence-aligned chunks.

    Terminates for any config: each step advances `start` by at least one
    character. With `overlap_size < max_chunk_size` every chunk after the
    first starts `overlap_size` characters before the previous chunk ended.
    """
    cfg = config or ChunkingConfig()
    max_size = int(cfg.max_chunk_size)
    overlap = int(cfg.overlap_size)
    n = len(text)

    spans: list[tuple[int, int]] = []
    start = 0
    while start < n:
        end = min(start + max_size, n)
        if cfg.split_on_sentence and end < n:
            end = adjust_for_sentence_boundary(text, start, end)
        spans.append((start, end))
        if end >= n:
            break
        start = max(start + 1, end - overlap)

    width = max(3, len(str(max(len(spans) - 1, 0))))
    chunks: list[TextChunk] = []
    covered = 0
    for i, (s, e) in enumerate(spans):
        prefix = text[s : min(e, covered)] if s < covered else ""
        next_start = spans[i + 1][0] if i + 1 < len(spans) else e
        suffix = text[next_start:e] if next_start < e else ""
        body = text[s:e]
        chunks.append(
            TextChunk(
                id=_chunk_id(i, width),
                text=body,
                start_offset=s,
                end_offset=e,
                speakers=extract_speakers(body) if cfg.preserve_speakers else (),
                overlap_prefix=prefix or None,
                overlap_suffix=suffix or None,
            )
        )
        covered = max(covered, e)

    logger.debug(
        "chunked text: chars=%d chunks=%d max_chunk_size=%d overlap_size=%d",
        n,
        len(chunks),
        max_size,
        overlap,
    )
    return ChunkingResult(chunks=tuple(chunks), total_chars=n, config=cfg)
