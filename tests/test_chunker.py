from __future__ import annotations

import pytest

from docjob.chunking import ChunkingConfig, TextChunk, chunk_text, extract_speakers


def _assert_covers(text: str, chunks: tuple[TextChunk, ...]) -> None:
    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(text)
    for prev, cur in zip(chunks, chunks[1:]):
        assert cur.start_offset <= prev.end_offset
        assert cur.start_offset > prev.start_offset
    for c in chunks:
        assert c.text == text[c.start_offset : c.end_offset]


def test_empty_text_yields_no_chunks() -> None:
    result = chunk_text("")
    assert result.chunks == ()
    assert result.total_chunks == 0
    assert result.total_chars == 0


def test_short_text_is_one_chunk() -> None:
    result = chunk_text("短いテキスト。", ChunkingConfig(max_chunk_size=300, overlap_size=50))
    assert len(result.chunks) == 1
    only = result.chunks[0]
    assert only.id == "chunk-000"
    assert only.text == "短いテキスト。"
    assert only.overlap_prefix is None
    assert only.overlap_suffix is None


def test_sentence_boundary_is_preferred() -> None:
    text = "あ" * 20 + "。" + "い" * 20
    result = chunk_text(text, ChunkingConfig(max_chunk_size=25, overlap_size=5))
    first = result.chunks[0]
    assert first.end_offset == 21
    assert first.text.endswith("。")
    _assert_covers(text, result.chunks)


def test_sentence_boundary_too_early_is_ignored() -> None:
    text = "あ。" + "い" * 60
    result = chunk_text(text, ChunkingConfig(max_chunk_size=20, overlap_size=0))
    assert result.chunks[0].end_offset == 20


def test_sentence_lookahead_can_pass_max_chunk_size() -> None:
    # The last terminator within max + 50 chars wins, so every 。 here fits one chunk.
    text = "A。B。C。"
    result = chunk_text(text, ChunkingConfig(max_chunk_size=4, overlap_size=0, split_on_sentence=True))
    assert [c.text for c in result.chunks] == ["A。B。C。"]
    assert result.chunks[0].end_offset == 6
    assert result.chunks[0].overlap_suffix is None


def test_sentence_split_can_be_disabled() -> None:
    text = "あ" * 20 + "。" + "い" * 20
    result = chunk_text(text, ChunkingConfig(max_chunk_size=25, overlap_size=5, split_on_sentence=False))
    assert result.chunks[0].end_offset == 25


def test_consecutive_chunks_overlap_by_configured_size() -> None:
    text = "x" * 1000
    result = chunk_text(text, ChunkingConfig(max_chunk_size=300, overlap_size=50))
    _assert_covers(text, result.chunks)
    for prev, cur in zip(result.chunks, result.chunks[1:]):
        assert cur.start_offset == prev.end_offset - 50
        assert cur.overlap_prefix == text[cur.start_offset : prev.end_offset]
        assert prev.overlap_suffix == cur.overlap_prefix


@pytest.mark.parametrize(
    ("max_size", "overlap"),
    [(10, 10), (10, 50), (1, 0), (1, 1), (7, 3)],
)
def test_terminates_and_covers_for_degenerate_configs(max_size: int, overlap: int) -> None:
    text = "これは長い会議の記録です。" * 5
    result = chunk_text(text, ChunkingConfig(max_chunk_size=max_size, overlap_size=overlap))
    assert result.chunks
    assert len(result.chunks) <= len(text)
    _assert_covers(text, result.chunks)


def test_chunk_ids_are_zero_padded_and_sort_in_order() -> None:
    text = "y" * 2000
    result = chunk_text(text, ChunkingConfig(max_chunk_size=10, overlap_size=0, split_on_sentence=False))
    ids = [c.id for c in result.chunks]
    assert ids[0] == "chunk-000"
    assert ids == sorted(ids)
    assert len(set(len(i) for i in ids)) == 1


def test_speakers_are_distinct_in_first_appearance_order() -> None:
    text = "田中：おはようございます。\n佐藤: はい。\n田中：では始めます。\n"
    assert extract_speakers(text) == ("田中", "佐藤")

    result = chunk_text(text, ChunkingConfig(max_chunk_size=300))
    assert result.chunks[0].speakers == ("田中", "佐藤")


def test_long_speaker_names_are_ignored() -> None:
    name = "とても長い名前" * 4
    assert extract_speakers(f"{name}：こんにちは\nA: hi\n") == ("A",)


def test_speakers_not_collected_when_disabled() -> None:
    result = chunk_text("田中：こんにちは。", ChunkingConfig(preserve_speakers=False))
    assert result.chunks[0].speakers == ()


def test_config_validation_and_overrides() -> None:
    with pytest.raises(ValueError):
        ChunkingConfig(max_chunk_size=0)
    with pytest.raises(ValueError):
        ChunkingConfig(overlap_size=-1)

    base = ChunkingConfig(max_chunk_size=5000, overlap_size=100)
    cfg = base.with_overrides({"max_chunk_size": 10, "unknown": True})
    assert cfg.max_chunk_size == 10
    assert cfg.overlap_size == 100
    assert base.with_overrides(None) is base


def test_chunk_dict_roundtrip_keeps_overlap_fields() -> None:
    text = "z" * 40
    result = chunk_text(text, ChunkingConfig(max_chunk_size=20, overlap_size=5))
    payload = result.to_dict()
    assert payload["total_chunks"] == len(result.chunks)
    restored = [TextChunk.from_dict(c) for c in payload["chunks"]]
    assert restored == list(result.chunks)
