from __future__ import annotations

import pytest

from docjob.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, job_id="job_abc")
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.job_id == c.job_id


def test_cursor_invalid() -> None:
    with pytest.raises(CursorError):
        decode_cursor("not-a-valid-cursor")
    with pytest.raises(CursorError):
        decode_cursor("   ")
