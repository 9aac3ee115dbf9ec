from __future__ import annotations

import logging
import re


logger = logging.getLogger(__name__)


FILLER_RE = re.compile(r"(?:えーと|えっと|えー|あのー|そのー|まあ)(?:[、，]|[ 　]+)")
REPEAT_RE = re.compile(r"(.{1,10}?)\1{2,}")
BLANK_LINES_RE = re.compile(r"\n{3,}")
SPACES_RE = re.compile(r"[ ]{2,}")

# Common speech-recognition misreadings (kana -> intended term).
CORRECTIONS: tuple[tuple[str, str], ...] = (
    ("かんぎ", "会議"),
    ("ぎじろく", "議事録"),
    ("さんかしゃ", "参加者"),
    ("しつもん", "質問"),
    ("かいとう", "回答"),
    ("けってい", "決定"),
    ("つぎかい", "次回"),
)


def apply_basic_corrections(text: str) -> str:
    out = FILLER_RE.sub("", text)
    out = REPEAT_RE.sub(r"\1", out)
    for wrong, right in CORRECTIONS:
        out = out.replace(wrong, right)
    out = BLANK_LINES_RE.sub("\n\n", out)
    out = SPACES_RE.sub(" ", out)
    return out.strip()


class OfflineTextTransform:
    """Rule-based transcript cleanup that needs no network or credentials.

    Deterministic: the same fragment always yields the same output, and the
    instructions are ignored.
    """

    async def __call__(self, text: str, instructions: str) -> str:
        out = apply_basic_corrections(text)
        logger.debug("offline transform: in_chars=%d out_chars=%d", len(text), len(out))
        return out
