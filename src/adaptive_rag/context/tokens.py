"""Mixed-script token estimation."""

from __future__ import annotations

import re
from math import ceil
from typing import Iterable

# CJK ideographs, kana, hangul and CJK punctuation/full-width forms.
_DENSE_SCRIPT_PATTERN = re.compile(
    r"[\u3000-\u303f\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uff00-\uffef]"
)

DENSE_CHARS_PER_TOKEN = 1.5
LATIN_CHARS_PER_TOKEN = 4.0


def estimate_tokens(text: str) -> int:
    """Estimate tokens as ceil(dense_chars / 1.5 + other_chars / 4)."""
    if not text:
        return 0
    dense = len(_DENSE_SCRIPT_PATTERN.findall(text))
    other = len(text) - dense
    return ceil(dense / DENSE_CHARS_PER_TOKEN + other / LATIN_CHARS_PER_TOKEN)


def estimate_total(texts: Iterable[str]) -> int:
    return sum(estimate_tokens(text) for text in texts)
