"""Text heuristics shared by analysis, grading, rewriting and context management."""

from __future__ import annotations

import re
from typing import Any

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import JsonOutputParser

from adaptive_rag.errors import MalformedOutputError

_THINK_PATTERN = re.compile(r"<think>.*?</think>", flags=re.DOTALL | re.IGNORECASE)
_FENCE_PATTERN = re.compile(r"```(?:json)?", flags=re.IGNORECASE)
_CJK_RUN_PATTERN = re.compile(r"[\u4e00-\u9fff]{2,}")
_TERM_PATTERN = re.compile(r"[a-z0-9_]+|[\u4e00-\u9fff]")
_WORD_SPLIT_PATTERN = re.compile(r"[\s,，。？！、；：;:\"'“”‘’（）()【】\[\]{}<>?!.]+")

_GREETING_PATTERNS = [
    re.compile(r"^(你好|您好|hi|hello|hey|嗨|哈喽)[\s!！。.]*$", flags=re.IGNORECASE),
    re.compile(r"^(谢谢|感谢|thanks|thank you|thx)[\s!！。.]*$", flags=re.IGNORECASE),
    re.compile(r"^(再见|拜拜|bye|goodbye|see you)[\s!！。.]*$", flags=re.IGNORECASE),
    re.compile(r"^(早上好|下午好|晚上好|早安|晚安|good morning|good evening)[\s!！。.]*$", flags=re.IGNORECASE),
    re.compile(r"^(好的|ok|okay|没问题|收到)[\s!！。.]*$", flags=re.IGNORECASE),
]
_TOPIC_SWITCH_PATTERN = re.compile(
    r"换个话题|另外问|说点别的|不说这个了|change the subject|another question|different topic",
    flags=re.IGNORECASE,
)
_FOLLOW_UP_LEAD_PATTERN = re.compile(
    r"^(它|这|那|他|她|前面|上面|上个|刚才|it\b|that\b|this\b|those\b|these\b|they\b|them\b|he\b|she\b)",
    flags=re.IGNORECASE,
)
_QUESTION_MARKER_PATTERN = re.compile(r"吗|呢|？|\?$")

STOP_WORDS = frozenset(
    {
        "的", "是", "在", "有", "和", "与", "或", "了", "这", "那", "什么", "怎么", "如何",
        "为什么", "哪些", "哪个", "吗", "呢", "啊", "吧", "嘛", "呀", "哦", "哈",
        "the", "a", "an", "is", "are", "was", "were", "what", "how", "why", "which",
        "do", "does", "did", "can", "could", "would", "should", "will", "to", "of", "in",
        "and", "or", "for", "on", "with", "me", "about", "tell",
    }
)


def tokenize(text: str) -> list[str]:
    """Lowercased Latin/digit runs plus single CJK characters."""
    return _TERM_PATTERN.findall(text.lower())


def strip_reasoning(text: str) -> str:
    """Remove `<think>...</think>` blocks emitted by reasoning models."""
    return _THINK_PATTERN.sub("", text).strip()


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse the first JSON object in a model response.

    Raises:
        MalformedOutputError: when no JSON object can be recovered.
    """

    cleaned = strip_reasoning(text)
    if not _FENCE_PATTERN.search(cleaned):
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedOutputError(f"No JSON object found in model output: {cleaned[:120]!r}")
        cleaned = cleaned[start : end + 1]
    try:
        parsed = JsonOutputParser().parse(cleaned)
    except OutputParserException as exc:
        raise MalformedOutputError(str(exc)) from exc
    if not isinstance(parsed, dict):
        raise MalformedOutputError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def coerce_unit_score(value: Any) -> float:
    """Clamp a model-reported score into [0, 1]."""
    try:
        score = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedOutputError(f"Score is not numeric: {value!r}") from exc
    if score != score:
        raise MalformedOutputError("Score is NaN")
    return min(1.0, max(0.0, score))


def is_greeting(query: str) -> bool:
    stripped = query.strip()
    return any(pattern.match(stripped) for pattern in _GREETING_PATTERNS)


def is_topic_switch(query: str) -> bool:
    return bool(_TOPIC_SWITCH_PATTERN.search(query))


def looks_like_follow_up(query: str) -> bool:
    """True for pronoun-led queries, queries of at most 10 characters, and short questions."""
    stripped = query.strip()
    if _FOLLOW_UP_LEAD_PATTERN.match(stripped):
        return True
    if len(stripped) <= 10:
        return True
    return bool(_QUESTION_MARKER_PATTERN.search(stripped)) and len(stripped) < 15


def extract_keywords(text: str, limit: int = 12) -> list[str]:
    """Split on whitespace and punctuation, dropping stop words and single characters."""
    seen: dict[str, None] = {}
    for word in _WORD_SPLIT_PATTERN.split(text.lower()):
        if len(word) >= 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)[:limit]


def keyword_anchors(text: str) -> list[str]:
    """Terms a faithful rewrite of `text` is expected to keep.

    CJK runs of two or more characters are anchors on their own; Latin-script
    keywords of three or more characters are anchors as well.
    """

    anchors = _CJK_RUN_PATTERN.findall(text)
    anchors.extend(
        word
        for word in extract_keywords(text, limit=32)
        if len(word) >= 3 and not _CJK_RUN_PATTERN.fullmatch(word)
    )
    return anchors


def keeps_anchor(original: str, rewritten: str) -> bool:
    anchors = keyword_anchors(original)
    if not anchors:
        return True
    lowered = rewritten.lower()
    return any(anchor.lower() in lowered for anchor in anchors)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."
