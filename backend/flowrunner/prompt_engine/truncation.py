"""Unicode-safe token estimation and conversation truncation.

Token counts are estimated from grapheme clusters (``regex``'s ``\\X``), so
combining marks, ZWJ emoji sequences and flags each count once.  When
segmentation fails the estimate falls back to a codepoint heuristic: emoji
and CJK ideographs at one token each, everything else at four characters per
token.
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Sequence

import regex

logger = logging.getLogger("flowrunner.prompt_engine.truncation")

GRAPHEMES_PER_TOKEN = 3.5
FALLBACK_CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "..."

_GRAPHEME_RE = regex.compile(r"\X")

_EMOJI_RE = re.compile(
    "[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF\U0001F1E0-\U0001F1FF]"
)
_CJK_RE = re.compile(
    "[\u4e00-\u9fff\u3400-\u4dbf\U00020000-\U0002A6DF\U0002A700-\U0002B73F"
    "\U0002B740-\U0002B81F\U0002B820-\U0002CEAF\U0002CEB0-\U0002EBEF]"
)
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+")
_WORD_SPLIT_RE = re.compile(r"\s+")


@dataclass
class TruncationResult:
    preserved: list[dict[str, Any]] = field(default_factory=list)
    dropped: list[dict[str, Any]] = field(default_factory=list)
    final_token_count: int = 0
    truncated: bool = False


def fallback_token_estimate(text: str) -> int:
    """Codepoint heuristic used when grapheme segmentation is unavailable."""
    if not text:
        return 0
    emoji = len(_EMOJI_RE.findall(text))
    cjk = len(_CJK_RE.findall(text))
    remaining = max(0, len(text) - emoji - cjk)
    return max(emoji + cjk + math.ceil(remaining / FALLBACK_CHARS_PER_TOKEN), 1)


def count_graphemes(text: str) -> int:
    return len(_GRAPHEME_RE.findall(text))


def count_tokens(text: str) -> int:
    """Approximate token count; 0 for empty input, otherwise at least 1."""
    if not text or not isinstance(text, str):
        return 0
    normalized = unicodedata.normalize("NFC", text)
    try:
        graphemes = count_graphemes(normalized)
    except (regex.error, ValueError, TypeError) as exc:
        logger.warning("Grapheme segmentation failed, using fallback estimate: %s", exc)
        return fallback_token_estimate(normalized)
    return max(math.ceil(graphemes / GRAPHEMES_PER_TOKEN), 1)


def truncate_to_token_budget(turns: Sequence[dict[str, Any]], token_budget: int) -> TruncationResult:
    """Keep the newest turns that fit in *token_budget*, dropping the oldest first.

    The newest turn is kept whenever it fits on its own; older turns are then
    added newest-first while they still fit.  The kept turns are always a
    contiguous suffix of *turns*, in their original order.
    """
    if not turns:
        return TruncationResult()

    total = 0
    cut = len(turns)
    for index in range(len(turns) - 1, -1, -1):
        tokens = count_tokens(turns[index].get("content", ""))
        if total + tokens > token_budget:
            break
        total += tokens
        cut = index

    preserved = list(turns[cut:])
    dropped = list(turns[:cut])

    truncated = bool(dropped)
    if truncated:
        logger.info(
            "Memory truncated: kept %d of %d turns (%d tokens, budget %d)",
            len(preserved), len(turns), total, token_budget,
        )
    return TruncationResult(
        preserved=preserved,
        dropped=dropped,
        final_token_count=total,
        truncated=truncated,
    )


def _cut_at_grapheme_boundary(text: str, max_chars: int) -> str:
    """Longest prefix of at most *max_chars* code points that ends on a cluster boundary."""
    if max_chars >= len(text):
        return text
    length = 0
    for cluster in _GRAPHEME_RE.findall(text):
        if length + len(cluster) > max_chars:
            break
        length += len(cluster)
    return text[:length]


def truncate_string_at_boundary(content: str, max_tokens: int) -> str:
    """Shorten *content* to roughly *max_tokens*, preferring natural boundaries.

    Tries whole sentences first (kept when longer than 50 chars), then whole
    words (kept when longer than 20 chars), then a raw cut on a grapheme
    boundary.  A truncated result always ends with ``...``.
    """
    if not content or max_tokens <= 0:
        return ""

    current = count_tokens(content)
    if current <= max_tokens:
        return content

    target_chars = math.floor(max_tokens * (len(content) / current) * 0.9)

    result = ""
    for sentence in _SENTENCE_RE.findall(content):
        candidate = result + sentence
        if count_tokens(candidate) > max_tokens:
            break
        result = candidate
    if len(result) > 50:
        return result.strip() + TRUNCATION_MARKER

    result = ""
    for word in _WORD_SPLIT_RE.split(content):
        candidate = result + " " + word
        if count_tokens(candidate) > max_tokens:
            break
        result = candidate
    if len(result) > 20:
        return result.strip() + TRUNCATION_MARKER

    return _cut_at_grapheme_boundary(content, target_chars) + TRUNCATION_MARKER
