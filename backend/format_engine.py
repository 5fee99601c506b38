"""Free-tier reply format: detection, escalation prompts, and local coercion."""

import re
from typing import Optional

from pydantic import BaseModel

from guard_configs import get_format_reprompt
from text_utils import (
    has_line_break,
    has_list_marker,
    normalize_whitespace,
    split_sentences,
    split_sentences_and_lines,
    strip_list_prefix,
    word_count,
)
from turn_config import TurnSettings


FREE_TIER_STOP_SEQUENCES = ["\n\n", "\r\n\r\n", "\n- ", "\n* ", "\n1. ", "\n2. "]
FREE_TIER_MAX_TOKENS = 220


class FormatReport(BaseModel):
    ok: bool
    violations: list[str] = []
    sentences: int = 0
    words: int = 0


def check_free_tier_format(text: str, settings: Optional[TurnSettings] = None) -> FormatReport:
    """Single paragraph, bounded sentence count, bounded word count, no lists."""
    settings = settings or TurnSettings()
    t = str(text or "").strip()
    sentences = len(split_sentences_and_lines(t))
    words = word_count(t)
    violations: list[str] = []

    if has_line_break(t):
        violations.append("line_break")
    if has_list_marker(t):
        violations.append("list_marker")
    if sentences < settings.free_min_sentences:
        violations.append("too_few_sentences")
    elif sentences > settings.free_max_sentences:
        violations.append("too_many_sentences")
    if words < settings.free_min_words:
        violations.append("too_few_words")
    elif words > settings.free_max_words:
        violations.append("too_many_words")

    return FormatReport(ok=not violations, violations=violations, sentences=sentences, words=words)


def format_reprompt_directive(level: int, settings: Optional[TurnSettings] = None) -> str:
    settings = settings or TurnSettings()
    target_low = settings.free_min_words + (settings.free_max_words - settings.free_min_words) // 3
    target_high = settings.free_max_words - (settings.free_max_words - settings.free_min_words) // 6
    return get_format_reprompt(level).format(
        min_sentences=settings.free_min_sentences,
        max_sentences=settings.free_max_sentences,
        min_words=settings.free_min_words,
        max_words=settings.free_max_words,
        target_words=f"{target_low}-{target_high}",
    )


def join_paragraph(text: str) -> str:
    lines = [strip_list_prefix(ln) for ln in str(text or "").splitlines()]
    parts = []
    for ln in lines:
        if not ln:
            continue
        # A list item without terminal punctuation would otherwise fuse with the next line.
        if not re.search(r"[.!?]['\")\]]?$", ln):
            ln = ln + "."
        parts.append(ln)
    return normalize_whitespace(" ".join(parts))


def coerce_free_tier_format(text: str, settings: Optional[TurnSettings] = None) -> Optional[str]:
    """Rebuild a single paragraph inside the band, cutting only on sentence boundaries.

    Returns None when the material cannot reach the band (too short to begin with, or a
    first sentence that alone overruns the word cap).
    """
    settings = settings or TurnSettings()
    paragraph = join_paragraph(text)
    if not paragraph:
        return None

    kept: list[str] = []
    words = 0
    for sentence in split_sentences(paragraph):
        n = word_count(sentence)
        if len(kept) >= settings.free_max_sentences or words + n > settings.free_max_words:
            break
        kept.append(sentence)
        words += n

    candidate = " ".join(kept).strip()
    if not candidate:
        return None
    if not check_free_tier_format(candidate, settings).ok:
        return None
    return candidate
