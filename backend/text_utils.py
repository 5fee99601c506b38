"""Low-level text helpers used across the turn pipeline.

No dependency on schemas, models, or any other project module.
"""

import re

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_OR_LINE_BOUNDARY = re.compile(r"(?<=[.!?])\s+|[\r\n]+")
LIST_PREFIX_REGEX = r"^\s*([\-*•]|\d+[\.\)])\s+"


def normalize_whitespace(text: str) -> str:
    return " ".join((text or "").split()).strip()


def split_sentences(text: str) -> list[str]:
    """Split on terminal punctuation followed by whitespace."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split((text or "").strip()) if s.strip()]


def split_sentences_and_lines(text: str) -> list[str]:
    """Like split_sentences, but a line break also ends a sentence."""
    return [s.strip() for s in _SENTENCE_OR_LINE_BOUNDARY.split((text or "").strip()) if s.strip()]


def sentence_count(text: str) -> int:
    return len(split_sentences(normalize_whitespace(text)))


def first_sentence(text: str) -> str:
    sentences = split_sentences(text)
    return sentences[0] if sentences else (text or "").strip()


def word_count(text: str) -> int:
    return len(re.findall(r"\S+", (text or "").strip()))


def clamp_text(text: str, limit: int) -> str:
    """Cut to ``limit`` characters and mark the cut with an ellipsis."""
    value = (text or "").strip()
    if limit <= 0 or len(value) <= limit:
        return value
    return value[:limit] + "…"


def has_line_break(text: str) -> bool:
    return bool(re.search(r"[\r\n]", text or ""))


def has_list_marker(text: str) -> bool:
    return any(re.match(LIST_PREFIX_REGEX, line) for line in (text or "").splitlines())


def strip_list_prefix(line: str) -> str:
    return re.sub(LIST_PREFIX_REGEX, "", line or "").strip()
