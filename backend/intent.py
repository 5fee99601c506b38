"""Lexical signals over the current user message.

Depends only on text_utils. Everything here is a pure function of the raw text; the guard
injector and the validator consume the results.
"""

import re
from typing import Optional

from pydantic import BaseModel

from text_utils import normalize_whitespace


TOPIC_STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "with", "for", "to", "of", "in", "on", "at",
    "is", "are", "am", "be", "it", "this", "that", "you", "me", "my", "your", "we",
    "our", "us", "what", "when", "where", "which", "there", "here", "have", "does",
    "about", "just", "really", "would", "could", "should", "will", "they", "them",
})

FLIRT_KEYWORDS = (
    "flirt",
    "kiss",
    "hot",
    "cute",
    "sexy",
    "attractive",
    "date",
    "romantic",
    "hold hands",
    "cuddle",
    "blush",
    "wink",
    "crush",
    "turn on",
    "spicy",
    "seduce",
)

LONG_FORM_KEYWORDS = ("story", "describe", "detail", "roleplay", "scenario", "imagine")

TOPIC_SHIFT_PHRASES = (
    "anyway",
    "by the way",
    "speaking of",
    "let's talk about",
    "different topic",
    "unrelated",
)

MAX_TOPIC_KEYWORDS = 5
MAX_FOCUS_CHARS = 120


class TopicSignal(BaseModel):
    focus: str = ""
    keywords: list[str] = []

    @property
    def present(self) -> bool:
        return bool(self.focus or self.keywords)


def contains_word_or_phrase(text: str, term: str) -> bool:
    low = (text or "").lower()
    t = (term or "").lower().strip()
    if not t:
        return False
    if " " in t:
        return t in low
    return re.search(rf"\b{re.escape(t)}\b", low) is not None


def detect_flirt(text: str) -> bool:
    return any(contains_word_or_phrase(text, k) for k in FLIRT_KEYWORDS)


def extract_topic(text: str) -> TopicSignal:
    """Topic focus is the trailing clause; keywords are its content words longer than 3 chars."""
    raw = (text or "").strip()
    if not raw:
        return TopicSignal()
    match = re.search(r"[^.!?]+[.!?]*$", raw)
    last_clause = normalize_whitespace(match.group(0) if match else raw)
    words = re.sub(r"[^a-z0-9\s]", " ", last_clause.lower()).split()
    keywords: list[str] = []
    for w in words:
        if len(w) > 3 and w not in TOPIC_STOP_WORDS and w not in keywords:
            keywords.append(w)
        if len(keywords) >= MAX_TOPIC_KEYWORDS:
            break
    return TopicSignal(focus=last_clause[:MAX_FOCUS_CHARS], keywords=keywords)


def classify_message_type(text: str, long_threshold: int = 140) -> str:
    """'long' for narrative/roleplay cues or lengthy input, otherwise 'short'."""
    lowered = (text or "").lower()
    if any(k in lowered for k in LONG_FORM_KEYWORDS):
        return "long"
    if len(lowered) > long_threshold:
        return "long"
    return "short"


def find_topic_shift(text: str) -> Optional[str]:
    lowered = (text or "").lower()
    for phrase in TOPIC_SHIFT_PHRASES:
        if phrase in lowered:
            return phrase
    return None
