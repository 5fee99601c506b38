"""Content policy: keyword moderation, NSFW stripping, and history hygiene."""

import re
from typing import Optional

from pydantic import BaseModel

from text_utils import normalize_whitespace


SEXUAL_TERMS = (
    "sex", "sexual", "fuck", "fucking", "fucked", "horny", "cum", "cumming", "semen",
    "nsfw", "nude", "naked", "boobs", "tits", "penis", "vagina", "pussy", "clit", "clitoris",
    "cock", "dick", "jerk off", "handjob", "blowjob", "anal", "buttplug",
    "deepthroat", "threesome", "orgasm", "moan", "fetish", "kink", "sext", "porn",
)

PROHIBITED_TERMS = (
    "rape", "raping", "bestiality", "zoophilia", "loli", "child porn", "underage",
    "necrophilia", "snuff", "incest", "sex slave",
)

VIOLENCE_TERMS = ("kill", "murder", "stab", "shoot", "behead", "gore", "bloodbath")

REFUSAL_META_PHRASES = (
    "strictly sfw companion", "sfw companion", "as a sfw", "as a strictly sfw",
    "i can't engage in explicit", "due to policy", "i am programmed", "i must decline",
    "i can't due to rules", "wholesome companion", "i can't go there", "i can't indulge",
    "i can't engage", "keep the conversation friendly", "keep it friendly", "stay friendly",
    "prefer to keep", "prefer to stay",
)

REFUSAL_META_PATTERNS = (
    re.compile(r"(can't|cannot|won't).*(explicit|go there|indulge|engage)", re.IGNORECASE),
    re.compile(r"(prefer|like) to (keep|stay).*(friendly|light|wholesome)", re.IGNORECASE),
    re.compile(r"let'?s talk about .* instead", re.IGNORECASE),
)

META_REDACTIONS = (
    (re.compile(r"\bNSFW\b", re.IGNORECASE), ""),
    (re.compile(r"\bSFW\b", re.IGNORECASE), ""),
    (re.compile(r"as an ai", re.IGNORECASE), ""),
    (re.compile(r"due to policy", re.IGNORECASE), ""),
    (re.compile(r"i am programmed to", re.IGNORECASE), ""),
    (re.compile(r"i must decline", re.IGNORECASE), ""),
    (re.compile(r"i can't (?:engage|due to rules)[^.]*\.?", re.IGNORECASE), ""),
    (re.compile(r"\bcompanion\b", re.IGNORECASE), ""),
    (re.compile(r"\bwholesome\b", re.IGNORECASE), ""),
)


class ModerationResult(BaseModel):
    allowed: bool = True
    category: Optional[str] = None
    term: Optional[str] = None


def _term_pattern(term: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)


def _mask(match: re.Match) -> str:
    return "*" * max(3, len(match.group(0)))


def _find_term(text: str, terms) -> Optional[str]:
    for term in terms:
        if _term_pattern(term).search(text):
            return term
    return None


def moderate_content(text: str, nsfw_enabled: bool = False) -> ModerationResult:
    t = normalize_whitespace(text).lower()
    if not t:
        return ModerationResult()

    term = _find_term(t, PROHIBITED_TERMS)
    if term:
        return ModerationResult(allowed=False, category="prohibited", term=term)

    # Violence is flagged but never blocked.
    term = _find_term(t, VIOLENCE_TERMS)
    if term:
        return ModerationResult(allowed=True, category="violence", term=term)

    term = _find_term(t, SEXUAL_TERMS)
    if term:
        return ModerationResult(allowed=nsfw_enabled, category="sexual", term=term)

    return ModerationResult()


def strip_nsfw(text: str) -> str:
    out = text or ""
    if not out:
        return out
    for term in PROHIBITED_TERMS:
        out = _term_pattern(term).sub(_mask, out)
    out = re.sub(r"\bhorny\b", "excited", out, flags=re.IGNORECASE)
    out = re.sub(r"\bnsfw\b", "explicit", out, flags=re.IGNORECASE)
    out = re.sub(r"\bporn\b", "adult content", out, flags=re.IGNORECASE)
    for term in SEXUAL_TERMS:
        out = _term_pattern(term).sub(_mask, out)
    return out


def model_facing_user_text(text: str, nsfw_enabled: bool) -> str:
    """Copy of the user turn sent to the model; the raw text is what gets stored."""
    verdict = moderate_content(text, nsfw_enabled)
    if verdict.allowed:
        return text
    return strip_nsfw(text)


def is_refusal_meta(text: str) -> bool:
    s = (text or "").lower()
    if any(p in s for p in REFUSAL_META_PHRASES):
        return True
    return any(p.search(s) for p in REFUSAL_META_PATTERNS)


def redact_meta_tokens(text: str) -> str:
    out = text or ""
    for pattern, replacement in META_REDACTIONS:
        out = pattern.sub(replacement, out)
    return normalize_whitespace(out)
