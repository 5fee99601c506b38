"""Acceptance gate for candidate replies.

Checks run in a fixed order and stop at the first failure:
non-empty -> non-repeat -> topic adherence -> depth.
"""

from typing import Optional

from pydantic import BaseModel

from guard_configs import GuardKind
from guard_rails import GuardDirective, has_guard, topic_keywords
from intent import find_topic_shift
from text_utils import first_sentence, normalize_whitespace, sentence_count
from turn_config import TurnSettings


REJECT_EMPTY = "empty"
REJECT_REPEAT = "repeat"
REJECT_OFF_TOPIC = "off_topic"
REJECT_TOPIC_SHIFT = "topic_shift"
REJECT_TOO_SHORT = "too_short"
REJECT_SHALLOW = "shallow"


class Verdict(BaseModel):
    accepted: bool
    reason: Optional[str] = None
    detail: str = ""


class ValidationContext(BaseModel):
    prior_assistant: Optional[str] = None
    recent_assistant: list[str] = []
    topic_mode: bool = False
    keywords: list[str] = []
    depth_mode: bool = False
    min_topic_sentences: int = 2
    min_depth_sentences: int = 3

    def basic(self) -> "ValidationContext":
        """Same history, topic and depth checks switched off."""
        return self.model_copy(update={"topic_mode": False, "depth_mode": False})


def build_validation_context(
    guards: list[GuardDirective],
    prior_assistant: Optional[str],
    recent_assistant: list[str],
    nsfw_enabled: bool,
    user_turn_count: int,
    settings: Optional[TurnSettings] = None,
) -> ValidationContext:
    settings = settings or TurnSettings()
    return ValidationContext(
        prior_assistant=prior_assistant,
        recent_assistant=list(recent_assistant[: settings.recent_assistant_window]),
        topic_mode=has_guard(guards, GuardKind.TOPIC_FOCUS, GuardKind.FLIRT_MIRROR, GuardKind.PACING),
        keywords=topic_keywords(guards),
        depth_mode=nsfw_enabled and user_turn_count >= settings.pacing_threshold,
        min_topic_sentences=settings.min_topic_sentences,
        min_depth_sentences=settings.min_depth_sentences,
    )


def normalize_reply(text: str) -> str:
    return normalize_whitespace(text)


def _reject(reason: str, detail: str = "") -> Verdict:
    return Verdict(accepted=False, reason=reason, detail=detail)


def validate_candidate(text: str, ctx: ValidationContext) -> Verdict:
    normalized = normalize_reply(text)
    if not normalized:
        return _reject(REJECT_EMPTY)

    previous = [normalize_reply(p) for p in [ctx.prior_assistant, *ctx.recent_assistant] if p]
    if normalized in previous:
        return _reject(REJECT_REPEAT, "matches a recent assistant reply")

    sentences = sentence_count(normalized)

    if ctx.topic_mode:
        lower = normalized.lower()
        keywords = [k.lower() for k in ctx.keywords if k]
        if keywords:
            shift = find_topic_shift(lower)
            if shift and not any(k in lower for k in keywords):
                return _reject(REJECT_TOPIC_SHIFT, f"phrase={shift}")
            first = first_sentence(normalized).lower()
            if not any(k in first for k in keywords):
                return _reject(REJECT_OFF_TOPIC, "first sentence misses every topic keyword")
        if sentences < ctx.min_topic_sentences:
            return _reject(REJECT_TOO_SHORT, f"sentences={sentences}")

    if ctx.depth_mode and sentences < ctx.min_depth_sentences:
        return _reject(REJECT_SHALLOW, f"sentences={sentences}")

    return Verdict(accepted=True)
