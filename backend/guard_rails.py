"""Guard directive assembly.

``build_guard_directives`` is a pure function: the same signals always produce the same
ordered directive list, and the order is GUARD_ORDER regardless of which guards apply.
"""

from typing import Optional

from pydantic import BaseModel

from guard_configs import GUARD_ORDER, GuardKind, get_guard_template
from intent import TopicSignal, classify_message_type, detect_flirt, extract_topic
from turn_config import TurnSettings, is_paid_plan


class GuardSignals(BaseModel):
    nsfw_enabled: bool = False
    adult_consented: bool = True
    user_turn_count: int = 0
    plan: str = "free"
    message_type: str = "short"
    flirt: bool = False
    topic: TopicSignal = TopicSignal()

    @property
    def effective_nsfw(self) -> bool:
        return self.nsfw_enabled and self.adult_consented

    @property
    def paid(self) -> bool:
        return is_paid_plan(self.plan)


class GuardDirective(BaseModel):
    kind: GuardKind
    content: str
    focus: Optional[str] = None
    keywords: list[str] = []

    def as_message(self) -> dict:
        return {"role": "system", "content": self.content}


def derive_guard_signals(
    raw_text: str,
    nsfw_enabled: bool,
    adult_consented: bool,
    user_turn_count: int,
    plan: str,
    settings: Optional[TurnSettings] = None,
) -> GuardSignals:
    settings = settings or TurnSettings()
    return GuardSignals(
        nsfw_enabled=nsfw_enabled,
        adult_consented=adult_consented,
        user_turn_count=user_turn_count,
        plan=plan or "free",
        message_type=classify_message_type(raw_text, settings.long_message_threshold),
        flirt=detect_flirt(raw_text),
        topic=extract_topic(raw_text),
    )


def is_early_phase(signals: GuardSignals, pacing_threshold: int) -> bool:
    return signals.effective_nsfw and (signals.flirt or signals.user_turn_count < pacing_threshold)


def _length_policy(signals: GuardSignals, settings: TurnSettings) -> GuardDirective:
    if not signals.paid:
        content = get_guard_template(GuardKind.LENGTH_POLICY, "free").format(
            min_sentences=settings.free_min_sentences,
            max_sentences=settings.free_max_sentences,
            min_words=settings.free_min_words,
            max_words=settings.free_max_words,
        )
    else:
        variant = "paid_long" if signals.message_type == "long" else "paid_short"
        content = get_guard_template(GuardKind.LENGTH_POLICY, variant)
    return GuardDirective(kind=GuardKind.LENGTH_POLICY, content=content)


def _keyword_text(keywords: list[str]) -> str:
    return ", ".join(keywords) if keywords else "(none)"


def _depth(signals: GuardSignals, early: bool) -> GuardDirective:
    if not signals.paid:
        variant = "free"
    else:
        variant = "paid_early" if early else "paid_late"
    return GuardDirective(kind=GuardKind.DEPTH, content=get_guard_template(GuardKind.DEPTH, variant))


def build_guard_directives(signals: GuardSignals, settings: Optional[TurnSettings] = None) -> list[GuardDirective]:
    settings = settings or TurnSettings()
    nsfw = signals.effective_nsfw
    early = is_early_phase(signals, settings.pacing_threshold)
    topic = signals.topic

    found: dict[GuardKind, GuardDirective] = {
        GuardKind.LENGTH_POLICY: _length_policy(signals, settings),
    }

    if nsfw and topic.present:
        found[GuardKind.TOPIC_FOCUS] = GuardDirective(
            kind=GuardKind.TOPIC_FOCUS,
            content=get_guard_template(GuardKind.TOPIC_FOCUS).format(
                focus=topic.focus, keywords=_keyword_text(topic.keywords)
            ),
            focus=topic.focus,
            keywords=list(topic.keywords),
        )

    if not nsfw:
        found[GuardKind.SAFETY] = GuardDirective(
            kind=GuardKind.SAFETY, content=get_guard_template(GuardKind.SAFETY)
        )
    elif signals.user_turn_count < settings.pacing_threshold:
        found[GuardKind.PACING] = GuardDirective(
            kind=GuardKind.PACING,
            content=get_guard_template(GuardKind.PACING).format(user_turns=signals.user_turn_count),
        )

    if nsfw and signals.flirt:
        found[GuardKind.FLIRT_MIRROR] = GuardDirective(
            kind=GuardKind.FLIRT_MIRROR,
            content=get_guard_template(GuardKind.FLIRT_MIRROR).format(keywords=_keyword_text(topic.keywords)),
            focus=topic.focus or None,
            keywords=list(topic.keywords),
        )

    if nsfw:
        found[GuardKind.DEPTH] = _depth(signals, early)

    return [found[kind] for kind in GUARD_ORDER if kind in found]


def has_guard(guards: list[GuardDirective], *kinds: GuardKind) -> bool:
    return any(g.kind in kinds for g in guards)


def topic_keywords(guards: list[GuardDirective]) -> list[str]:
    for g in guards:
        if g.kind in (GuardKind.TOPIC_FOCUS, GuardKind.FLIRT_MIRROR) and g.keywords:
            return list(g.keywords)
    return []
