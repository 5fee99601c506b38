"""
Prompt composition: persona message, guard directives, windowed history, user turn.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from context_loader import CharacterSnapshot, HistoryItem, TurnContext
from guard_configs import (
    ANTI_REPEAT_DIRECTIVE,
    FLOW_DIRECTIVE,
    PERSONA_CONTENT_POLICY,
    PERSONA_STYLE,
    UNIVERSAL_DIRECTIVE,
)
from guard_rails import GuardDirective
from policy import is_refusal_meta, model_facing_user_text, redact_meta_tokens
from text_utils import clamp_text, normalize_whitespace
from turn_config import TurnSettings

logger = logging.getLogger(__name__)


class PromptBundle(BaseModel):
    messages: list[dict]
    history_count: int = 0
    history_chars: int = 0
    user_text: str = ""

    def with_directive(self, content: str) -> list[dict]:
        """Messages with one extra system directive directly after the persona message."""
        directive = {"role": "system", "content": content}
        return [self.messages[0], directive, *self.messages[1:]]


def _render_traits(traits: Optional[dict]) -> str:
    if not traits:
        return ""
    parts = []
    for name, value in traits.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        parts.append(f"{name} {float(value):.2f}")
    return ", ".join(parts)


def build_persona_prompt(
    character: CharacterSnapshot,
    nsfw_enabled: bool,
    user_display_name: Optional[str] = None,
    settings: Optional[TurnSettings] = None,
) -> str:
    settings = settings or TurnSettings()
    limit = settings.persona_field_max_chars
    lines = [f"You are {character.name}."]
    if user_display_name:
        lines.append(f"You are talking with {user_display_name}.")
    if character.description:
        lines.append(f"Description: {clamp_text(normalize_whitespace(character.description), limit)}")
    if character.persona:
        lines.append(f"Persona: {clamp_text(normalize_whitespace(character.persona), limit)}")

    identity = []
    if character.character_type:
        identity.append(f"Type: {character.character_type}")
    if character.character_gender:
        identity.append(f"Gender: {character.character_gender}")
    if identity:
        lines.append(". ".join(identity) + ".")

    traits = _render_traits(character.traits)
    if traits:
        lines.append(f"Personality traits (0-1): {traits}.")

    mode = "nsfw" if nsfw_enabled else "sfw"
    lines.append(PERSONA_CONTENT_POLICY[mode])
    lines.append(PERSONA_STYLE[mode])
    lines.append(UNIVERSAL_DIRECTIVE)
    lines.append(ANTI_REPEAT_DIRECTIVE)
    lines.append(FLOW_DIRECTIVE)
    return "\n".join(lines)


def clean_history(items: list[HistoryItem], nsfw_enabled: bool) -> list[HistoryItem]:
    cleaned: list[HistoryItem] = []
    for item in items:
        if item.role not in ("user", "assistant"):
            continue
        if not nsfw_enabled:
            if item.is_nsfw:
                continue
            cleaned.append(item)
            continue
        if item.role == "assistant" and is_refusal_meta(item.content):
            continue
        content = redact_meta_tokens(item.content)
        if content:
            cleaned.append(item.model_copy(update={"content": content}))
    return cleaned


def window_history(items: list[HistoryItem], settings: TurnSettings) -> list[dict]:
    """Last ``history_limit`` items, each clamped, dropping the oldest until the budget fits."""
    if settings.history_limit <= 0:
        return []
    window = [
        {"role": item.role, "content": clamp_text(item.content, settings.history_item_max_chars)}
        for item in items[-settings.history_limit:]
        if (item.content or "").strip()
    ]
    total = sum(len(m["content"]) for m in window)
    while window and total > settings.history_char_budget:
        total -= len(window.pop(0)["content"])
    return window


def compose_prompt(
    context: TurnContext,
    raw_text: str,
    guards: list[GuardDirective],
    settings: Optional[TurnSettings] = None,
) -> PromptBundle:
    settings = settings or TurnSettings()
    nsfw = context.effective_nsfw

    persona = build_persona_prompt(context.character, nsfw, context.user_display_name, settings)
    history = window_history(clean_history(context.history, nsfw), settings)
    user_text = model_facing_user_text(raw_text or "", nsfw)[: settings.user_text_max_chars]

    messages = [{"role": "system", "content": persona}]
    messages.extend(g.as_message() for g in guards)
    messages.extend(history)
    messages.append({"role": "user", "content": user_text})

    history_chars = sum(len(m["content"]) for m in history)
    logger.debug(
        "composed prompt session=%s guards=%s history=%d chars=%d",
        context.session.id, [g.kind.value for g in guards], len(history), history_chars,
    )
    return PromptBundle(
        messages=messages,
        history_count=len(history),
        history_chars=history_chars,
        user_text=user_text,
    )
