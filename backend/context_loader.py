"""Resolve a chat session for one turn and load everything the prompt needs.

The returned bundle is a read-only snapshot: ORM rows are copied into pydantic models
so later stages never touch the database session.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from errors import AccessDeniedError, NotFoundError
from models import Character, ChatMessage, ChatSession, UserProfile
from turn_config import TurnSettings, is_paid_plan

logger = logging.getLogger(__name__)


class HistoryItem(BaseModel):
    id: Optional[int] = None
    role: str
    content: str
    is_nsfw: bool = False
    order_index: int = 0
    created_at: Optional[datetime] = None


class CharacterSnapshot(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    persona: Optional[str] = None
    character_type: Optional[str] = None
    character_gender: Optional[str] = None
    nsfw_enabled: bool = False
    traits: Optional[dict] = None
    avatar_url: Optional[str] = None
    creator_id: Optional[str] = None


class SessionSnapshot(BaseModel):
    id: str
    user_id: str
    character_id: str
    title: Optional[str] = None
    mirror_session_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class TurnContext(BaseModel):
    session: SessionSnapshot
    character: CharacterSnapshot
    user_id: str
    user_display_name: Optional[str] = None
    plan: str = "free"
    adult_consented: bool = True
    user_turn_count: int = 0
    # Oldest -> newest, system messages excluded.
    history: list[HistoryItem] = []
    # Newest first.
    recent_assistant: list[str] = []
    latest_message: Optional[HistoryItem] = None
    previous_user_message: Optional[HistoryItem] = None

    @property
    def effective_nsfw(self) -> bool:
        return self.character.nsfw_enabled and self.adult_consented

    @property
    def paid(self) -> bool:
        return is_paid_plan(self.plan)

    @property
    def prior_assistant(self) -> Optional[str]:
        return self.recent_assistant[0] if self.recent_assistant else None


def _history_item(row: ChatMessage) -> HistoryItem:
    return HistoryItem(
        id=row.id,
        role=row.role,
        content=row.content or "",
        is_nsfw=bool(row.is_nsfw),
        order_index=row.order_index or 0,
        created_at=row.created_at,
    )


def get_owned_session(db: Session, session_id: str, user_id: str) -> ChatSession:
    """Missing and foreign sessions both surface as NotFound so ids cannot be enumerated."""
    if not (user_id or "").strip():
        raise AccessDeniedError("Authentication required")
    chat_session = db.get(ChatSession, session_id) if session_id else None
    if chat_session is None or chat_session.user_id != user_id:
        raise NotFoundError("Chat session not found or access denied")
    return chat_session


def load_turn_context(
    db: Session,
    session_id: str,
    user_id: str,
    settings: Optional[TurnSettings] = None,
) -> TurnContext:
    settings = settings or TurnSettings()
    chat_session = get_owned_session(db, session_id, user_id)

    character = db.get(Character, chat_session.character_id)
    if character is None:
        raise NotFoundError("Character not found")

    profile = db.get(UserProfile, user_id)

    conversation = (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == chat_session.id)
        .filter(ChatMessage.role != "system")
    )
    latest_rows = (
        conversation.order_by(ChatMessage.order_index.desc())
        .limit(max(settings.history_limit, 2))
        .all()
    )
    history_rows = list(reversed(latest_rows[: settings.history_limit]))
    assistant_rows = (
        conversation.filter(ChatMessage.role == "assistant")
        .order_by(ChatMessage.order_index.desc())
        .limit(settings.recent_assistant_window)
        .all()
    )
    user_turns = (
        db.query(func.count(ChatMessage.id))
        .filter(ChatMessage.session_id == chat_session.id)
        .filter(ChatMessage.role == "user")
        .scalar()
    ) or 0

    latest = _history_item(latest_rows[0]) if latest_rows else None
    previous_user = None
    for row in latest_rows:
        if row.role == "user":
            previous_user = _history_item(row)
            break

    logger.debug(
        "loaded turn context session=%s history=%d user_turns=%d",
        chat_session.id, len(history_rows), user_turns,
    )

    return TurnContext(
        session=SessionSnapshot(
            id=chat_session.id,
            user_id=chat_session.user_id,
            character_id=chat_session.character_id,
            title=chat_session.title,
            mirror_session_id=chat_session.mirror_session_id,
            updated_at=chat_session.updated_at,
        ),
        character=CharacterSnapshot(
            id=character.id,
            name=character.name,
            description=character.description,
            persona=character.persona,
            character_type=character.character_type,
            character_gender=character.character_gender,
            nsfw_enabled=bool(character.nsfw_enabled),
            traits=character.traits if isinstance(character.traits, dict) else None,
            avatar_url=character.avatar_url,
            creator_id=character.creator_id,
        ),
        user_id=user_id,
        user_display_name=(profile.display_name or profile.username) if profile else None,
        plan=(profile.plan if profile and profile.plan else "free"),
        adult_consented=bool(profile.allow_adult_content) if profile else True,
        user_turn_count=int(user_turns),
        history=[_history_item(r) for r in history_rows],
        recent_assistant=[r.content or "" for r in assistant_rows],
        latest_message=latest,
        previous_user_message=previous_user,
    )
