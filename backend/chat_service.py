"""
Chat turn orchestration: context -> idempotency -> prompt -> generation -> persistence -> mirror.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from completion_service import CompletionClient
from context_loader import TurnContext, get_owned_session, load_turn_context
from errors import AccessDeniedError, InvalidRequestError, NotFoundError, PersistenceError
from guard_rails import build_guard_directives, derive_guard_signals
from idempotency import Claim, IdempotencyGuard
from message_store import MessagePage, MessageStore, PersistedTurn, classify_db_error
from models import Character, ChatSession, utcnow
from prompt_composer import compose_prompt
from response_validator import build_validation_context
from retry_controller import Generation, RetryController, profile_for_turn
from session_mirror import MIRROR_LINK_PREFIX, MirrorEvent, SessionMirror
from telemetry import append_turn_telemetry
from text_utils import normalize_whitespace
from turn_config import TurnSettings
from worker_pool import UserWorkerPool

logger = logging.getLogger(__name__)


class SessionSummary(BaseModel):
    id: str
    title: Optional[str] = None
    updated_at: Optional[datetime] = None


class CharacterSummary(BaseModel):
    id: str
    name: str
    avatar_url: Optional[str] = None


class TurnResult(BaseModel):
    reply_text: str
    is_nsfw: bool
    session: SessionSummary
    character: CharacterSummary
    replayed: bool = False
    message_id: Optional[int] = None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TurnService:
    """Runs one conversational turn end to end. One instance serves the whole app."""

    def __init__(
        self,
        completion_client: CompletionClient,
        redis: Optional[Redis] = None,
        settings: Optional[TurnSettings] = None,
        worker_pool: Optional[UserWorkerPool] = None,
        mirror: Optional[SessionMirror] = None,
        store: Optional[MessageStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or TurnSettings()
        self.store = store or MessageStore(self.settings.persist_max_chars)
        self.idempotency = IdempotencyGuard(redis, self.settings.idempotency_ttl_sec)
        self.retry = RetryController(completion_client, self.settings, sleep=sleep)
        self.pool = worker_pool or UserWorkerPool.from_settings(self.settings)
        self.mirror = mirror
        self._clock = clock

    async def send_turn(self, db: Session, session_id: str, user_id: str, raw_text: str) -> TurnResult:
        """Produce, persist and mirror one reply.

        The work runs shielded: a caller that goes away mid-turn does not abort the
        completion call or leave a half-written turn behind.
        """
        if not normalize_whitespace(raw_text):
            raise InvalidRequestError("Message is required")
        task = asyncio.ensure_future(self._run_turn(db, session_id, user_id, raw_text))
        return await asyncio.shield(task)

    async def _run_turn(self, db: Session, session_id: str, user_id: str, raw_text: str) -> TurnResult:
        context = load_turn_context(db, session_id, user_id, self.settings)

        claim = await self.idempotency.claim(session_id, raw_text)
        if claim.duplicate:
            replay = await self._replay_duplicate(db, context, claim)
            if replay is not None:
                return replay
            logger.info("duplicate key without a delivered reply, generating session=%s", session_id)
        else:
            replay = self._replay_recent(db, context, raw_text)
            if replay is not None:
                if replay.message_id is not None:
                    await self.idempotency.remember_reply(claim, replay.message_id)
                return replay

        try:
            indices = self.store.next_order_indices(db, session_id)
            generation = await self.pool.run(user_id, lambda: self._generate(context, raw_text))
            persisted = self._persist(db, context, raw_text, generation, indices)
        except BaseException:
            await self.idempotency.release(claim)
            raise

        if persisted.assistant_message_id is not None:
            await self.idempotency.remember_reply(claim, persisted.assistant_message_id)
        self._publish_mirror(context, raw_text, generation, persisted)

        append_turn_telemetry(
            "turn_accepted",
            {
                "session_id": session_id,
                "plan": context.plan,
                "is_nsfw": context.effective_nsfw,
                "attempts": generation.attempts,
                "emergency": generation.emergency,
                "format_reprompts": generation.format_reprompts,
                "coerced": generation.coerced,
                "degraded": generation.degraded,
                "rejections": generation.rejections,
                "user_index": persisted.user_index,
                "assistant_index": persisted.assistant_index,
            },
        )
        return self._result(db, context, generation.text, message_id=persisted.assistant_message_id)

    async def _generate(self, context: TurnContext, raw_text: str) -> Generation:
        signals = derive_guard_signals(
            raw_text,
            nsfw_enabled=context.character.nsfw_enabled,
            adult_consented=context.adult_consented,
            user_turn_count=context.user_turn_count,
            plan=context.plan,
            settings=self.settings,
        )
        guards = build_guard_directives(signals, self.settings)
        bundle = compose_prompt(context, raw_text, guards, self.settings)
        vctx = build_validation_context(
            guards,
            prior_assistant=context.prior_assistant,
            recent_assistant=context.recent_assistant,
            nsfw_enabled=context.effective_nsfw,
            user_turn_count=context.user_turn_count,
            settings=self.settings,
        )
        profile = profile_for_turn(signals, self.settings)
        return await self.retry.generate(bundle, vctx, profile, session_id=context.session.id)

    def _persist(
        self,
        db: Session,
        context: TurnContext,
        raw_text: str,
        generation: Generation,
        indices: tuple[int, int],
    ) -> PersistedTurn:
        try:
            return self.store.persist_turn(
                db,
                context.session.id,
                raw_text,
                generation.text,
                indices,
                context.effective_nsfw,
                assistant_metadata={
                    "attempts": generation.attempts,
                    "emergency": generation.emergency,
                    "format_reprompts": generation.format_reprompts,
                },
            )
        except PersistenceError as exc:
            append_turn_telemetry(
                "persist_failed",
                {"session_id": context.session.id, "error": type(exc).__name__, "failures": exc.failures},
            )
            raise

    def _publish_mirror(
        self,
        context: TurnContext,
        raw_text: str,
        generation: Generation,
        persisted: PersistedTurn,
    ) -> None:
        mirror_id = context.session.mirror_session_id
        if not mirror_id:
            return
        if self.mirror is None:
            logger.debug("no mirror worker configured, skipping mirror=%s", mirror_id)
            return
        try:
            self.mirror.publish(
                MirrorEvent(
                    source_session_id=context.session.id,
                    mirror_session_id=mirror_id,
                    user_text=raw_text,
                    assistant_text=generation.text,
                    is_nsfw=context.effective_nsfw,
                    source_user_message_id=persisted.user_message_id,
                    source_assistant_message_id=persisted.assistant_message_id,
                )
            )
        except Exception:
            logger.exception("mirror publish failed session=%s mirror=%s", context.session.id, mirror_id)

    async def _replay_duplicate(self, db: Session, context: TurnContext, claim: Claim) -> Optional[TurnResult]:
        message_id = await self.idempotency.recall_reply(claim)
        row = self.store.get_message(db, context.session.id, message_id) if message_id is not None else None
        if row is None:
            row = self.store.latest_message(db, context.session.id)
            if row is None or row.role != "assistant":
                return None
        logger.info("replaying reply for duplicate submission session=%s message=%s", context.session.id, row.id)
        append_turn_telemetry("turn_replayed", {"session_id": context.session.id, "source": "idempotency", "message_id": row.id})
        return self._result(db, context, row.content, replayed=True, message_id=row.id, is_nsfw=bool(row.is_nsfw))

    def _replay_recent(self, db: Session, context: TurnContext, raw_text: str) -> Optional[TurnResult]:
        """Same text as the previous user turn, already answered moments ago."""
        latest = context.latest_message
        previous_user = context.previous_user_message
        if latest is None or previous_user is None or latest.role != "assistant":
            return None
        if previous_user.order_index > latest.order_index:
            return None
        if normalize_whitespace(previous_user.content) != normalize_whitespace(raw_text):
            return None
        created = _as_utc(latest.created_at)
        if created is None:
            return None
        age = (self._clock() - created).total_seconds()
        if age < 0 or age > self.settings.replay_window_sec:
            return None
        logger.info("replaying recent reply session=%s age=%.1fs", context.session.id, age)
        append_turn_telemetry("turn_replayed", {"session_id": context.session.id, "source": "recent", "message_id": latest.id})
        return self._result(db, context, latest.content, replayed=True, message_id=latest.id, is_nsfw=latest.is_nsfw)

    def _result(
        self,
        db: Session,
        context: TurnContext,
        reply_text: str,
        replayed: bool = False,
        message_id: Optional[int] = None,
        is_nsfw: Optional[bool] = None,
    ) -> TurnResult:
        row = db.get(ChatSession, context.session.id)
        return TurnResult(
            reply_text=reply_text,
            is_nsfw=context.effective_nsfw if is_nsfw is None else is_nsfw,
            session=SessionSummary(
                id=context.session.id,
                title=row.title if row else context.session.title,
                updated_at=row.updated_at if row else context.session.updated_at,
            ),
            character=CharacterSummary(
                id=context.character.id,
                name=context.character.name,
                avatar_url=context.character.avatar_url,
            ),
            replayed=replayed,
            message_id=message_id,
        )


def create_session(
    db: Session,
    user_id: str,
    character_id: str,
    title: Optional[str] = None,
    mirror_to_owner: bool = True,
    store: Optional[MessageStore] = None,
) -> ChatSession:
    """Open a session; pair it with a mirror session for the character's creator."""
    if not (user_id or "").strip():
        raise AccessDeniedError("Authentication required")
    character = db.get(Character, character_id) if character_id else None
    if character is None:
        raise NotFoundError("Character not found")
    if (character.visibility or "public") == "private" and character.creator_id != user_id:
        raise AccessDeniedError("This character is private")

    store = store or MessageStore()
    session_title = normalize_whitespace(title or "")[:255] or f"Chat with {character.name}"
    chat_session = ChatSession(user_id=user_id, character_id=character.id, title=session_title)

    owner_id = character.creator_id
    mirror_session = None
    try:
        db.add(chat_session)
        db.flush()
        if mirror_to_owner and owner_id and owner_id != user_id:
            mirror_session = ChatSession(
                user_id=owner_id,
                character_id=character.id,
                title=f"Mirror: {session_title}"[:255],
                mirror_session_id=chat_session.id,
            )
            db.add(mirror_session)
            db.flush()
            chat_session.mirror_session_id = mirror_session.id
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise classify_db_error(exc, "create chat session") from exc

    if mirror_session is not None:
        store.append_message(db, chat_session.id, "system", f"{MIRROR_LINK_PREFIX}{mirror_session.id}")
        store.append_message(db, mirror_session.id, "system", f"{MIRROR_LINK_PREFIX}{chat_session.id}")
        logger.info("mirror link created session=%s mirror=%s", chat_session.id, mirror_session.id)

    db.refresh(chat_session)
    return chat_session


def list_messages(
    db: Session,
    session_id: str,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    store: Optional[MessageStore] = None,
) -> MessagePage:
    get_owned_session(db, session_id, user_id)
    return (store or MessageStore()).list_messages(db, session_id, limit=limit, offset=offset)


def list_user_sessions(db: Session, user_id: str, limit: int = 50) -> list[ChatSession]:
    """Most recently active first."""
    if not (user_id or "").strip():
        raise AccessDeniedError("Authentication required")
    limit = max(1, min(100, int(limit or 50)))
    try:
        return (
            db.query(ChatSession)
            .filter(ChatSession.user_id == user_id)
            .order_by(ChatSession.updated_at.desc(), ChatSession.created_at.desc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as exc:
        raise classify_db_error(exc, "list chat sessions") from exc


def get_session(db: Session, session_id: str, user_id: str) -> ChatSession:
    return get_owned_session(db, session_id, user_id)


def update_session(db: Session, session_id: str, user_id: str, title: Optional[str]) -> ChatSession:
    chat_session = get_owned_session(db, session_id, user_id)
    new_title = normalize_whitespace(title or "")[:255]
    if not new_title:
        raise InvalidRequestError("Title is required")
    chat_session.title = new_title
    chat_session.updated_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise classify_db_error(exc, "update chat session") from exc
    db.refresh(chat_session)
    return chat_session


def delete_session(db: Session, session_id: str, user_id: str) -> None:
    """Remove the session and its messages. A mirror partner keeps its own history but loses the link."""
    chat_session = get_owned_session(db, session_id, user_id)
    try:
        db.query(ChatSession).filter(ChatSession.mirror_session_id == chat_session.id).update(
            {ChatSession.mirror_session_id: None}, synchronize_session=False
        )
        db.delete(chat_session)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise classify_db_error(exc, "delete chat session") from exc
    logger.info("chat session deleted session=%s user=%s", session_id, user_id)


def session_to_dict(chat_session: ChatSession, include_character: bool = False) -> dict:
    data = {
        "id": chat_session.id,
        "user_id": chat_session.user_id,
        "character_id": chat_session.character_id,
        "title": chat_session.title,
        "mirror_session_id": chat_session.mirror_session_id,
        "created_at": chat_session.created_at,
        "updated_at": chat_session.updated_at,
    }
    if include_character and chat_session.character is not None:
        data["character"] = {
            "id": chat_session.character.id,
            "name": chat_session.character.name,
            "avatar_url": chat_session.character.avatar_url,
        }
    return data
