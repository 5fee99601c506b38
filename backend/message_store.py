"""Ordered message persistence for chat sessions.

Order indices are assigned here and nowhere else. Assignment reads the current maximum
and writes max+1 / max+2; the unique (session_id, order_index) constraint turns a lost
race into an OrderCollisionError, which is retried once against a fresh maximum.
"""

import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import OrderCollisionError, PersistenceError, SchemaMismatchError
from models import ChatMessage, ChatSession, utcnow

logger = logging.getLogger(__name__)

_SCHEMA_MARKERS = (
    "no such column",
    "no such table",
    "has no column",
    "undefined column",
    "undefined table",
    "does not exist",
    "unknown column",
)


class PersistedTurn(BaseModel):
    user_message_id: Optional[int] = None
    assistant_message_id: Optional[int] = None
    user_index: int
    assistant_index: int


class MessagePage(BaseModel):
    items: list[dict]
    total: int
    limit: int
    offset: int
    has_more: bool


def classify_db_error(exc: Exception, action: str) -> PersistenceError:
    detail = str(getattr(exc, "orig", None) or exc)
    low = detail.lower()
    if isinstance(exc, (OperationalError, ProgrammingError)) and any(m in low for m in _SCHEMA_MARKERS):
        return SchemaMismatchError(failures=[{"action": action, "detail": detail[:300]}])
    if isinstance(exc, IntegrityError) and ("unique" in low or "duplicate" in low):
        return OrderCollisionError(f"Order index already taken while trying to {action}", failures=[{"action": action, "detail": detail[:300]}])
    return PersistenceError(f"Failed to {action}", failures=[{"action": action, "detail": detail[:300]}])


def message_to_dict(row: ChatMessage) -> dict:
    return {
        "id": row.id,
        "session_id": row.session_id,
        "role": row.role,
        "content": row.content,
        "order_index": row.order_index,
        "is_nsfw": bool(row.is_nsfw),
        "metadata": row.metadata_json or {},
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class MessageStore:
    def __init__(self, max_chars: int = 4000):
        self.max_chars = max_chars

    def max_order_index(self, db: Session, session_id: str) -> int:
        try:
            value = (
                db.query(func.max(ChatMessage.order_index))
                .filter(ChatMessage.session_id == session_id)
                .scalar()
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise classify_db_error(exc, "read max order index") from exc
        return int(value or 0)

    def next_order_indices(self, db: Session, session_id: str) -> tuple[int, int]:
        """(user, assistant) slots for the next turn. Advisory only; nothing is reserved."""
        current = self.max_order_index(db, session_id)
        return current + 1, current + 2

    def _insert(
        self,
        db: Session,
        session_id: str,
        role: str,
        content: str,
        order_index: int,
        is_nsfw: bool,
        metadata: Optional[dict],
    ) -> ChatMessage:
        row = ChatMessage(
            session_id=session_id,
            role=role,
            content=(content or "")[: self.max_chars],
            order_index=order_index,
            is_nsfw=bool(is_nsfw),
            metadata_json=metadata or None,
        )
        try:
            db.add(row)
            db.commit()
            db.refresh(row)
        except SQLAlchemyError as exc:
            db.rollback()
            raise classify_db_error(exc, f"save {role} message") from exc
        return row

    def append_message(
        self,
        db: Session,
        session_id: str,
        role: str,
        content: str,
        order_index: Optional[int] = None,
        is_nsfw: bool = False,
        metadata: Optional[dict] = None,
    ) -> ChatMessage:
        """Insert one message; without an explicit index it goes after the current maximum."""
        explicit = order_index is not None
        index = order_index if explicit else self.max_order_index(db, session_id) + 1
        try:
            return self._insert(db, session_id, role, content, index, is_nsfw, metadata)
        except OrderCollisionError:
            fresh = self.max_order_index(db, session_id) + 1
            logger.warning(
                "order index collision session=%s role=%s index=%d retry_index=%d",
                session_id, role, index, fresh,
            )
            return self._insert(db, session_id, role, content, fresh, is_nsfw, metadata)

    def touch_session(self, db: Session, session_id: str) -> None:
        try:
            db.query(ChatSession).filter(ChatSession.id == session_id).update(
                {ChatSession.updated_at: utcnow()}, synchronize_session=False
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise classify_db_error(exc, "update session timestamp") from exc

    def persist_turn(
        self,
        db: Session,
        session_id: str,
        user_text: str,
        assistant_text: str,
        indices: tuple[int, int],
        is_nsfw: bool,
        user_metadata: Optional[dict] = None,
        assistant_metadata: Optional[dict] = None,
    ) -> PersistedTurn:
        """Write both sides of a turn and touch the session.

        The writes are independent: a failed user insert does not stop the assistant
        insert. Any failure is raised afterwards as one PersistenceError carrying every
        individual failure; schema problems win as SchemaMismatchError.
        """
        user_index, assistant_index = indices
        failures: list[PersistenceError] = []
        user_row = None
        assistant_row = None

        try:
            user_row = self.append_message(db, session_id, "user", user_text, user_index, is_nsfw, user_metadata)
            user_index = user_row.order_index
            assistant_index = max(assistant_index, user_index + 1)
        except PersistenceError as exc:
            logger.error("user message persist failed session=%s error=%s", session_id, exc.message)
            failures.append(exc)

        try:
            assistant_row = self.append_message(
                db, session_id, "assistant", assistant_text, assistant_index, is_nsfw, assistant_metadata
            )
            assistant_index = assistant_row.order_index
        except PersistenceError as exc:
            logger.error("assistant message persist failed session=%s error=%s", session_id, exc.message)
            failures.append(exc)

        try:
            self.touch_session(db, session_id)
        except PersistenceError as exc:
            logger.error("session touch failed session=%s error=%s", session_id, exc.message)
            failures.append(exc)

        if failures:
            details = [f for exc in failures for f in exc.failures] or [{"detail": exc.message} for exc in failures]
            if any(isinstance(exc, SchemaMismatchError) for exc in failures):
                raise SchemaMismatchError(failures=details)
            raise PersistenceError("Failed to save chat messages", failures=details)

        return PersistedTurn(
            user_message_id=user_row.id if user_row else None,
            assistant_message_id=assistant_row.id if assistant_row else None,
            user_index=user_index,
            assistant_index=assistant_index,
        )

    def get_message(self, db: Session, session_id: str, message_id: int) -> Optional[ChatMessage]:
        row = db.get(ChatMessage, message_id)
        if row is None or row.session_id != session_id:
            return None
        return row

    def latest_message(self, db: Session, session_id: str, role: Optional[str] = None) -> Optional[ChatMessage]:
        query = db.query(ChatMessage).filter(ChatMessage.session_id == session_id)
        if role:
            query = query.filter(ChatMessage.role == role)
        else:
            query = query.filter(ChatMessage.role != "system")
        return query.order_by(ChatMessage.order_index.desc()).first()

    def list_messages(self, db: Session, session_id: str, limit: int = 50, offset: int = 0) -> MessagePage:
        limit = max(1, min(100, int(limit or 50)))
        offset = max(0, int(offset or 0))
        query = db.query(ChatMessage).filter(ChatMessage.session_id == session_id)
        total = query.count()
        rows = query.order_by(ChatMessage.order_index.desc()).offset(offset).limit(limit).all()
        return MessagePage(
            items=[message_to_dict(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(rows) < total,
        )
