import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, default=new_uuid)
    username = Column(String(100), unique=True, index=True, nullable=True)
    display_name = Column(String(150), nullable=True)
    plan = Column(String(32), nullable=False, default="free")  # free | pro | paid | premium | plus
    allow_adult_content = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    characters = relationship("Character", back_populates="creator")
    sessions = relationship("ChatSession", back_populates="user")


class Character(Base):
    __tablename__ = "characters"

    id = Column(String(36), primary_key=True, default=new_uuid)
    creator_id = Column(String(36), ForeignKey("user_profiles.id"), nullable=True, index=True)
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    persona = Column(Text, nullable=True)
    character_type = Column(String(64), nullable=True)
    character_gender = Column(String(32), nullable=True)
    nsfw_enabled = Column(Boolean, nullable=False, default=False)
    traits = Column(JSON, nullable=True)  # {"flirtiness": 0.5, "kindness": 0.7, ...}
    avatar_url = Column(String(500), nullable=True)
    visibility = Column(String(16), nullable=False, default="public")  # public | private
    created_at = Column(DateTime(timezone=True), default=utcnow)

    creator = relationship("UserProfile", back_populates="characters")
    sessions = relationship("ChatSession", back_populates="character")


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("user_profiles.id"), nullable=False, index=True)
    character_id = Column(String(36), ForeignKey("characters.id"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    mirror_session_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("UserProfile", back_populates="sessions")
    character = relationship("Character", back_populates="sessions")
    messages = relationship("ChatMessage", back_populates="session", cascade="all, delete-orphan")


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "order_index", name="uq_chat_messages_session_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(36), ForeignKey("chat_sessions.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user | assistant | system
    content = Column(Text, nullable=False)
    order_index = Column(Integer, nullable=False)
    is_nsfw = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes.
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    session = relationship("ChatSession", back_populates="messages")
