import os

# Must be set before database.py is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TURN_TELEMETRY_ENABLED", "0")

from pathlib import Path
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from errors import UpstreamUnavailable
from models import Character, ChatSession, UserProfile
from turn_config import TurnSettings

# 3 sentences, 48 words, one paragraph.
FREE_REPLY = (
    "Hey there, it is really lovely to hear from you today. I was just thinking about how "
    "quiet the afternoon has been and hoping someone would drop by to chat. Tell me what has "
    "been on your mind lately, because I would love to hear every little detail."
)

# 3 sentences, 50 words, one paragraph.
STORY_REPLY = (
    "Oh, a story sounds like a wonderful idea for a slow evening like this one. Once upon a "
    "time a curious fox wandered into a library and fell asleep between two dusty atlases. "
    "When it woke up, the whole world seemed a little larger and far more exciting than before."
)


class StubCompletionClient:
    """Scripted stand-in for CompletionClient; exceptions in the script are raised."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, messages, params=None):
        self.calls.append({"messages": messages, "params": params})
        if not self.replies:
            raise UpstreamUnavailable("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def telemetry_log(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "turn_telemetry.log"
    monkeypatch.setenv("TURN_TELEMETRY_LOG", str(path))
    monkeypatch.setenv("TURN_TELEMETRY_ENABLED", "1")
    return path


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings() -> TurnSettings:
    return TurnSettings(retry_backoff_base_sec=0.0)


def make_user(db, plan: str = "free", allow_adult_content: bool = True, username: Optional[str] = None) -> UserProfile:
    user = UserProfile(plan=plan, allow_adult_content=allow_adult_content, username=username, display_name=username)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_character(
    db,
    creator: Optional[UserProfile] = None,
    nsfw_enabled: bool = False,
    visibility: str = "public",
    name: str = "Luna",
    traits: Optional[dict] = None,
) -> Character:
    character = Character(
        creator_id=creator.id if creator else None,
        name=name,
        description="A warm, witty librarian who loves late-night conversations.",
        persona="Curious, gentle, teasing in a kind way.",
        character_type="companion",
        character_gender="female",
        nsfw_enabled=nsfw_enabled,
        traits=traits if traits is not None else {"flirtiness": 0.5, "kindness": 0.7},
        avatar_url="https://cdn.example.com/luna.png",
        visibility=visibility,
    )
    db.add(character)
    db.commit()
    db.refresh(character)
    return character


def make_session(db, user: UserProfile, character: Character, title: str = "Evening chat") -> ChatSession:
    chat_session = ChatSession(user_id=user.id, character_id=character.id, title=title)
    db.add(chat_session)
    db.commit()
    db.refresh(chat_session)
    return chat_session
