from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from fakeredis import aioredis

from chat_service import (
    TurnService,
    create_session,
    delete_session,
    get_session,
    list_messages,
    list_user_sessions,
    update_session,
)
from conftest import FREE_REPLY, STORY_REPLY, StubCompletionClient, make_character, make_session, make_user, no_sleep
from errors import (
    AccessDeniedError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    UpstreamUnavailable,
)
from message_store import MessageStore
from models import ChatMessage, ChatSession, utcnow
from session_mirror import SessionMirror


def _rows(db, session_id: str) -> list[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.order_index)
        .all()
    )


def _events(path) -> list[str]:
    if not path.exists():
        return []
    return [json.loads(line)["event"] for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def _service(client, settings, **kwargs) -> TurnService:
    return TurnService(client, settings=settings, sleep=no_sleep, **kwargs)


def test_first_turn_persists_user_and_reply(db, settings, telemetry_log) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    client = StubCompletionClient([FREE_REPLY])

    result = asyncio.run(_service(client, settings).send_turn(db, chat.id, user.id, "hi there"))

    assert result.reply_text == FREE_REPLY
    assert result.is_nsfw is False
    assert result.replayed is False
    assert result.session.id == chat.id
    assert result.character.name == "Luna"
    rows = _rows(db, chat.id)
    assert [(r.role, r.content, r.order_index, r.is_nsfw) for r in rows] == [
        ("user", "hi there", 1, False),
        ("assistant", FREE_REPLY, 2, False),
    ]
    assert result.message_id == rows[1].id
    assert rows[1].metadata_json["attempts"] == 1
    assert "turn_accepted" in _events(telemetry_log)

    prompt = client.calls[0]["messages"]
    assert prompt[0]["role"] == "system" and prompt[0]["content"].startswith("You are Luna.")
    assert prompt[1]["content"].startswith("LENGTH POLICY")
    assert prompt[2]["content"].startswith("SAFETY")
    assert prompt[-1] == {"role": "user", "content": "hi there"}


def test_duplicate_submission_replays_the_same_reply(db, settings) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    client = StubCompletionClient([STORY_REPLY, FREE_REPLY])

    async def scenario():
        service = _service(client, settings, redis=aioredis.FakeRedis(decode_responses=True))
        first = await service.send_turn(db, chat.id, user.id, "tell me a story")
        second = await service.send_turn(db, chat.id, user.id, "tell me a story")
        return first, second

    first, second = asyncio.run(scenario())

    assert second.replayed
    assert second.reply_text == first.reply_text == STORY_REPLY
    assert second.message_id == first.message_id
    assert len(client.calls) == 1
    assert len(_rows(db, chat.id)) == 2


def test_recent_identical_resend_is_replayed_without_cache(db, settings, telemetry_log) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    client = StubCompletionClient([FREE_REPLY, STORY_REPLY])
    service = _service(client, settings)

    async def scenario():
        first = await service.send_turn(db, chat.id, user.id, "hi there")
        second = await service.send_turn(db, chat.id, user.id, "  hi   there ")
        return first, second

    first, second = asyncio.run(scenario())
    assert second.replayed
    assert second.reply_text == first.reply_text
    assert len(client.calls) == 1
    assert len(_rows(db, chat.id)) == 2
    assert "turn_replayed" in _events(telemetry_log)


def test_identical_resend_after_the_window_generates_again(db, settings) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    client = StubCompletionClient([FREE_REPLY, STORY_REPLY])
    service = _service(client, settings, clock=lambda: utcnow() + timedelta(seconds=settings.replay_window_sec + 60))

    async def scenario():
        await service.send_turn(db, chat.id, user.id, "hi there")
        return await service.send_turn(db, chat.id, user.id, "hi there")

    second = asyncio.run(scenario())
    assert not second.replayed
    assert second.reply_text == STORY_REPLY
    assert [r.order_index for r in _rows(db, chat.id)] == [1, 2, 3, 4]


def test_reply_repeating_the_last_answer_is_regenerated(db, settings) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    store = MessageStore()
    store.persist_turn(db, chat.id, "hello", FREE_REPLY, (1, 2), is_nsfw=False)
    client = StubCompletionClient([FREE_REPLY, STORY_REPLY])

    result = asyncio.run(_service(client, settings).send_turn(db, chat.id, user.id, "how are you?"))

    assert result.reply_text == STORY_REPLY
    assert [r.order_index for r in _rows(db, chat.id)] == [1, 2, 3, 4]
    history = [m["content"] for m in client.calls[0]["messages"]]
    assert "hello" in history and FREE_REPLY in history


def test_nsfw_paid_turn_stays_on_topic(db, settings) -> None:
    user = make_user(db, plan="pro")
    chat = make_session(db, user, make_character(db, nsfw_enabled=True))
    on_topic = "My favorite movie is Amelie. It always makes me smile."
    client = StubCompletionClient(["Hmm.", on_topic])

    result = asyncio.run(_service(client, settings).send_turn(db, chat.id, user.id, "what is your favorite movie?"))

    assert result.reply_text == on_topic
    assert result.is_nsfw is True
    assert all(r.is_nsfw for r in _rows(db, chat.id))
    guards = [m["content"] for m in client.calls[0]["messages"] if m["role"] == "system"][1:]
    assert guards[0].startswith("LENGTH POLICY: Paid tier.")
    assert guards[1].startswith("DIRECT ANSWER")
    assert guards[2].startswith("PACING")


def test_missing_adult_consent_runs_as_sfw(db, settings) -> None:
    user = make_user(db, allow_adult_content=False)
    chat = make_session(db, user, make_character(db, nsfw_enabled=True))
    client = StubCompletionClient([FREE_REPLY])

    result = asyncio.run(_service(client, settings).send_turn(db, chat.id, user.id, "hi there"))

    assert result.is_nsfw is False
    assert any(m["content"].startswith("SAFETY") for m in client.calls[0]["messages"])


def test_turn_is_mirrored_into_owner_session(db, session_factory, settings) -> None:
    owner = make_user(db, username="creator")
    visitor = make_user(db, username="visitor")
    character = make_character(db, creator=owner)
    chat = create_session(db, visitor.id, character.id)
    mirror_id = chat.mirror_session_id
    assert mirror_id

    client = StubCompletionClient([FREE_REPLY])

    async def scenario():
        mirror = SessionMirror(session_factory)
        await mirror.start()
        service = _service(client, settings, mirror=mirror)
        result = await service.send_turn(db, chat.id, visitor.id, "hi there")
        await asyncio.wait_for(mirror.drain(), timeout=5)
        await mirror.stop()
        return result

    result = asyncio.run(scenario())

    source_rows = _rows(db, chat.id)
    assert [(r.role, r.order_index) for r in source_rows] == [("system", 1), ("user", 2), ("assistant", 3)]
    mirror_rows = _rows(db, mirror_id)
    assert [(r.role, r.order_index) for r in mirror_rows] == [("system", 1), ("user", 2), ("assistant", 3)]
    assert mirror_rows[0].content == f"MIRROR_LINK:{chat.id}"
    assert mirror_rows[2].content == result.reply_text
    assert mirror_rows[2].metadata_json["mirror"] is True
    assert mirror_rows[2].metadata_json["mirrored_from"] == chat.id
    assert mirror_rows[2].metadata_json["source_message_id"] == result.message_id


def test_foreign_or_missing_session_is_not_found(db, settings) -> None:
    owner = make_user(db)
    stranger = make_user(db)
    chat = make_session(db, owner, make_character(db))
    service = _service(StubCompletionClient([]), settings)

    with pytest.raises(NotFoundError):
        asyncio.run(service.send_turn(db, chat.id, stranger.id, "hi"))
    with pytest.raises(NotFoundError):
        asyncio.run(service.send_turn(db, "missing-session", owner.id, "hi"))
    with pytest.raises(AccessDeniedError):
        asyncio.run(service.send_turn(db, chat.id, "", "hi"))
    assert _rows(db, chat.id) == []


def test_blank_message_is_rejected(db, settings) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    with pytest.raises(InvalidRequestError):
        asyncio.run(_service(StubCompletionClient([]), settings).send_turn(db, chat.id, user.id, "   "))


def test_upstream_failure_persists_nothing_and_releases_claim(db, settings) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    client = StubCompletionClient([UpstreamUnavailable("down")] * 4)

    async def scenario():
        service = _service(client, settings, redis=aioredis.FakeRedis(decode_responses=True))
        with pytest.raises(UpstreamUnavailable):
            await service.send_turn(db, chat.id, user.id, "hi there")
        client.replies = [FREE_REPLY]
        return await service.send_turn(db, chat.id, user.id, "hi there")

    retry = asyncio.run(scenario())
    assert not retry.replayed
    assert retry.reply_text == FREE_REPLY
    assert [r.order_index for r in _rows(db, chat.id)] == [1, 2]


def test_persistence_failure_is_reported(db, settings, telemetry_log, monkeypatch) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    service = _service(StubCompletionClient([FREE_REPLY]), settings)

    def broken_persist(*args, **kwargs):
        raise PersistenceError("Failed to save chat messages", failures=[{"action": "save user message"}])

    monkeypatch.setattr(service.store, "persist_turn", broken_persist)
    with pytest.raises(PersistenceError):
        asyncio.run(service.send_turn(db, chat.id, user.id, "hi there"))
    assert "persist_failed" in _events(telemetry_log)


def test_create_session_defaults_and_mirror_rules(db) -> None:
    owner = make_user(db)
    visitor = make_user(db)
    character = make_character(db, creator=owner, name="Nova")

    plain = create_session(db, visitor.id, character.id, mirror_to_owner=False)
    assert plain.title == "Chat with Nova"
    assert plain.mirror_session_id is None

    own = create_session(db, owner.id, character.id, title="  Notes  ")
    assert own.title == "Notes"
    assert own.mirror_session_id is None

    mirrored = create_session(db, visitor.id, character.id)
    assert mirrored.mirror_session_id
    link = _rows(db, mirrored.id)
    assert [(r.role, r.content) for r in link] == [("system", f"MIRROR_LINK:{mirrored.mirror_session_id}")]


def test_create_session_respects_private_characters(db) -> None:
    owner = make_user(db)
    visitor = make_user(db)
    private = make_character(db, creator=owner, visibility="private")

    with pytest.raises(AccessDeniedError):
        create_session(db, visitor.id, private.id)
    assert create_session(db, owner.id, private.id).user_id == owner.id
    with pytest.raises(NotFoundError):
        create_session(db, visitor.id, "no-such-character")


def test_list_messages_checks_ownership(db) -> None:
    owner = make_user(db)
    stranger = make_user(db)
    chat = make_session(db, owner, make_character(db))
    MessageStore().persist_turn(db, chat.id, "hi", "Hello!", (1, 2), is_nsfw=False)

    page = list_messages(db, chat.id, owner.id)
    assert [m["role"] for m in page.items] == ["assistant", "user"]
    with pytest.raises(NotFoundError):
        list_messages(db, chat.id, stranger.id)


def test_unexpected_failure_releases_the_claim(db, settings) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))
    MessageStore().persist_turn(db, chat.id, "hello", STORY_REPLY, (1, 2), is_nsfw=False)
    client = StubCompletionClient([FREE_REPLY])

    async def scenario():
        service = _service(client, settings, redis=aioredis.FakeRedis(decode_responses=True))
        real = service.store.next_order_indices
        calls = []

        def flaky(db_, session_id):
            calls.append(session_id)
            if len(calls) == 1:
                raise RuntimeError("connection reset")
            return real(db_, session_id)

        service.store.next_order_indices = flaky
        with pytest.raises(RuntimeError):
            await service.send_turn(db, chat.id, user.id, "hi there")
        return await service.send_turn(db, chat.id, user.id, "hi there")

    retry = asyncio.run(scenario())
    assert not retry.replayed
    assert retry.reply_text == FREE_REPLY
    assert [r.order_index for r in _rows(db, chat.id)] == [1, 2, 3, 4]


def test_user_sessions_are_listed_most_recent_first(db) -> None:
    user = make_user(db)
    older = make_session(db, user, make_character(db), title="Older")
    newer = make_session(db, user, make_character(db), title="Newer")
    older.updated_at = utcnow() - timedelta(hours=1)
    db.commit()
    make_session(db, make_user(db), make_character(db))

    assert [s.id for s in list_user_sessions(db, user.id)] == [newer.id, older.id]
    assert [s.id for s in list_user_sessions(db, user.id, limit=1)] == [newer.id]
    with pytest.raises(AccessDeniedError):
        list_user_sessions(db, "")


def test_get_and_rename_session(db) -> None:
    user = make_user(db)
    chat = make_session(db, user, make_character(db))

    assert get_session(db, chat.id, user.id).id == chat.id
    with pytest.raises(NotFoundError):
        get_session(db, chat.id, make_user(db).id)

    renamed = update_session(db, chat.id, user.id, "  Rainy   day ")
    assert renamed.title == "Rainy day"
    with pytest.raises(InvalidRequestError):
        update_session(db, chat.id, user.id, "   ")


def test_delete_session_removes_messages_and_unlinks_mirror(db) -> None:
    owner = make_user(db)
    visitor = make_user(db)
    chat = create_session(db, visitor.id, make_character(db, creator=owner).id)
    mirror_id = chat.mirror_session_id
    MessageStore().persist_turn(db, chat.id, "hi", "Hello!", (2, 3), is_nsfw=False)

    with pytest.raises(NotFoundError):
        delete_session(db, chat.id, owner.id)
    delete_session(db, chat.id, visitor.id)

    assert db.get(ChatSession, chat.id) is None
    assert _rows(db, chat.id) == []
    mirror = db.get(ChatSession, mirror_id)
    assert mirror is not None
    assert mirror.mirror_session_id is None
    assert len(_rows(db, mirror_id)) == 1
