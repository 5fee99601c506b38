"""Post-commit fan-out of a turn into the linked mirror session.

The turn pipeline only calls ``publish`` after its own writes have committed. A
background worker applies events with its own database session; failures there are
logged and recorded in telemetry and never reach the caller.
"""

import asyncio
import logging
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from message_store import MessageStore
from models import ChatSession
from telemetry import append_turn_telemetry

logger = logging.getLogger(__name__)

MIRROR_LINK_PREFIX = "MIRROR_LINK:"


class MirrorEvent(BaseModel):
    source_session_id: str
    mirror_session_id: str
    user_text: str
    assistant_text: str
    is_nsfw: bool = False
    source_user_message_id: Optional[int] = None
    source_assistant_message_id: Optional[int] = None


def mirror_metadata(event: MirrorEvent, source_message_id: Optional[int]) -> dict:
    return {
        "mirror": True,
        "mirrored_from": event.source_session_id,
        "source_message_id": source_message_id,
    }


class SessionMirror:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: Optional[MessageStore] = None,
        max_queue: int = 1000,
    ):
        self.session_factory = session_factory
        self.store = store or MessageStore()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def publish(self, event: MirrorEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "mirror queue full, dropping event source=%s mirror=%s",
                event.source_session_id, event.mirror_session_id,
            )
            append_turn_telemetry("mirror_failed", {"reason": "queue_full", **event.model_dump(include={"source_session_id", "mirror_session_id"})})
            return False
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="session-mirror")
        logger.info("session mirror worker started")

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        if drain_timeout and self._task and not self._queue.empty():
            try:
                await asyncio.wait_for(self.drain(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("mirror queue not drained on shutdown pending=%d", self._queue.qsize())
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session mirror worker stopped")

    async def drain(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                self.apply(event)
            except Exception as exc:
                logger.exception(
                    "mirror write failed source=%s mirror=%s", event.source_session_id, event.mirror_session_id
                )
                append_turn_telemetry(
                    "mirror_failed",
                    {
                        "source_session_id": event.source_session_id,
                        "mirror_session_id": event.mirror_session_id,
                        "error": str(exc)[:300],
                    },
                )
            finally:
                self._queue.task_done()

    def apply(self, event: MirrorEvent) -> bool:
        """Copy the turn into the mirror session. Returns False if that session is gone."""
        db = self.session_factory()
        try:
            if db.get(ChatSession, event.mirror_session_id) is None:
                logger.warning("mirror session missing mirror=%s", event.mirror_session_id)
                return False
            indices = self.store.next_order_indices(db, event.mirror_session_id)
            persisted = self.store.persist_turn(
                db,
                event.mirror_session_id,
                event.user_text,
                event.assistant_text,
                indices,
                event.is_nsfw,
                user_metadata=mirror_metadata(event, event.source_user_message_id),
                assistant_metadata=mirror_metadata(event, event.source_assistant_message_id),
            )
            append_turn_telemetry(
                "mirror_applied",
                {
                    "source_session_id": event.source_session_id,
                    "mirror_session_id": event.mirror_session_id,
                    "user_index": persisted.user_index,
                    "assistant_index": persisted.assistant_index,
                },
            )
            return True
        finally:
            db.close()
