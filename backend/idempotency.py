"""
Short-window deduplication of identical rapid resubmissions.

A claim is ``SET key "pending" NX EX ttl`` on a key derived from (session id, raw text).
Once the turn is persisted the value is swapped for ``done:<assistant message id>`` so a
duplicate arriving inside the window can return that exact reply.
"""

import hashlib
import logging
from typing import Optional

from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

PENDING = "pending"
DONE_PREFIX = "done:"


class Claim(BaseModel):
    key: str
    acquired: bool
    value: Optional[str] = None
    # Cache unreachable: the turn proceeds without dedup protection.
    degraded: bool = False

    @property
    def duplicate(self) -> bool:
        return not self.acquired

    @property
    def reply_message_id(self) -> Optional[int]:
        if self.value and self.value.startswith(DONE_PREFIX):
            try:
                return int(self.value[len(DONE_PREFIX):])
            except ValueError:
                return None
        return None


def idempotency_key(session_id: str, raw_text: str) -> str:
    digest = hashlib.sha256(f"{session_id}:{raw_text}".encode("utf-8")).hexdigest()[:16]
    return f"idem:chat:{session_id}:{digest}"


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class IdempotencyGuard:
    def __init__(self, redis: Optional[Redis], ttl_sec: int = 15):
        self.redis = redis
        self.ttl_sec = ttl_sec

    async def claim(self, session_id: str, raw_text: str) -> Claim:
        key = idempotency_key(session_id, raw_text)
        if self.redis is None:
            return Claim(key=key, acquired=True, degraded=True)
        try:
            acquired = await self.redis.set(key, PENDING, nx=True, ex=self.ttl_sec)
            if acquired:
                return Claim(key=key, acquired=True)
            value = _decode(await self.redis.get(key))
        except (RedisError, OSError) as exc:
            logger.warning("idempotency check unavailable, proceeding key=%s error=%s", key, exc)
            return Claim(key=key, acquired=True, degraded=True)
        logger.info("duplicate submission inside idempotency window key=%s", key)
        return Claim(key=key, acquired=False, value=value)

    async def remember_reply(self, claim: Claim, message_id: int) -> None:
        if self.redis is None or claim.degraded or not claim.acquired:
            return
        try:
            await self.redis.set(claim.key, f"{DONE_PREFIX}{message_id}", ex=self.ttl_sec, xx=True)
        except (RedisError, OSError) as exc:
            logger.warning("could not record reply for key=%s error=%s", claim.key, exc)

    async def recall_reply(self, claim: Claim) -> Optional[int]:
        """Assistant message id stored for a duplicate claim, re-read if it was still pending."""
        if claim.reply_message_id is not None:
            return claim.reply_message_id
        if self.redis is None:
            return None
        try:
            value = _decode(await self.redis.get(claim.key))
        except (RedisError, OSError) as exc:
            logger.warning("could not read idempotency key=%s error=%s", claim.key, exc)
            return None
        return Claim(key=claim.key, acquired=False, value=value).reply_message_id

    async def release(self, claim: Claim) -> None:
        """Drop a claim whose turn failed so the user can retry immediately."""
        if self.redis is None or claim.degraded or not claim.acquired:
            return
        try:
            await self.redis.delete(claim.key)
        except (RedisError, OSError) as exc:
            logger.warning("could not release idempotency key=%s error=%s", claim.key, exc)
