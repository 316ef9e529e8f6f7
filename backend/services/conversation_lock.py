"""Per-conversation mutual exclusion for message sends.

Two sends to the same conversation must not interleave between the quota
check and the recorded exchange. ``local`` serializes within one process;
``redis`` serializes across API workers sharing a Redis instance.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager

import redis as redis_lib

from services.errors import ConversationBusyError

logger = logging.getLogger(__name__)

_REDIS_RETRY_INTERVAL = 0.1


class LocalConversationLock:
    """Reference-counted ``threading.Lock`` per conversation id."""

    def __init__(self, wait_seconds: float = 90.0):
        self.wait_seconds = wait_seconds
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # id -> [lock, refcount]

    def _checkout(self, conversation_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(conversation_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[conversation_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, conversation_id: str) -> None:
        with self._guard:
            entry = self._locks.get(conversation_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[conversation_id]

    @contextmanager
    def hold(self, conversation_id: str):
        lock = self._checkout(conversation_id)
        try:
            if not lock.acquire(timeout=self.wait_seconds):
                logger.warning("Timed out waiting for conversation %s", conversation_id)
                raise ConversationBusyError()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(conversation_id)

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)


class RedisConversationLock:
    """``SET NX PX`` lock with a random token; only the holder may release."""

    def __init__(
        self,
        r: redis_lib.Redis | None = None,
        wait_seconds: float = 90.0,
        ttl_seconds: int = 120,
        prefix: str = "conversation",
    ):
        if r is None:
            from config import settings

            r = redis_lib.from_url(settings.REDIS_URL, decode_responses=True)
        self.r = r
        self.wait_seconds = wait_seconds
        self.ttl_ms = int(ttl_seconds * 1000)
        self.prefix = prefix

    def _key(self, conversation_id: str) -> str:
        return f"{self.prefix}:{conversation_id}:send_lock"

    def acquire(self, conversation_id: str) -> str:
        key = self._key(conversation_id)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait_seconds
        while True:
            if self.r.set(key, token, nx=True, px=self.ttl_ms):
                return token
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for conversation %s", conversation_id)
                raise ConversationBusyError()
            time.sleep(_REDIS_RETRY_INTERVAL)

    def release(self, conversation_id: str, token: str) -> bool:
        key = self._key(conversation_id)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != token:
                    pipe.unwatch()
                    logger.warning("Send lock for conversation %s expired before release", conversation_id)
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
                return True
            except redis_lib.WatchError:
                logger.warning("Send lock for conversation %s changed during release", conversation_id)
                return False

    @contextmanager
    def hold(self, conversation_id: str):
        token = self.acquire(conversation_id)
        try:
            yield
        finally:
            self.release(conversation_id, token)


def get_conversation_lock(backend: str | None = None):
    """Build the lock configured by ``CONVERSATION_LOCK_BACKEND``."""
    from config import settings

    backend = (backend or settings.CONVERSATION_LOCK_BACKEND).lower()
    if backend == "redis":
        return RedisConversationLock(
            wait_seconds=settings.CONVERSATION_LOCK_WAIT_SECONDS,
            ttl_seconds=settings.CONVERSATION_LOCK_TTL_SECONDS,
        )
    if backend == "local":
        return LocalConversationLock(wait_seconds=settings.CONVERSATION_LOCK_WAIT_SECONDS)
    raise ValueError(f"Unknown conversation lock backend: {backend!r}")
