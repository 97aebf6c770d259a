import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger("topic-router.lock")

LOCK_PREFIX = "topic-router:topic-lock:"


def _abandon(acquire: asyncio.Future, lock: asyncio.Lock):
    # The acquire may still win the lock while being cancelled; hand it back if so.
    def _release_if_acquired(fut: asyncio.Future):
        if not fut.cancelled() and fut.exception() is None:
            lock.release()

    acquire.add_done_callback(_release_if_acquired)
    acquire.cancel()


class TopicLock:
    """
    Serializes topic creation per conversation.

    Local mode keeps one ``asyncio.Lock`` per conversation id. Redis mode uses
    a SET NX lock so several workers sharing one store agree on ordering. If
    Redis can't be reached the lock degrades to local mode.
    """

    def __init__(self, backend: str = "local", redis_url: Optional[str] = None, timeout_sec: float = 10.0):
        self._backend = backend
        self._redis_url = redis_url
        self._timeout = timeout_sec
        self._redis = None
        self._local: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._enabled_redis = backend == "redis" and bool(redis_url)

    async def connect(self):
        if not self._enabled_redis:
            return
        if not self._redis:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
            try:
                await self._redis.ping()
                logger.info(f"Topic lock using Redis at {self._redis_url}")
            except Exception as e:
                logger.warning(f"Failed to connect to Redis for topic lock: {e}. Using local locks.")
                self._enabled_redis = False

    async def close(self):
        if self._redis:
            await self._redis.close()

    @property
    def backend(self) -> str:
        return "redis" if self._enabled_redis and self._redis else "local"

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        if self.backend == "redis":
            async with self._hold_redis(conversation_id):
                yield
            return

        lock = self._local.get(conversation_id)
        if lock is None:
            lock = self._local[conversation_id] = asyncio.Lock()
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            await self._acquire_local(lock, conversation_id)
            try:
                yield
            finally:
                lock.release()
        finally:
            # Drop the entry once nobody holds or waits on it.
            self._users[conversation_id] -= 1
            if not self._users[conversation_id]:
                del self._users[conversation_id]
                del self._local[conversation_id]

    async def _acquire_local(self, lock: asyncio.Lock, conversation_id: str):
        acquire = asyncio.ensure_future(lock.acquire())
        try:
            done, _ = await asyncio.wait({acquire}, timeout=self._timeout)
        except asyncio.CancelledError:
            _abandon(acquire, lock)
            raise
        if not done:
            _abandon(acquire, lock)
            raise TimeoutError(f"Topic lock timeout ({self._timeout}s) for {conversation_id}")
        acquire.result()

    @asynccontextmanager
    async def _hold_redis(self, conversation_id: str):
        key = LOCK_PREFIX + conversation_id
        token = str(uuid.uuid4())
        t0 = time.time()
        ttl_ms = int(self._timeout * 1000)

        while True:
            if time.time() - t0 > self._timeout:
                raise TimeoutError(f"Topic lock timeout ({self._timeout}s) for {conversation_id}")
            acquired = await self._redis.set(key, token, nx=True, px=ttl_ms)
            if acquired:
                logger.debug(f"Acquired topic lock {conversation_id} ({token[:8]})")
                break
            await asyncio.sleep(0.05)

        try:
            yield
        finally:
            # Only release our own token; the TTL may have handed the key to someone else.
            current = await self._redis.get(key)
            if current == token:
                await self._redis.delete(key)
            logger.debug(f"Released topic lock {conversation_id} ({token[:8]})")

    async def get_metrics(self):
        return {
            "backend": self.backend,
            "local_conversations": len(self._local),
            "held_local": sum(1 for lk in self._local.values() if lk.locked()),
        }
