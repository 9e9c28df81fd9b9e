import asyncio
import logging
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from .settings import QUEUE_KEY, QUEUE_POLL_TIMEOUT

logger = logging.getLogger("ingestor.broker")


class RedisQueue:
    """A durable FIFO queue backed by a Redis list (RPUSH in, BLPOP out)."""

    def __init__(self, client: redis.Redis, key: str = QUEUE_KEY, poll_timeout: float = QUEUE_POLL_TIMEOUT):
        self._client = client
        self.key = key
        self._poll_timeout = poll_timeout

    @classmethod
    def from_url(cls, url: str, key: str = QUEUE_KEY, poll_timeout: float = QUEUE_POLL_TIMEOUT) -> "RedisQueue":
        return cls(redis.from_url(url, decode_responses=False), key, poll_timeout)

    async def ping(self) -> None:
        await self._client.ping()
        logger.info("connected to broker, queue=%s", self.key)

    async def purge(self) -> int:
        removed = await self._client.delete(self.key)
        logger.info("queue %s purged", self.key)
        return int(removed)

    async def publish(self, body: bytes) -> int:
        return await self._client.rpush(self.key, body)

    async def messages(self, stop_event: asyncio.Event) -> AsyncIterator[bytes]:
        """
        Yield message bodies in arrival order until ``stop_event`` is set.

        Broker errors are logged and polling resumes after ``poll_timeout``;
        the redis client reconnects on its own.
        """
        while not stop_event.is_set():
            try:
                item = await self._client.blpop([self.key], timeout=self._poll_timeout)
            except RedisError as exc:
                logger.error("broker read failed, queue=%s, retrying in %.1fs: %s", self.key, self._poll_timeout, exc)
                await asyncio.sleep(self._poll_timeout)
                continue
            if not item:
                continue
            _, raw = item
            yield raw

    async def close(self) -> None:
        await self._client.aclose()
