"""Redis transport for cross-process execution dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError as PydanticValidationError

from ..contracts import TriggerMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis list based transport; raw messages are ``(queue, json)`` pairs."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _queue_name(topic: str) -> str:
        return f"flowgate:{topic}"

    async def publish(self, topic: str, message: TriggerMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], TriggerMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                try:
                    message = TriggerMessage.from_json(message_json)
                except PydanticValidationError as e:
                    logger.error(f"Dropping malformed message on {queue_name}: {e}")
                    continue
                yield (queue_name, message_json), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment (message already consumed by BRPOP)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue and self._redis:
            queue_name, message_json = raw_message
            await self._redis.rpush(queue_name, message_json)

    async def pending(self, topic: str) -> int:
        if not self._redis:
            await self.connect()
        return await self._redis.llen(self._queue_name(topic))
