"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import TriggerMessage
from .base import BaseTransport

RawMessage = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue.

    Raw messages are ``(topic, json)`` pairs. Nacked messages with ``requeue``
    go back to the front of their queue.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.acked: List[RawMessage] = []

    async def publish(self, topic: str, message: TriggerMessage) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append((topic, message.to_json()))

    async def pending(self, topic: str) -> int:
        async with self._lock:
            return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, TriggerMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, TriggerMessage.from_json(raw[1])
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawMessage) -> None:
        self.acked.append(raw_message)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)
