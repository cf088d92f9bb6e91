"""Base transport interface for handing pending executions to workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import TriggerMessage
from ..persistence.models import Execution

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of :class:`TriggerMessage` items, one per execution to run.

    A worker subscribes to a topic, runs each named execution and then acks
    it, or nacks it when the run could not be attempted. Delivery is at least
    once; the engine's pending -> running claim makes a redelivery harmless.
    """

    async def connect(self) -> None:
        """Open the broker connection (no-op for in-process queues)."""

    async def disconnect(self) -> None:
        """Close the broker connection (no-op for in-process queues)."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def enqueue(self, topic: str, execution: Execution) -> TriggerMessage:
        """Publish the message that asks a worker to run ``execution``."""
        message = TriggerMessage.for_execution(execution)
        await self.publish(topic, message)
        return message

    @abc.abstractmethod
    async def publish(self, topic: str, message: TriggerMessage) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TriggerMessage]]:
        """Yield ``(raw, message)`` pairs until ``lifespan`` seconds pass.

        Malformed payloads are dropped by the transport and never yielded.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """The execution was handed to the engine; forget the message."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """The execution could not be attempted.

        With ``requeue`` the message is delivered again before newer ones.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        raise NotImplementedError
