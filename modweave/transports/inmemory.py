"""In-memory transport for single-process deployments and tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import Message
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, Message]]):
    """Simple in-process FIFO queues keyed by topic."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, Message]]] = defaultdict(deque)
        self._cond = asyncio.Condition()

    async def publish(self, topic: str, message: Message) -> None:
        """Publish message to in-memory queue."""
        async with self._cond:
            self._queues[topic].append((topic, message))
            self._cond.notify_all()

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, Message], Message]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while True:
            async with self._cond:
                while not self._queues[topic]:
                    if deadline is None:
                        await self._cond.wait()
                        continue
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return
                    try:
                        await asyncio.wait_for(self._cond.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        return
                raw_message = self._queues[topic].popleft()
            yield raw_message, raw_message[1]

    async def ack(self, raw_message: Tuple[str, Message]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: Tuple[str, Message], requeue: bool = True) -> None:
        """Put the message back at the head of its queue when ``requeue`` is set."""
        if not requeue:
            return
        async with self._cond:
            self._queues[raw_message[0]].appendleft(raw_message)
            self._cond.notify_all()

    def release(self, topic: str) -> None:
        """Forget the queue for ``topic`` once it is empty."""
        if not self._queues.get(topic):
            self._queues.pop(topic, None)

    @property
    def topics(self) -> List[str]:
        return sorted(self._queues)

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return len(self._queues.get(topic, ()))
