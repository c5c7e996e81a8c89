"""
Per-ride fan-out of ride updates and driver positions.

Every subscriber owns an unbounded ``asyncio.Queue``.  ``publish`` is
synchronous and uses ``put_nowait``, so messages for one ride reach each
subscriber in exactly the order the simulator produced them.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Optional

logger = logging.getLogger(__name__)

Message = dict[str, Any]


class RideEventHub:
    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[Message]]] = defaultdict(set)

    def subscribe(
        self, ride_id: str, queue: Optional[asyncio.Queue[Message]] = None
    ) -> asyncio.Queue[Message]:
        """Register for *ride_id*.  Pass *queue* to multiplex several rides into one."""
        if queue is None:
            queue = asyncio.Queue()
        self._subscribers[ride_id].add(queue)
        logger.debug("Subscriber added for %s", ride_id)
        return queue

    def unsubscribe(self, ride_id: str, queue: asyncio.Queue[Message]) -> None:
        subscribers = self._subscribers.get(ride_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[ride_id]

    def publish(self, ride_id: str, message: Message) -> int:
        """Queue *message* for every subscriber of *ride_id*; returns the count."""
        subscribers = self._subscribers.get(ride_id, ())
        for queue in subscribers:
            queue.put_nowait(message)
        return len(subscribers)

    def subscriber_count(self, ride_id: str) -> int:
        return len(self._subscribers.get(ride_id, ()))
