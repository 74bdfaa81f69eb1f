"""
Solar Charge Port Manager - Change Feed
Version: 1.0.0

Changelog:
v1.0.0 (2026-10-02): Initial station-scoped push feed for session/port changes

In-process fan-out of change events. Each subscriber owns an asyncio.Queue;
delivery is at-least-once and duplicates are possible, consumers debounce.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)

ALL_STATIONS = None


class ChangeFeed:
    """Station-keyed publish/subscribe"""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[Optional[int], Set[asyncio.Queue]] = {}

    def subscribe(self, station_id: Optional[int] = ALL_STATIONS) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(station_id, set()).add(queue)
        return queue

    def unsubscribe(self, station_id: Optional[int], queue: asyncio.Queue):
        subscribers = self._subscribers.get(station_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[station_id]

    def publish(self, station_id: Optional[int], table: str, action: str, **data) -> int:
        """
        Deliver an event to the station's subscribers and to wildcard subscribers.
        Returns the number of queues reached.
        """
        event = {
            "station_id": station_id,
            "table": table,
            "action": action,
            "at": datetime.now().isoformat(),
            **data,
        }
        targets = set(self._subscribers.get(station_id, set()))
        if station_id is not ALL_STATIONS:
            targets |= self._subscribers.get(ALL_STATIONS, set())

        for queue in targets:
            if queue.full():
                # Slow consumer: drop its oldest event, the next one still triggers a refresh
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

        logger.debug(f"Change event {table}.{action} station={station_id} -> {len(targets)} subscriber(s)")
        return len(targets)

    def subscriber_count(self) -> int:
        return sum(len(s) for s in self._subscribers.values())


# Singleton instance
_feed = ChangeFeed()


def get_feed() -> ChangeFeed:
    return _feed


def subscribe(station_id: Optional[int] = ALL_STATIONS) -> asyncio.Queue:
    return _feed.subscribe(station_id)


def unsubscribe(station_id: Optional[int], queue: asyncio.Queue):
    _feed.unsubscribe(station_id, queue)


def publish(station_id: Optional[int], table: str, action: str, **data) -> int:
    return _feed.publish(station_id, table, action, **data)
