"""
Engine push events.

One-way broadcast from the poll pipeline to UI consumers. Subscribers get a
bounded asyncio queue each; listeners are plain callables invoked inline.
Delivery is best effort: a full queue drops the event for that subscriber
only.

Event types:
    snapshot        all current counters (after cooldown)
    reward          a detected kill/headshot increment
    payment         a successful unit payment
    payment-error   a failed unit payment
    session         engine lifecycle: started / stopped / error
    connectivity    memory channel lost / restored
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Tuple

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Listener = Callable[[Event], None]


class EventBus:
    """In-process pub/sub for engine events."""

    def __init__(self, history: int = 200, queue_size: int = 500):
        self._subs: Dict[int, asyncio.Queue] = {}
        self._listeners: List[Listener] = []
        self._next_id = 1
        self._queue_size = queue_size
        self._history: Deque[Event] = deque(maxlen=history)

    def subscribe(self, replay: bool = False) -> Tuple[int, asyncio.Queue]:
        """Register a queue subscriber. ``replay`` pre-loads recent history."""
        sid = self._next_id
        self._next_id += 1
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subs[sid] = queue

        if replay:
            for event in tuple(self._history):
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    break

        return sid, queue

    def unsubscribe(self, sid: int) -> None:
        self._subs.pop(sid, None)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event_type: str, **payload: Any) -> Event:
        event: Event = {"type": event_type, "timestamp": time.time(), **payload}
        self._history.append(event)

        for queue in tuple(self._subs.values()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Dropping {event_type} event for a slow subscriber")

        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

        return event

    def history(self, event_type: str = "") -> List[Event]:
        if not event_type:
            return list(self._history)
        return [e for e in self._history if e["type"] == event_type]
