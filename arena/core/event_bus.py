"""In-memory fan-out hub publishing router events to subscribers."""
from __future__ import annotations

import asyncio
import json
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List

from .models import utc_now_iso


class EventKind(str, Enum):
    SESSION = "session"
    MESSAGE = "message"
    AGENT_STATE = "agent-state"
    DECISION = "decision"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ArenaEvent:
    """One entry of the event stream consumed by the UI or a headless runner."""

    kind: EventKind
    data: Dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    def to_sse(self) -> str:
        return f"event: {self.kind.value}\ndata: {json.dumps(self.data, default=str)}\n\n"


class ArenaEventBus:
    """Async event hub: every subscriber gets its own queue of events.

    A subscriber that falls more than ``queue_size`` events behind loses the
    oldest ones.
    """

    def __init__(self, *, history_limit: int = 500, queue_size: int = 1000) -> None:
        self._subscribers: List[asyncio.Queue[ArenaEvent]] = []
        self._history: Deque[ArenaEvent] = deque(maxlen=history_limit)
        self._queue_size = queue_size

    def publish(self, kind: EventKind, data: Dict[str, Any]) -> ArenaEvent:
        """Deliver an event to every current subscriber."""
        event = ArenaEvent(kind=kind, data=data)
        self._history.append(event)
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        return event

    def history(self, kind: EventKind | None = None) -> List[ArenaEvent]:
        if kind is None:
            return list(self._history)
        return [event for event in self._history if event.kind is kind]

    def clear_history(self) -> None:
        self._history.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue[ArenaEvent]]:
        """Context manager yielding a queue that receives every new event."""
        queue: asyncio.Queue[ArenaEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        try:
            yield queue
        finally:
            self._subscribers.remove(queue)
