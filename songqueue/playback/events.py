"""Domain events published by the queue and the orchestrator."""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from ..models import Phase, QueueItem

logger = logging.getLogger("songqueue")


@dataclass(frozen=True)
class Event:
    pass


@dataclass(frozen=True)
class ItemAdded(Event):
    item: QueueItem
    index: int


@dataclass(frozen=True)
class ItemRemoved(Event):
    item: QueueItem
    index: int


@dataclass(frozen=True)
class QueueReordered(Event):
    item: QueueItem
    from_index: int
    to_index: int


@dataclass(frozen=True)
class QueueCleared(Event):
    pass


@dataclass(frozen=True)
class ItemUpdated(Event):
    """Download status, progress or metadata of a queued item changed."""

    item: QueueItem


@dataclass(frozen=True)
class PlaybackStarted(Event):
    item: QueueItem
    offset_ms: float = 0


@dataclass(frozen=True)
class PlaybackEnded(Event):
    item: QueueItem
    success: bool
    reason: str = ""


@dataclass(frozen=True)
class StateChanged(Event):
    phase: Phase
    songs_played: int


Handler = Callable[[Event], object]


class EventHub:
    """Synchronous fan-out of events to subscribers keyed by event type.

    A handler may be a plain function or a coroutine function. Coroutines are
    scheduled as tasks on the running loop; the hub keeps a reference so they
    are not garbage collected mid-flight.
    """

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type, handler: Handler):
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Handler):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event):
        for event_type in type(event).__mro__:
            for handler in list(self._handlers.get(event_type, ())):
                try:
                    result = handler(event)
                except Exception as e:
                    logger.error(f"Event handler {handler!r} failed on {type(event).__name__}: {e}")
                    continue
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
