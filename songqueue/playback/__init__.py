from .events import (
    Event,
    EventHub,
    ItemAdded,
    ItemRemoved,
    ItemUpdated,
    PlaybackEnded,
    PlaybackStarted,
    QueueCleared,
    QueueReordered,
    StateChanged,
)
from .orchestrator import PlaybackOrchestrator
from .persistence import StatePersistence
from .prefetch import Pacer, PrefetchScheduler
from .queue import MediaQueue
from .repeat import ReplayBuffer
from .shuffle import shuffle_for_repeat_all, weighted_index

__all__ = [
    "Event",
    "EventHub",
    "ItemAdded",
    "ItemRemoved",
    "ItemUpdated",
    "MediaQueue",
    "Pacer",
    "PlaybackEnded",
    "PlaybackOrchestrator",
    "PlaybackStarted",
    "PrefetchScheduler",
    "QueueCleared",
    "QueueReordered",
    "ReplayBuffer",
    "StatePersistence",
    "StateChanged",
    "shuffle_for_repeat_all",
    "weighted_index",
]
