import logging
import random

from ..models import QueueItem, RepeatMode
from .shuffle import shuffle_for_repeat_all

logger = logging.getLogger("songqueue")

__all__ = ["RepeatMode", "ReplayBuffer"]


class ReplayBuffer:
    """Songs finished while repeat-all is on, waiting to be queued again."""

    def __init__(self, items: list[QueueItem] | None = None):
        self.items: list[QueueItem] = items if items is not None else []

    def __len__(self) -> int:
        return len(self.items)

    def record(self, item: QueueItem):
        self.items.append(item.replay_snapshot())

    def drain(self, shuffle: bool = False, rng: random.Random | None = None) -> list[QueueItem]:
        """Return every recorded song, in play order or weighted-shuffled, and empty the buffer."""
        items = list(self.items)
        self.items.clear()
        if shuffle:
            items = shuffle_for_repeat_all(items, rng)
        logger.debug(f"Replaying {len(items)} songs (shuffle={shuffle})")
        return items

    def clear(self):
        self.items.clear()
