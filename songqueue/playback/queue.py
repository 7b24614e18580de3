import logging
import os
from collections.abc import Callable

from ..db import Database
from ..models import DownloadStatus, ItemKind, QueueItem
from .events import EventHub, ItemAdded, ItemRemoved, ItemUpdated, QueueCleared, QueueReordered

logger = logging.getLogger("songqueue")


class MediaQueue:
    """Ordered list of pending requests.

    Priority items always sit in a contiguous block at the front, and each
    block keeps insertion order. A URL that is already queued is rejected.
    Every mutation is written through to the store and published on the hub.
    """

    def __init__(
        self,
        hub: EventHub,
        database: Database | None = None,
        priority_check: Callable[[str], bool] | None = None,
    ):
        self.hub = hub
        self.database = database or Database.dummy()
        self.priority_check = priority_check or self.database.is_priority_user
        self._items: list[QueueItem] = []

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def _priority_end(self) -> int:
        """Index of the first non-priority item."""
        for i, item in enumerate(self._items):
            if not item.is_priority:
                return i
        return len(self._items)

    def _find_duplicate(self, item: QueueItem) -> int | None:
        if item.kind != ItemKind.URL:
            return None
        for i, queued in enumerate(self._items):
            # a prefetched item keeps its URL in source_url
            if queued.content == item.content or queued.source_url == item.content:
                return i
        return None

    def add(self, item: QueueItem, keep_priority: bool = False) -> QueueItem | None:
        """Append `item` to the end of its priority block.

        Returns None if the same URL is already queued. `keep_priority` skips
        the requester lookup and trusts `item.is_priority` as given.
        """
        if self._find_duplicate(item) is not None:
            logger.debug(f"Duplicate request ignored: {item.content}")
            return None

        if not keep_priority:
            item.is_priority = bool(self.priority_check(item.requester_id))

        index = self._priority_end() if item.is_priority else len(self._items)
        self._items.insert(index, item)
        self.database.add_queue_item(item, index)
        logger.debug(f"Queued '{item.title or item.content}' at {index} (priority={item.is_priority})")
        self.hub.publish(ItemAdded(item, index))
        return item

    def add_first(self, item: QueueItem, keep_priority: bool = False) -> QueueItem:
        """Put `item` at the head of its priority block.

        A duplicate URL is moved to the head instead of being rejected.
        """
        dup = self._find_duplicate(item)
        if dup is not None:
            existing = self._items[dup]
            target = 0 if existing.is_priority else self._priority_end()
            self.reorder(dup, target)
            return existing

        if not keep_priority:
            item.is_priority = bool(self.priority_check(item.requester_id))

        index = 0 if item.is_priority else self._priority_end()
        self._items.insert(index, item)
        self.database.add_queue_item(item, index)
        self.hub.publish(ItemAdded(item, index))
        return item

    def remove_at(self, index: int) -> QueueItem | None:
        if not 0 <= index < len(self._items):
            return None
        item = self._items.pop(index)
        self.database.remove_queue_item(item.id)
        self.hub.publish(ItemRemoved(item, index))
        return item

    def remove_by_id(self, item_id: str) -> QueueItem | None:
        index = self.index_of(item_id)
        if index is None:
            return None
        return self.remove_at(index)

    def reorder(self, from_index: int, to_index: int) -> bool:
        """Move an item. The target is clamped into the item's own priority block."""
        n = len(self._items)
        if not (0 <= from_index < n and 0 <= to_index < n):
            return False

        item = self._items[from_index]
        prio_end = self._priority_end()
        if item.is_priority:
            lo, hi = 0, prio_end - 1
        else:
            lo, hi = prio_end, n - 1
        to_index = max(lo, min(hi, to_index))

        if to_index != from_index:
            self._items.pop(from_index)
            self._items.insert(to_index, item)
            self.database.reorder_queue([i.id for i in self._items])
        self.hub.publish(QueueReordered(item, from_index, to_index))
        return True

    def update(self, item: QueueItem):
        """Persist and announce a change made to a queued item in place."""
        if self.index_of(item.id) is None:
            return
        self.database.update_queue_item(item)
        self.hub.publish(ItemUpdated(item))

    def index_of(self, item_id: str) -> int | None:
        for i, item in enumerate(self._items):
            if item.id == item_id:
                return i
        return None

    def get(self, item_id: str) -> QueueItem | None:
        index = self.index_of(item_id)
        return None if index is None else self._items[index]

    def __contains__(self, item: QueueItem) -> bool:
        return self.index_of(item.id) is not None

    def snapshot(self) -> list[QueueItem]:
        return list(self._items)

    def clear(self):
        self._items.clear()
        self.database.clear_queue()
        self.hub.publish(QueueCleared())

    def load(self) -> int:
        """Restore the queue from the store. Returns the number of items restored."""
        restored = []
        for row in self.database.load_queue_items():
            try:
                item = QueueItem.from_dict(row)
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping invalid queue row: {e}")
                continue

            if item.kind == ItemKind.FILE and not os.path.exists(item.content):
                if item.source_url:
                    logger.info(f"File for '{item.title}' is gone, downloading it again")
                    item.kind = ItemKind.URL
                    item.content = item.source_url
                    item.download_status = DownloadStatus.PENDING
                    item.download_progress = 0
                    self.database.update_queue_item(item)
                else:
                    logger.warning(f"Dropping '{item.title or item.content}': file not found")
                    self.database.remove_queue_item(item.id)
                    continue
            elif item.download_status in (DownloadStatus.PREPARING, DownloadStatus.DOWNLOADING):
                # interrupted mid-download by the previous shutdown
                item.reset_download()

            restored.append(item)

        restored.sort(key=lambda i: not i.is_priority)
        self._items = restored
        if restored:
            self.database.reorder_queue([i.id for i in restored])
        logger.info(f"Restored {len(restored)} queued items")
        return len(restored)
