"""Wrapper over SQLite tables that keep the queue and playback state across restarts."""

import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .models import QueueItem

logger = logging.getLogger("songqueue")


class DatabaseInterface(ABC):
    @abstractmethod
    def create(self):
        pass

    @abstractmethod
    def contains(self, **items) -> bool:
        pass

    @abstractmethod
    def add(self, kvs):
        pass

    @abstractmethod
    def remove(self, **items):
        pass

    @abstractmethod
    def all(self) -> list:
        pass

    @abstractmethod
    def clear(self):
        pass


class Dummy(DatabaseInterface):
    """Used when the database is disabled. Remembers nothing."""

    def create(self):
        pass

    def contains(self, **_):
        return False

    def add(self, *_):
        pass

    def remove(self, **_):
        pass

    def all(self):
        return []

    def clear(self):
        pass

    def update(self, *_):
        pass

    def reorder(self, *_):
        pass

    def load(self):
        return None

    def save(self, *_):
        pass


class DatabaseBase(DatabaseInterface):
    """A table described by `structure`, a mapping of column name to SQL properties."""

    structure: dict
    name: str

    def __init__(self, path: str):
        assert self.structure != {}
        assert self.name
        assert path

        self.path = path
        dirname = os.path.dirname(path)
        if dirname:
            os.makedirs(dirname, exist_ok=True)
        self.create()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def create(self):
        """Create the table if it does not exist yet."""
        with self._connect() as conn:
            params = ", ".join(
                f"{key} {' '.join(map(str.upper, props))} NOT NULL"
                for key, props in self.structure.items()
            )
            command = f"CREATE TABLE IF NOT EXISTS {self.name} ({params})"
            logger.debug(f"executing {command}")
            conn.execute(command)

    def keys(self):
        return self.structure.keys()

    def _check_keys(self, items: dict):
        allowed_keys = set(self.structure.keys())
        assert all(
            key in allowed_keys for key in items.keys()
        ), f"Invalid key. Valid keys: {allowed_keys}"

    def contains(self, **items) -> bool:
        self._check_keys(items)
        items = {k: str(v) for k, v in items.items()}
        with self._connect() as conn:
            conditions = " AND ".join(f"{key}=?" for key in items.keys())
            command = f"SELECT EXISTS(SELECT 1 FROM {self.name} WHERE {conditions})"
            logger.debug(f"executing {command}")
            return bool(conn.execute(command, tuple(items.values())).fetchone()[0])

    def add(self, items: tuple):
        assert len(items) == len(self.structure)
        params = ", ".join(self.structure.keys())
        question_marks = ", ".join("?" for _ in items)
        command = f"INSERT OR REPLACE INTO {self.name} ({params}) VALUES ({question_marks})"
        logger.debug(f"executing {command}")
        with self._connect() as conn:
            conn.execute(command, items)

    def remove(self, **items):
        self._check_keys(items)
        conditions = " AND ".join(f"{key}=?" for key in items.keys())
        command = f"DELETE FROM {self.name} WHERE {conditions}"
        logger.debug(f"executing {command}")
        with self._connect() as conn:
            conn.execute(command, tuple(items.values()))

    def all(self) -> list:
        with self._connect() as conn:
            return list(conn.execute(f"SELECT * FROM {self.name}"))

    def clear(self):
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self.name}")


class QueueItems(DatabaseBase):
    """Queued items, stored as JSON blobs keyed by item id with an explicit position."""

    name = "queue_items"
    structure = {
        "id": ["text", "unique"],
        "position": ["integer"],
        "data": ["text"],
    }

    def add(self, item: QueueItem, position: int | None = None):
        with self._connect() as conn:
            if position is None:
                position = conn.execute(
                    f"SELECT COALESCE(MAX(position) + 1, 0) FROM {self.name}"
                ).fetchone()[0]
            else:
                conn.execute(
                    f"UPDATE {self.name} SET position = position + 1 WHERE position >= ?",
                    (position,),
                )
            conn.execute(
                f"INSERT OR REPLACE INTO {self.name} (id, position, data) VALUES (?, ?, ?)",
                (item.id, position, json.dumps(item.to_dict())),
            )

    def update(self, item: QueueItem):
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {self.name} SET data = ? WHERE id = ?",
                (json.dumps(item.to_dict()), item.id),
            )

    def reorder(self, ids: list[str]):
        with self._connect() as conn:
            conn.executemany(
                f"UPDATE {self.name} SET position = ? WHERE id = ?",
                [(i, item_id) for i, item_id in enumerate(ids)],
            )

    def all(self) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT data FROM {self.name} ORDER BY position")
            result = []
            for (data,) in rows:
                try:
                    result.append(json.loads(data))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping unreadable queue row: {e}")
            return result


class PlaybackState(DatabaseBase):
    """Single-row key/value table holding the orchestrator state."""

    name = "playback_state"
    structure = {
        "key": ["text", "unique"],
        "value": ["text"],
    }
    state_key = "state"

    def save(self, state: dict):
        super().add((self.state_key, json.dumps(state)))

    def load(self) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT value FROM {self.name} WHERE key = ?", (self.state_key,)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt playback state: {e}")
            return None


class PriorityUsers(DatabaseBase):
    """Requesters whose items jump ahead of everyone else's."""

    name = "priority_users"
    structure = {
        "user_id": ["text", "unique"],
    }


@dataclass(slots=True)
class Database:
    queue: QueueItems | Dummy
    state: PlaybackState | Dummy
    priority: PriorityUsers | Dummy

    @classmethod
    def open(cls, path: str) -> "Database":
        return cls(QueueItems(path), PlaybackState(path), PriorityUsers(path))

    @classmethod
    def dummy(cls) -> "Database":
        return cls(Dummy(), Dummy(), Dummy())

    def load_queue_items(self) -> list[dict]:
        return self.queue.all()

    def add_queue_item(self, item: QueueItem, position: int | None = None):
        self.queue.add(item, position)

    def remove_queue_item(self, item_id: str):
        self.queue.remove(id=item_id)

    def update_queue_item(self, item: QueueItem):
        self.queue.update(item)

    def reorder_queue(self, ids: list[str]):
        self.queue.reorder(ids)

    def clear_queue(self):
        self.queue.clear()

    def load_playback_state(self) -> dict | None:
        return self.state.load()

    def save_playback_state(self, state: dict):
        self.state.save(state)

    def is_priority_user(self, user_id: str) -> bool:
        if not user_id:
            return False
        return self.priority.contains(user_id=user_id)

    def add_priority_user(self, user_id: str):
        self.priority.add((user_id,))

    def remove_priority_user(self, user_id: str):
        self.priority.remove(user_id=user_id)

    def priority_users(self) -> list[str]:
        return [row[0] for row in self.priority.all()]
