import asyncio
import logging
from collections.abc import Callable

from ..db import Database

logger = logging.getLogger("songqueue")


class StatePersistence:
    """Writes the playback state to the store, at most once per debounce window.

    `notify` may be called as often as the state changes; the snapshot is
    taken when the write happens, so the last state within a window wins.
    """

    def __init__(self, database: Database, snapshot: Callable[[], dict], debounce_ms: int = 500):
        self.database = database
        self.snapshot = snapshot
        self.debounce = debounce_ms / 1000
        self._handle: asyncio.TimerHandle | None = None
        self.writes = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def notify(self):
        if self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.debounce, self._write)

    def flush(self):
        """Write immediately, replacing any scheduled write."""
        if self._handle is not None:
            self._handle.cancel()
        self._write()

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _write(self):
        self._handle = None
        try:
            self.database.save_playback_state(self.snapshot())
        except Exception as e:
            logger.error(f"Failed to save playback state: {e}")
            return
        self.writes += 1
