"""Contract shared by the audio player backends.

A backend drives one external player process at a time. Each `play` call
opens a session identified by a generation number; events from a session
that has since been replaced are dropped, and every session ends with exactly
one `Finished` event.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from ..config import PlayerConfig

logger = logging.getLogger("songqueue")


class EndReason(str, Enum):
    ENDED = "ended"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class BackendEvent:
    generation: int


@dataclass(frozen=True)
class Started(BackendEvent):
    file_path: str


@dataclass(frozen=True)
class Finished(BackendEvent):
    file_path: str
    reason: EndReason
    message: str = ""


EventHandler = Callable[[BackendEvent], None]


class AudioBackend(ABC):
    name: str = ""
    # True if filter changes apply without interrupting the sound
    seamless_filters: bool = False
    available: bool = True

    def __init__(self, config: PlayerConfig, executable: str | None = None):
        self.config = config
        self.executable = executable or self.name
        self.volume = config.volume
        self.filter_chain = config.filter_chain
        self.generation = 0
        self.file_path: str | None = None
        self._active: int | None = None
        self._handler: EventHandler | None = None

    def set_event_handler(self, handler: EventHandler):
        self._handler = handler

    @property
    def has_session(self) -> bool:
        return self._active is not None

    def _emit(self, event: BackendEvent):
        if self._handler is None:
            return
        try:
            self._handler(event)
        except Exception as e:
            logger.error(f"{self.name}: event handler failed on {event!r}: {e}")

    def _begin_session(self, file_path: str) -> int:
        self.generation += 1
        self._active = self.generation
        self.file_path = file_path
        return self.generation

    def _finish(self, generation: int, reason: EndReason, message: str = "") -> bool:
        """Close the session `generation` and emit its terminal event.

        Returns False, emitting nothing, when that session already finished or
        has been superseded.
        """
        if generation != self._active:
            logger.debug(f"{self.name}: dropping stale {reason.value} for generation {generation}")
            return False
        self._active = None
        logger.debug(f"{self.name}: session {generation} finished ({reason.value}) {message}")
        self._emit(Finished(generation, self.file_path or "", reason, message))
        return True

    @abstractmethod
    async def play(self, file_path: str, offset_ms: float = 0) -> int:
        """Start playing `file_path` from `offset_ms` and return the session generation.

        Raises on failure, in which case no event is emitted for the attempt.
        """

    @abstractmethod
    async def stop(self) -> bool:
        pass

    @abstractmethod
    async def pause(self) -> bool:
        pass

    @abstractmethod
    async def resume(self) -> bool:
        pass

    @abstractmethod
    async def seek(self, position_ms: float) -> bool:
        pass

    @abstractmethod
    async def update_filters(self, chain: str) -> bool:
        pass

    @abstractmethod
    async def set_volume(self, volume: int) -> bool:
        pass

    async def get_position(self) -> float | None:
        return None

    async def shutdown(self):
        await self.stop()


async def terminate_process(proc: asyncio.subprocess.Process, timeout: float = 2.0):
    """Terminate `proc`, escalating to kill if it does not exit in time."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} ignored SIGTERM, killing it")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
