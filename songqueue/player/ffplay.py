"""ffplay backend.

ffplay cannot be controlled once started, so pause, seek and filter changes
kill the process and start a new one at the right offset. Those restarts
stay inside the backend; only the session's final exit is reported.
"""

import asyncio
import logging
import os

from ..models import now_ms
from .backend import AudioBackend, EndReason, Started, terminate_process

logger = logging.getLogger("songqueue")


class FfplayBackend(AudioBackend):
    name = "ffplay"

    def __init__(self, config, executable: str | None = None):
        super().__init__(config, executable)
        self._proc: asyncio.subprocess.Process | None = None
        # incremented whenever a process is replaced on purpose
        self._spawn_token = 0
        self._offset_ms = 0.0
        self._spawned_at = 0.0
        self._paused_at_ms: float | None = None
        self._tasks: set[asyncio.Task] = set()

    def _build_args(self, file_path: str, offset_ms: float) -> list[str]:
        args = [self.executable, "-nodisp", "-autoexit", "-hide_banner", "-loglevel", "quiet"]
        if offset_ms > 0:
            args += ["-ss", f"{offset_ms / 1000:.2f}"]
        if self.volume != 100:
            args += ["-volume", str(self.volume)]
        if self.filter_chain:
            args += ["-af", self.filter_chain]
        args.append(file_path)
        return args

    def _position(self) -> float:
        if self._paused_at_ms is not None:
            return self._paused_at_ms
        return self._offset_ms + (now_ms() - self._spawned_at)

    async def _spawn(self, generation: int, offset_ms: float):
        assert self.file_path is not None
        self._spawn_token += 1
        token = self._spawn_token
        args = self._build_args(self.file_path, offset_ms)
        logger.debug(f"Starting ffplay: {' '.join(args)}")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        self._proc = proc
        self._offset_ms = offset_ms
        self._spawned_at = now_ms()
        self._paused_at_ms = None
        task = asyncio.create_task(self._watch(generation, token, proc))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _kill(self):
        """Stop the current process without ending the session."""
        proc = self._proc
        self._proc = None
        self._spawn_token += 1
        if proc is not None:
            await terminate_process(proc)

    async def _watch(self, generation: int, token: int, proc: asyncio.subprocess.Process):
        returncode = await proc.wait()
        if token != self._spawn_token:
            # replaced by a restart or killed by stop()
            return
        self._proc = None
        if returncode == 0:
            self._finish(generation, EndReason.ENDED)
        else:
            self._finish(generation, EndReason.ERROR, f"ffplay exited with code {returncode}")

    async def play(self, file_path: str, offset_ms: float = 0) -> int:
        if self.has_session or self._proc is not None:
            await self.stop()

        self.file_path = file_path
        await self._spawn(self.generation + 1, offset_ms)
        generation = self._begin_session(file_path)
        logger.info(f"ffplay playing {os.path.basename(file_path)} from {offset_ms / 1000:.1f}s")
        self._emit(Started(generation, file_path))
        return generation

    async def _restart(self, offset_ms: float) -> bool:
        """Respawn at `offset_ms`. Ends the session with an error if ffplay will not start."""
        generation = self._active
        assert generation is not None
        await self._kill()
        try:
            await self._spawn(generation, offset_ms)
        except OSError as e:
            self._paused_at_ms = None
            self._finish(generation, EndReason.ERROR, f"ffplay could not restart: {e}")
            return False
        return True

    async def stop(self) -> bool:
        generation = self._active
        if generation is not None:
            self._finish(generation, EndReason.SKIPPED)
        self._paused_at_ms = None
        await self._kill()
        return generation is not None

    async def pause(self) -> bool:
        if not self.has_session:
            return False
        if self._paused_at_ms is not None:
            return True
        position = self._position()
        await self._kill()
        self._paused_at_ms = position
        return True

    async def resume(self) -> bool:
        if not self.has_session:
            return False
        if self._paused_at_ms is None:
            return True
        return await self._restart(self._paused_at_ms)

    async def seek(self, position_ms: float) -> bool:
        if not self.has_session:
            return False
        return await self._restart(max(0.0, position_ms))

    async def update_filters(self, chain: str) -> bool:
        self.filter_chain = chain
        if not self.has_session:
            return False
        if self._paused_at_ms is None:
            return await self._restart(self._position())
        return True

    async def set_volume(self, volume: int) -> bool:
        # picked up by the next restart
        self.volume = max(0, min(100, int(volume)))
        return self.has_session

    async def get_position(self) -> float | None:
        if not self.has_session:
            return None
        return self._position()
