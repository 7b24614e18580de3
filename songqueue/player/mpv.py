"""mpv backend. Controls a running mpv process through its JSON IPC socket."""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Callable
from typing import NamedTuple, Optional

from ..exceptions import BackendError, ControlTimeoutError, IPCCommandError, IPCConnectionError
from .backend import AudioBackend, EndReason, Started, terminate_process

logger = logging.getLogger("songqueue")

# mpv end-file reasons
END_REASONS = {
    "eof": EndReason.ENDED,
    "error": EndReason.ERROR,
    "stop": EndReason.SKIPPED,
    "quit": EndReason.SKIPPED,
    "redirect": EndReason.SKIPPED,
}


class ConnectResult(NamedTuple):
    """Outcome of trying to reach the IPC socket."""
    connected: bool
    attempts: int
    error: Optional[str] = None


class MpvIPC:
    """Newline-delimited JSON client for mpv's --input-ipc-server socket.

    Requests carry a `request_id` and are matched with their replies. Any
    message with an `event` key is handed to `on_event`.
    """

    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        self.on_event: Callable[[dict], None] | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 0
        self._read_task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self, retries: int = 20, delay: float = 0.1) -> ConnectResult:
        """Try to open the socket up to `retries` times, `delay` seconds apart."""
        error = None
        for attempt in range(1, retries + 1):
            try:
                self._reader, self._writer = await asyncio.open_unix_connection(self.path)
            except OSError as e:
                error = str(e)
                await asyncio.sleep(delay)
                continue
            self._read_task = asyncio.create_task(self._read_loop())
            logger.debug(f"Connected to mpv IPC at {self.path} after {attempt} attempt(s)")
            return ConnectResult(True, attempt)
        return ConnectResult(False, retries, error)

    async def command(self, *args):
        """Send a command and return the `data` of mpv's reply."""
        if not self.connected:
            raise IPCConnectionError("mpv IPC socket is not connected")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = json.dumps({"command": list(args), "request_id": request_id}) + "\n"
        try:
            assert self._writer is not None
            self._writer.write(payload.encode("utf-8"))
            await self._writer.drain()
            reply = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ControlTimeoutError(args[0] if args else None, self.timeout)
        except OSError as e:
            raise IPCConnectionError(f"mpv IPC write failed: {e}")
        finally:
            self._pending.pop(request_id, None)

        error = reply.get("error", "success")
        if error != "success":
            raise IPCCommandError(f"mpv rejected {args[0]!r}: {error}")
        return reply.get("data")

    async def _read_loop(self):
        assert self._reader is not None
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Unparseable mpv IPC line: {line!r}")
                    continue
                self._dispatch(message)
        except OSError as e:
            logger.debug(f"mpv IPC read failed: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(IPCConnectionError("mpv closed the IPC connection"))
            self._pending.clear()

    def _dispatch(self, message: dict):
        request_id = message.get("request_id")
        if request_id is not None and request_id in self._pending:
            future = self._pending[request_id]
            if not future.done():
                future.set_result(message)
        elif "event" in message and self.on_event is not None:
            self.on_event(message)

    async def close(self):
        if self._read_task is not None:
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
            self._read_task = None
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(OSError):
                await self._writer.wait_closed()
            self._writer = None


class MpvBackend(AudioBackend):
    name = "mpv"
    seamless_filters = True

    def __init__(self, config, executable: str | None = None):
        super().__init__(config, executable)
        self._proc: asyncio.subprocess.Process | None = None
        self._ipc: MpvIPC | None = None
        self._socket_path: str | None = None
        self._watch_task: asyncio.Task | None = None

    def _new_socket_path(self, token: int) -> str:
        directory = self.config.socket_dir or tempfile.gettempdir()
        return os.path.join(directory, f"songqueue-mpv-{os.getpid()}-{token}.sock")

    def _build_args(self, file_path: str, socket_path: str, offset_ms: float) -> list[str]:
        args = [
            self.executable,
            "--no-video",
            "--no-terminal",
            "--audio-display=no",
            "--idle=no",
            f"--input-ipc-server={socket_path}",
            f"--volume={self.volume}",
        ]
        if offset_ms > 0:
            args.append(f"--start={offset_ms / 1000:.2f}")
        if self.filter_chain:
            args.append(f"--af=lavfi=[{self.filter_chain}]")
        args.append(file_path)
        return args

    async def play(self, file_path: str, offset_ms: float = 0) -> int:
        if self.has_session or self._proc is not None:
            await self.stop()

        socket_path = self._new_socket_path(self.generation + 1)
        _remove_socket(socket_path)

        args = self._build_args(file_path, socket_path, offset_ms)
        logger.debug(f"Starting mpv: {' '.join(args[:6])} ...")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

        ipc = MpvIPC(socket_path, timeout=self.config.ipc_timeout)
        result = await ipc.connect(self.config.connect_retries, self.config.connect_retry_delay)
        if not result.connected:
            await terminate_process(proc)
            _remove_socket(socket_path)
            raise IPCConnectionError(
                f"Could not reach mpv at {socket_path} after {result.attempts} attempts: {result.error}"
            )

        generation = self._begin_session(file_path)
        self._proc = proc
        self._ipc = ipc
        self._socket_path = socket_path
        ipc.on_event = lambda message: self._on_ipc_event(generation, message)
        self._watch_task = asyncio.create_task(self._watch(generation, proc, ipc, socket_path))

        logger.info(f"mpv playing {os.path.basename(file_path)} from {offset_ms / 1000:.1f}s")
        self._emit(Started(generation, file_path))
        return generation

    def _on_ipc_event(self, generation: int, message: dict):
        if message.get("event") != "end-file":
            return
        reason = END_REASONS.get(message.get("reason", ""), EndReason.ENDED)
        self._finish(generation, reason, message.get("file_error", ""))

    async def _watch(self, generation: int, proc: asyncio.subprocess.Process, ipc: MpvIPC, socket_path: str):
        returncode = await proc.wait()
        await ipc.close()
        _remove_socket(socket_path)
        if self._proc is proc:
            self._proc = None
            self._ipc = None
        # a missing end-file event means mpv died or was killed from outside
        if returncode == 0:
            self._finish(generation, EndReason.ENDED)
        else:
            self._finish(generation, EndReason.ERROR, f"mpv exited with code {returncode}")

    async def stop(self) -> bool:
        generation = self._active
        proc, ipc = self._proc, self._ipc
        self._proc = None
        self._ipc = None

        if generation is not None:
            self._finish(generation, EndReason.SKIPPED)

        if ipc is not None:
            with contextlib.suppress(BackendError):
                await ipc.command("quit")
            await ipc.close()
        if proc is not None:
            await terminate_process(proc)
        return generation is not None

    async def _control(self, *command) -> bool:
        if not self.has_session or self._ipc is None:
            return False
        try:
            await self._ipc.command(*command)
        except ControlTimeoutError as e:
            logger.error(f"mpv: {e}")
            return False
        except BackendError as e:
            logger.error(f"mpv command {command[0]!r} failed: {e}")
            return False
        return True

    async def pause(self) -> bool:
        return await self._control("set_property", "pause", True)

    async def resume(self) -> bool:
        return await self._control("set_property", "pause", False)

    async def seek(self, position_ms: float) -> bool:
        return await self._control("seek", round(position_ms / 1000, 3), "absolute")

    async def update_filters(self, chain: str) -> bool:
        self.filter_chain = chain
        return await self._control("set_property", "af", f"lavfi=[{chain}]" if chain else "")

    async def set_volume(self, volume: int) -> bool:
        self.volume = max(0, min(100, int(volume)))
        return await self._control("set_property", "volume", self.volume)

    async def get_position(self) -> float | None:
        if not self.has_session or self._ipc is None:
            return None
        try:
            seconds = await self._ipc.command("get_property", "time-pos")
        except BackendError as e:
            logger.debug(f"mpv: could not read position: {e}")
            return None
        return None if seconds is None else float(seconds) * 1000


def _remove_socket(path: str):
    with contextlib.suppress(FileNotFoundError):
        os.remove(path)
