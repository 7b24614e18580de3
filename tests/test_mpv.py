import asyncio
import json
import os
import shutil
import tempfile

import pytest
from fakes import FakeProcess, player_config
from util import wait_for_condition

from songqueue.exceptions import ControlTimeoutError, IPCCommandError, IPCConnectionError
from songqueue.player import EndReason, Finished, MpvBackend, MpvIPC, Started


class FakeMpv:
    """Serves mpv's IPC protocol on a unix socket and records every command."""

    def __init__(self, args=None):
        self.args = args or []
        self.commands: list[list] = []
        self.silent: set[str] = set()
        self.rejected: set[str] = set()
        self.writers: list[asyncio.StreamWriter] = []
        self.server: asyncio.AbstractServer | None = None
        self.process = FakeProcess(on_exit=self.close)

    async def listen(self, path: str):
        self.server = await asyncio.start_unix_server(self._handle, path=path)

    async def _handle(self, reader, writer):
        self.writers.append(writer)
        while True:
            line = await reader.readline()
            if not line:
                break
            message = json.loads(line)
            command = message["command"]
            self.commands.append(command)
            if command[0] in self.silent:
                continue
            reply = {"request_id": message["request_id"], "error": "success", "data": None}
            if command[0] in self.rejected:
                reply["error"] = "invalid parameter"
            if command == ["get_property", "time-pos"]:
                reply["data"] = 12.5
            writer.write((json.dumps(reply) + "\n").encode())
            await writer.drain()
            if command[0] == "quit":
                self.process.exit(0)

    async def send_event(self, event: dict):
        # the server callback registers the connection after connect() returns
        await wait_for_condition(lambda: self.writers)
        for writer in self.writers:
            if not writer.is_closing():
                writer.write((json.dumps(event) + "\n").encode())

    def close(self):
        if self.server is not None:
            self.server.close()
        for writer in self.writers:
            writer.close()


class Spawner:
    def __init__(self):
        self.spawned: list[FakeMpv] = []
        self.listen = True

    async def __call__(self, *args, **kwargs):
        mpv = FakeMpv(list(args))
        self.spawned.append(mpv)
        if self.listen:
            path = next(a.split("=", 1)[1] for a in args if a.startswith("--input-ipc-server="))
            await mpv.listen(path)
        return mpv.process

    @property
    def last(self) -> FakeMpv:
        return self.spawned[-1]


@pytest.fixture
def socket_dir():
    # unix socket paths have a short length limit, so stay out of tmp_path
    path = tempfile.mkdtemp(prefix="sq")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def spawner(monkeypatch):
    spawner = Spawner()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawner)
    return spawner


@pytest.fixture
def backend(socket_dir, spawner):
    backend = MpvBackend(player_config(socket_dir=socket_dir))
    backend.events = []
    backend.set_event_handler(backend.events.append)
    return backend


def finished(backend) -> list[Finished]:
    return [e for e in backend.events if isinstance(e, Finished)]


class TestMpvIPC:
    @pytest.mark.asyncio
    async def test_replies_are_matched_to_requests(self, socket_dir):
        mpv = FakeMpv()
        path = os.path.join(socket_dir, "ipc.sock")
        await mpv.listen(path)

        ipc = MpvIPC(path, timeout=0.5)
        result = await ipc.connect(retries=3, delay=0.01)
        assert result.connected
        assert result.attempts == 1

        first, second = await asyncio.gather(
            ipc.command("get_property", "time-pos"),
            ipc.command("set_property", "pause", True),
        )
        assert first == 12.5
        assert second is None
        assert mpv.commands[1] == ["set_property", "pause", True]

        await ipc.close()
        mpv.close()

    @pytest.mark.asyncio
    async def test_events_go_to_handler(self, socket_dir):
        mpv = FakeMpv()
        path = os.path.join(socket_dir, "ipc.sock")
        await mpv.listen(path)
        ipc = MpvIPC(path)
        events = []
        ipc.on_event = events.append
        await ipc.connect(retries=3, delay=0.01)

        await mpv.send_event({"event": "end-file", "reason": "eof"})
        await wait_for_condition(lambda: events)
        assert events == [{"event": "end-file", "reason": "eof"}]

        await ipc.close()
        mpv.close()

    @pytest.mark.asyncio
    async def test_rejected_command_raises(self, socket_dir):
        mpv = FakeMpv()
        mpv.rejected.add("seek")
        path = os.path.join(socket_dir, "ipc.sock")
        await mpv.listen(path)
        ipc = MpvIPC(path)
        await ipc.connect(retries=3, delay=0.01)

        with pytest.raises(IPCCommandError):
            await ipc.command("seek", 10, "absolute")

        await ipc.close()
        mpv.close()

    @pytest.mark.asyncio
    async def test_unanswered_command_times_out(self, socket_dir):
        mpv = FakeMpv()
        mpv.silent.add("set_property")
        path = os.path.join(socket_dir, "ipc.sock")
        await mpv.listen(path)
        ipc = MpvIPC(path, timeout=0.05)
        await ipc.connect(retries=3, delay=0.01)

        with pytest.raises(ControlTimeoutError):
            await ipc.command("set_property", "pause", True)
        assert not ipc._pending

        await ipc.close()
        mpv.close()

    @pytest.mark.asyncio
    async def test_connect_gives_up(self, socket_dir):
        ipc = MpvIPC(os.path.join(socket_dir, "missing.sock"))
        result = await ipc.connect(retries=3, delay=0.01)
        assert not result.connected
        assert result.attempts == 3
        assert result.error

        with pytest.raises(IPCConnectionError):
            await ipc.command("quit")


class TestMpvBackend:
    def test_build_args(self):
        backend = MpvBackend(player_config(volume=70, filter_chain="bass=g=3"))
        args = backend._build_args("/music/a.mp3", "/tmp/s.sock", 1500)
        assert args[0] == "mpv"
        assert "--input-ipc-server=/tmp/s.sock" in args
        assert "--volume=70" in args
        assert "--start=1.50" in args
        assert "--af=lavfi=[bass=g=3]" in args
        assert args[-1] == "/music/a.mp3"

        assert not any(a.startswith("--start") for a in backend._build_args("/a.mp3", "/s", 0))

    @pytest.mark.asyncio
    async def test_play_starts_session(self, backend, spawner):
        generation = await backend.play("/music/a.mp3")
        assert generation == 1
        assert backend.has_session
        assert backend.events == [Started(1, "/music/a.mp3")]
        assert spawner.last.args[-1] == "/music/a.mp3"
        await backend.shutdown()

    @pytest.mark.asyncio
    async def test_end_file_finishes_once(self, backend, spawner):
        generation = await backend.play("/music/a.mp3")
        await spawner.last.send_event({"event": "end-file", "reason": "eof"})
        await wait_for_condition(lambda: finished(backend))

        spawner.last.process.exit(0)
        await asyncio.sleep(0.02)
        assert finished(backend) == [Finished(generation, "/music/a.mp3", EndReason.ENDED)]
        assert not backend.has_session
        await backend.shutdown()

    @pytest.mark.asyncio
    async def test_end_file_error(self, backend, spawner):
        await backend.play("/music/a.mp3")
        await spawner.last.send_event({"event": "end-file", "reason": "error", "file_error": "unrecognized file format"})
        await wait_for_condition(lambda: finished(backend))
        (event,) = finished(backend)
        assert event.reason == EndReason.ERROR
        assert event.message == "unrecognized file format"
        await backend.shutdown()

    @pytest.mark.asyncio
    async def test_process_crash_is_an_error(self, backend, spawner):
        await backend.play("/music/a.mp3")
        spawner.last.process.exit(1)
        await wait_for_condition(lambda: finished(backend))
        (event,) = finished(backend)
        assert event.reason == EndReason.ERROR
        assert "code 1" in event.message

    @pytest.mark.asyncio
    async def test_stop_emits_skipped_once(self, backend, spawner):
        await backend.play("/music/a.mp3")
        assert await backend.stop()
        assert not await backend.stop()

        await asyncio.sleep(0.02)
        assert [e.reason for e in finished(backend)] == [EndReason.SKIPPED]
        assert ["quit"] in spawner.last.commands

    @pytest.mark.asyncio
    async def test_replacing_session_ignores_old_events(self, backend, spawner):
        first = await backend.play("/music/a.mp3")
        old = spawner.last
        second = await backend.play("/music/b.mp3")
        assert second == first + 1

        await old.send_event({"event": "end-file", "reason": "eof"})
        await asyncio.sleep(0.02)
        assert [(e.generation, e.reason) for e in finished(backend)] == [(first, EndReason.SKIPPED)]
        assert backend.has_session
        await backend.shutdown()

    @pytest.mark.asyncio
    async def test_controls(self, backend, spawner):
        await backend.play("/music/a.mp3")
        assert await backend.pause()
        assert await backend.resume()
        assert await backend.seek(1500)
        assert await backend.set_volume(150)
        assert await backend.update_filters("bass=g=5")
        assert await backend.get_position() == 12500

        assert spawner.last.commands[:5] == [
            ["set_property", "pause", True],
            ["set_property", "pause", False],
            ["seek", 1.5, "absolute"],
            ["set_property", "volume", 100],
            ["set_property", "af", "lavfi=[bass=g=5]"],
        ]
        await backend.shutdown()

    @pytest.mark.asyncio
    async def test_control_timeout_returns_false(self, backend, spawner):
        await backend.play("/music/a.mp3")
        spawner.last.silent.add("set_property")
        assert not await backend.pause()
        assert backend.has_session
        await backend.shutdown()

    @pytest.mark.asyncio
    async def test_controls_without_session(self, backend):
        assert not await backend.pause()
        assert not await backend.seek(1000)
        assert await backend.get_position() is None

    @pytest.mark.asyncio
    async def test_unreachable_socket(self, backend, spawner):
        spawner.listen = False
        with pytest.raises(IPCConnectionError):
            await backend.play("/music/a.mp3")
        assert spawner.last.process.terminated
        assert backend.events == []
        assert not backend.has_session
