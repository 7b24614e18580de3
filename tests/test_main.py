import pytest
import tomlkit
from click.testing import CliRunner
from fakes import FakeBackend, FakeResolver
from util import wait_for_condition

from songqueue.app import Main
from songqueue.app.cli import songqueue
from songqueue.config import Config, set_user_defaults
from songqueue.console import console
from songqueue.db import Database
from songqueue.models import Phase, QueueItem


def make_config():
    config = Config.defaults()
    config.session.playback.transition_delay_ms = 5
    config.session.prefetch.initial_delay_ms = 0
    config.session.prefetch.min_delay_ms = 0
    return config


def now_playing(main):
    current = main.orchestrator.current
    if main.orchestrator.phase != Phase.PLAYING or current is None:
        return None
    return current.item.title


@pytest.mark.asyncio
async def test_session_survives_restart(tmp_path):
    songs = []
    for name in ("a", "b", "c"):
        path = tmp_path / f"{name}.mp3"
        path.write_bytes(b"\x00")
        songs.append(str(path))
    database = Database.open(str(tmp_path / "songqueue.db"))
    config = make_config()

    backend = FakeBackend()
    async with Main(config, backend, FakeResolver(str(tmp_path)), database) as main:
        added = await main.add_all(songs, requester_id="someone")
        assert len(added) == 3
        await wait_for_condition(lambda: now_playing(main) == "a")
        backend.finish()
        await wait_for_condition(lambda: now_playing(main) == "b")

    state = database.load_playback_state()
    assert state["songs_played"] == 1
    assert state["current"]["title"] == "b"
    assert [row["title"] for row in database.load_queue_items()] == ["c"]

    backend = FakeBackend()
    async with Main(config, backend, FakeResolver(str(tmp_path)), database) as main:
        assert main.orchestrator.state.songs_played == 1
        await wait_for_condition(lambda: now_playing(main) == "b")
        assert [item.title for item in main.queue.snapshot()] == ["c"]
        backend.finish()
        await wait_for_condition(lambda: now_playing(main) == "c")
        backend.finish()
        await main.wait_until_drained()
        assert main.orchestrator.state.songs_played == 3


@pytest.mark.asyncio
async def test_priority_users_jump_the_queue(tmp_path):
    database = Database.open(str(tmp_path / "songqueue.db"))
    database.add_priority_user("vip")
    backend = FakeBackend()
    backend.available = False

    async with Main(make_config(), backend, FakeResolver(str(tmp_path)), database) as main:
        await main.add("https://example.com/a", requester_id="someone")
        await main.add("https://example.com/b", requester_id="vip")
        assert await main.add("https://example.com/a") is None
        assert [item.content for item in main.queue.snapshot()] == [
            "https://example.com/b",
            "https://example.com/a",
        ]


@pytest.fixture
def config_path(tmp_path):
    path = str(tmp_path / "config.toml")
    set_user_defaults(path)
    with open(path) as f:
        toml = tomlkit.parse(f.read())
    toml["database"]["path"] = str(tmp_path / "songqueue.db")
    toml["downloads"]["folder"] = str(tmp_path / "downloads")
    with open(path, "w") as f:
        f.write(tomlkit.dumps(toml))
    return path


class TestCli:
    @pytest.fixture(autouse=True)
    def wide_console(self, monkeypatch):
        # keep long temp paths on one line
        monkeypatch.setattr(console, "width", 400)

    def run(self, config_path, *args):
        result = CliRunner().invoke(songqueue, ["--config-path", config_path, *args], obj={})
        assert result.exit_code == 0, result.output
        return result.output

    def test_config_path(self, config_path):
        assert config_path in self.run(config_path, "config", "path")

    def test_vip_commands(self, config_path, tmp_path):
        self.run(config_path, "vip", "add", "alice")
        self.run(config_path, "vip", "add", "bob")
        self.run(config_path, "vip", "remove", "alice")
        assert "bob" in self.run(config_path, "vip", "list")

        database = Database.open(str(tmp_path / "songqueue.db"))
        assert database.priority_users() == ["bob"]

    def test_queue_shows_saved_items(self, config_path, tmp_path):
        assert "empty" in self.run(config_path, "queue")

        database = Database.open(str(tmp_path / "songqueue.db"))
        database.add_queue_item(QueueItem(content="https://example.com/a", title="first song"))
        assert "first song" in self.run(config_path, "queue")

    def test_missing_config_is_created(self, tmp_path):
        path = str(tmp_path / "new" / "config.toml")
        output = self.run(path, "config", "path")
        assert "creating default config" in output
        assert Config(path).session.misc.version == "1.0.0"
