"""A config class that manages arguments between the config file and CLI."""

import copy
import logging
import os
import shutil
from dataclasses import dataclass, fields

import click
from tomlkit.api import dumps, parse
from tomlkit.toml_document import TOMLDocument

from .exceptions import ConfigError

logger = logging.getLogger("songqueue")

APP_DIR = click.get_app_dir("songqueue")
DEFAULT_CONFIG_PATH = os.path.join(APP_DIR, "config.toml")
CURRENT_CONFIG_VERSION = "1.0.0"

BLANK_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.toml")

DEFAULT_DOWNLOADS_FOLDER = os.path.join(APP_DIR, "downloads")
DEFAULT_DATABASE_PATH = os.path.join(APP_DIR, "songqueue.db")


class OutdatedConfigError(ConfigError):
    pass


@dataclass(slots=True)
class PlaybackConfig:
    transition_delay_ms: int
    shuffle: bool
    repeat_mode: str
    cleanup_after_play: bool


@dataclass(slots=True)
class PrefetchConfig:
    enabled: bool
    # 0 means the whole queue
    count: int
    max_concurrent: int
    initial_delay_ms: int
    min_delay_ms: int
    success_step_ms: int
    failure_step_ms: int
    failure_cap_ms: int
    rate_limit_cap_ms: int


@dataclass(slots=True)
class PlayerConfig:
    backends: list[str]
    ipc_timeout: float
    connect_retries: int
    connect_retry_delay: float
    socket_dir: str
    volume: int
    filter_chain: str


@dataclass(slots=True)
class DownloadsConfig:
    folder: str
    audio_format: str
    yt_dlp: str
    chunk_size: int
    verify_ssl: bool


@dataclass(slots=True)
class DatabaseConfig:
    enabled: bool
    path: str
    debounce_ms: int


@dataclass(slots=True)
class MiscConfig:
    version: str


def _plain(value):
    return value.unwrap() if hasattr(value, "unwrap") else value


def _section(toml: TOMLDocument, name: str, cls):
    try:
        table = toml[name]
    except KeyError:
        raise ConfigError(f"Missing [{name}] section in config file")
    expected = {f.name for f in fields(cls)}
    unknown = set(table.keys()) - expected
    if unknown:
        raise ConfigError(f"Unknown keys in [{name}]: {', '.join(sorted(unknown))}")
    missing = expected - set(table.keys())
    if missing:
        raise ConfigError(f"Missing keys in [{name}]: {', '.join(sorted(missing))}")
    # unwrap tomlkit items into plain python values
    return cls(**{k: _plain(table[k]) for k in expected})


@dataclass(slots=True)
class ConfigData:
    toml: TOMLDocument

    playback: PlaybackConfig
    prefetch: PrefetchConfig
    player: PlayerConfig
    downloads: DownloadsConfig
    database: DatabaseConfig
    misc: MiscConfig

    _modified: bool = False

    @classmethod
    def from_toml(cls, toml_str: str):
        toml = parse(toml_str)
        if (v := toml.get("misc", {}).get("version")) != CURRENT_CONFIG_VERSION:
            raise OutdatedConfigError(
                f"Need to update config from {v} to {CURRENT_CONFIG_VERSION}",
            )

        return cls(
            toml=toml,
            playback=_section(toml, "playback", PlaybackConfig),
            prefetch=_section(toml, "prefetch", PrefetchConfig),
            player=_section(toml, "player", PlayerConfig),
            downloads=_section(toml, "downloads", DownloadsConfig),
            database=_section(toml, "database", DatabaseConfig),
            misc=_section(toml, "misc", MiscConfig),
        )

    @classmethod
    def defaults(cls):
        with open(BLANK_CONFIG_PATH) as f:
            return cls.from_toml(f.read())

    def set_modified(self):
        self._modified = True

    @property
    def modified(self):
        return self._modified

    def update_toml(self):
        for name in ("playback", "prefetch", "player", "downloads", "database", "misc"):
            section = getattr(self, name)
            for f in fields(section):
                self.toml[name][f.name] = getattr(section, f.name)

    @property
    def downloads_folder(self) -> str:
        return self.downloads.folder or DEFAULT_DOWNLOADS_FOLDER

    @property
    def database_path(self) -> str:
        return self.database.path or DEFAULT_DATABASE_PATH


class Config:
    """Holds two copies of the settings.

    `file` mirrors what is on disk and is written back by `save_file`.
    `session` may be changed freely at runtime (CLI flags, interactive
    commands) without touching the file.
    """

    def __init__(self, path: str, /):
        self.path = path
        with open(path) as toml_file:
            self.file: ConfigData = ConfigData.from_toml(toml_file.read())

        self.session: ConfigData = copy.deepcopy(self.file)

    def save_file(self):
        if not self.file.modified:
            return

        with open(self.path, "w") as toml_file:
            self.file.update_toml()
            toml_file.write(dumps(self.file.toml))

    @classmethod
    def defaults(cls):
        return cls(BLANK_CONFIG_PATH)

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.save_file()


def set_user_defaults(path: str, /):
    """Update the TOML file at the path with user-specific default values."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    shutil.copy(BLANK_CONFIG_PATH, path)

    with open(path) as f:
        toml = parse(f.read())
    toml["downloads"]["folder"] = DEFAULT_DOWNLOADS_FOLDER  # type: ignore
    toml["database"]["path"] = DEFAULT_DATABASE_PATH  # type: ignore
    with open(path, "w") as f:
        f.write(dumps(toml))
    logger.debug(f"Wrote default config to {path}")
