"""Plain data types shared by the queue, the orchestrator and the store."""

import os
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum

from . import metadata


def now_ms() -> float:
    return time.monotonic() * 1000


def is_url(content: str) -> bool:
    return content.startswith(("http://", "https://"))


class ItemKind(str, Enum):
    URL = "url"
    FILE = "file"


class DownloadStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    DownloadStatus.PENDING: 0,
    DownloadStatus.PREPARING: 1,
    DownloadStatus.DOWNLOADING: 2,
    DownloadStatus.READY: 3,
    DownloadStatus.ERROR: 4,
}


class Phase(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    TRANSITIONING = "transitioning"


class RepeatMode(str, Enum):
    OFF = "off"
    ONE = "one"
    ALL = "all"

    @classmethod
    def parse(cls, value: "str | RepeatMode") -> "RepeatMode":
        if isinstance(value, RepeatMode):
            return value
        value = value.lower()
        if value == "none":
            return cls.OFF
        return cls(value)


@dataclass(slots=True)
class QueueItem:
    content: str
    kind: ItemKind = ItemKind.URL
    title: str = ""
    artist: str = ""
    requester_id: str = ""
    origin_channel: str = ""
    source_url: str | None = None
    is_priority: bool = False
    download_status: DownloadStatus = DownloadStatus.PENDING
    download_progress: int = 0
    thumbnail: str | None = None
    duration_ms: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.kind == ItemKind.URL and self.source_url is None and is_url(self.content):
            self.source_url = self.content

    @classmethod
    def from_request(cls, content: str, requester_id: str = "", origin_channel: str = "", title: str = ""):
        """Build an item from raw user input.

        Anything that is not an existing local path is treated as a URL or a
        search query and resolved before playback.
        """
        if not is_url(content) and os.path.isfile(content):
            info = metadata.probe(content)
            return cls(
                content=os.path.abspath(content),
                kind=ItemKind.FILE,
                title=title or info.title or os.path.splitext(os.path.basename(content))[0],
                artist=info.artist or "",
                duration_ms=info.duration_ms,
                requester_id=requester_id,
                origin_channel=origin_channel,
                download_status=DownloadStatus.READY,
                download_progress=100,
            )
        return cls(
            content=content,
            kind=ItemKind.URL,
            title=title or content,
            requester_id=requester_id,
            origin_channel=origin_channel,
        )

    @property
    def is_resolved(self) -> bool:
        return self.kind == ItemKind.FILE

    def advance_status(self, status: DownloadStatus, progress: int | None = None) -> bool:
        """Move the download status forward. Returns False if the move is not allowed."""
        if self.download_status == DownloadStatus.ERROR:
            return False
        if status.rank < self.download_status.rank:
            return False
        changed = status != self.download_status
        self.download_status = status
        if progress is not None:
            progress = max(0, min(100, int(progress)))
            changed = changed or progress != self.download_progress
            self.download_progress = progress
        return changed

    def reset_download(self):
        """Re-arm an item for another resolution attempt."""
        if self.kind == ItemKind.URL:
            self.download_status = DownloadStatus.PENDING
            self.download_progress = 0

    def mark_resolved(self, file_path: str, title: str | None = None, artist: str | None = None,
                      thumbnail: str | None = None, duration_ms: int | None = None):
        if self.source_url is None and self.kind == ItemKind.URL:
            self.source_url = self.content
        self.kind = ItemKind.FILE
        self.content = file_path
        if title:
            self.title = title
        if artist:
            self.artist = artist
        if thumbnail:
            self.thumbnail = thumbnail
        if duration_ms:
            self.duration_ms = duration_ms
        self.download_status = DownloadStatus.READY
        self.download_progress = 100

    def replay_snapshot(self) -> "QueueItem":
        """Copy for repeat-all: points back at the original URL when there is one."""
        if self.source_url:
            return replace(
                self,
                id=uuid.uuid4().hex,
                kind=ItemKind.URL,
                content=self.source_url,
                thumbnail=None,
                download_status=DownloadStatus.PENDING,
                download_progress=0,
            )
        return replace(self, id=uuid.uuid4().hex)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "content": self.content,
            "source_url": self.source_url,
            "title": self.title,
            "artist": self.artist,
            "requester_id": self.requester_id,
            "origin_channel": self.origin_channel,
            "is_priority": self.is_priority,
            "download_status": self.download_status.value,
            "download_progress": self.download_progress,
            "thumbnail": self.thumbnail,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "QueueItem":
        content = d["content"]
        kind = d.get("kind")
        if kind is None:
            kind = ItemKind.URL if is_url(content) else ItemKind.FILE
        item = cls(
            content=content,
            kind=ItemKind(kind),
            title=d.get("title") or "",
            artist=d.get("artist") or "",
            requester_id=d.get("requester_id") or "",
            origin_channel=d.get("origin_channel") or "",
            source_url=d.get("source_url"),
            is_priority=bool(d.get("is_priority", False)),
            download_status=DownloadStatus(d.get("download_status") or "pending"),
            download_progress=int(d.get("download_progress") or 0),
            thumbnail=d.get("thumbnail"),
            duration_ms=d.get("duration_ms"),
        )
        if d.get("id"):
            item.id = d["id"]
        return item


@dataclass(slots=True)
class CurrentSong:
    item: QueueItem
    start_time: float
    paused_at: float | None = None
    elapsed_at_pause: float | None = None

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def elapsed(self, now: float | None = None) -> float:
        if self.paused_at is not None:
            return self.elapsed_at_pause or 0.0
        if now is None:
            now = now_ms()
        return max(0.0, now - self.start_time)

    def pause(self, now: float | None = None):
        if self.paused_at is not None:
            return
        if now is None:
            now = now_ms()
        self.elapsed_at_pause = self.elapsed(now)
        self.paused_at = now

    def resume(self, now: float | None = None):
        if self.paused_at is None:
            return
        if now is None:
            now = now_ms()
        self.start_time += now - self.paused_at
        self.paused_at = None
        self.elapsed_at_pause = None

    def clamp(self, position_ms: float) -> float:
        position_ms = max(0.0, float(position_ms))
        if self.item.duration_ms:
            position_ms = min(position_ms, float(self.item.duration_ms))
        return position_ms

    def seek(self, position_ms: float, now: float | None = None) -> float:
        """Jump to `position_ms` (clamped) and leave the song playing."""
        if now is None:
            now = now_ms()
        position_ms = self.clamp(position_ms)
        self.start_time = now - position_ms
        self.paused_at = None
        self.elapsed_at_pause = None
        return position_ms

    def restart(self, now: float | None = None):
        self.start_time = now_ms() if now is None else now
        self.paused_at = None
        self.elapsed_at_pause = None


@dataclass(slots=True)
class OrchestratorState:
    phase: Phase = Phase.IDLE
    repeat_mode: RepeatMode = RepeatMode.OFF
    shuffle_enabled: bool = False
    songs_played: int = 0
    replay_buffer: list[QueueItem] = field(default_factory=list)
    current: CurrentSong | None = None

    def to_dict(self) -> dict:
        return {
            "repeat_mode": self.repeat_mode.value,
            "shuffle_enabled": self.shuffle_enabled,
            "songs_played": self.songs_played,
            "replay_buffer": [i.to_dict() for i in self.replay_buffer],
            "current": self.current.item.to_dict() if self.current else None,
            "elapsed_ms": self.current.elapsed() if self.current else 0,
        }
