"""Resolve page URLs and search queries by running yt-dlp."""

import asyncio
import json
import logging
import os
import re

from ..config import DownloadsConfig
from ..exceptions import ResolveError
from ..models import is_url
from ..player.backend import terminate_process
from .base import Progress, ProgressCallback, Resolver, ResolveResult, classify_error

logger = logging.getLogger("songqueue")

PROGRESS_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
# printed once the final file is in place
RESULT_TEMPLATE = "after_move:%(.{filepath,title,uploader,artist,duration,id})j"
THUMBNAIL_EXTENSIONS = (".jpg", ".webp", ".png")


def build_target(target: str) -> str:
    """Plain text becomes a search for the single best match."""
    if is_url(target) or target.startswith("ytsearch"):
        return target
    return f"ytsearch1:{target}"


def parse_progress(line: str) -> float | None:
    match = PROGRESS_RE.search(line)
    if match is None:
        return None
    return float(match.group(1))


class YtDlpResolver(Resolver):
    def __init__(self, config: DownloadsConfig, folder: str):
        self.config = config
        self.folder = folder

    def _build_args(self, target: str) -> list[str]:
        return [
            self.config.yt_dlp,
            "--no-playlist",
            "--newline",
            "--progress",
            "--no-colors",
            "--extract-audio",
            "--audio-format",
            self.config.audio_format,
            "--write-thumbnail",
            "--convert-thumbnails",
            "jpg",
            "--output",
            os.path.join(self.folder, "%(id)s.%(ext)s"),
            "--print",
            RESULT_TEMPLATE,
            build_target(target),
        ]

    async def resolve(self, target: str, on_progress: ProgressCallback | None = None) -> ResolveResult:
        os.makedirs(self.folder, exist_ok=True)
        args = self._build_args(target)
        logger.debug(f"Running {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise ResolveError(f"{self.config.yt_dlp} not found. Install yt-dlp to play URLs.", target)

        info = None
        errors = []
        assert proc.stdout is not None
        try:
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                percent = parse_progress(line)
                if percent is not None:
                    if on_progress is not None:
                        on_progress(Progress(percent))
                elif line.startswith("{"):
                    try:
                        info = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"yt-dlp printed unparseable result: {line}")
                elif line.startswith("ERROR"):
                    errors.append(line)
            returncode = await proc.wait()
        except BaseException:
            # cancelled or failed mid-download, do not leave yt-dlp writing files
            await terminate_process(proc)
            raise

        if returncode != 0 or info is None:
            message = errors[-1] if errors else f"yt-dlp exited with code {returncode}"
            raise classify_error(message, target)

        return self._result(info)

    def _result(self, info: dict) -> ResolveResult:
        file_path = info.get("filepath")
        if not file_path or not os.path.exists(file_path):
            raise ResolveError(f"yt-dlp reported a missing file: {file_path}")

        thumbnail = None
        stem = os.path.splitext(file_path)[0]
        for ext in THUMBNAIL_EXTENSIONS:
            if os.path.exists(stem + ext):
                thumbnail = stem + ext
                break

        duration = info.get("duration")
        return ResolveResult(
            file_path=file_path,
            title=info.get("title"),
            artist=info.get("artist") or info.get("uploader"),
            thumbnail_path=thumbnail,
            duration_ms=int(duration * 1000) if duration else None,
        )
