"""Read title, artist and duration from local audio files."""

import logging
from typing import NamedTuple, Optional

import mutagen
from mutagen import MutagenError

logger = logging.getLogger("songqueue")


class FileInfo(NamedTuple):
    title: Optional[str] = None
    artist: Optional[str] = None
    duration_ms: Optional[int] = None


def _first(tags, key: str) -> Optional[str]:
    if tags is None:
        return None
    value = tags.get(key)
    if not value:
        return None
    if isinstance(value, list):
        value = value[0]
    return str(value).strip() or None


def probe(path: str) -> FileInfo:
    """Best effort. Returns an empty FileInfo when mutagen cannot read the file."""
    try:
        audio = mutagen.File(path, easy=True)
    except (MutagenError, OSError) as e:
        logger.debug(f"Could not read tags from {path}: {e}")
        return FileInfo()
    if audio is None:
        return FileInfo()

    duration_ms = None
    length = getattr(audio.info, "length", None)
    if length:
        duration_ms = int(length * 1000)

    return FileInfo(_first(audio.tags, "title"), _first(audio.tags, "artist"), duration_ms)
