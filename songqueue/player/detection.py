"""Find which audio players are installed."""

import logging
import shutil
from typing import NamedTuple, Optional

from ..config import PlayerConfig
from ..exceptions import NoBackendError
from .backend import AudioBackend
from .ffplay import FfplayBackend
from .mpv import MpvBackend

logger = logging.getLogger("songqueue")

BACKENDS: dict[str, type[AudioBackend]] = {
    "mpv": MpvBackend,
    "ffplay": FfplayBackend,
}


class DetectionResult(NamedTuple):
    """Which player was picked, and where it lives."""
    name: Optional[str]
    executable: Optional[str]
    searched: list[str]


def detect_player(names: list[str]) -> DetectionResult:
    """Return the first player in `names` that is on PATH."""
    searched = []
    for name in names:
        if name not in BACKENDS:
            logger.warning(f"Unknown audio backend '{name}' in config, skipping")
            continue
        searched.append(name)
        executable = shutil.which(name)
        if executable is not None:
            logger.debug(f"Found {name} at {executable}")
            return DetectionResult(name, executable, searched)
    return DetectionResult(None, None, searched)


class UnavailableBackend(AudioBackend):
    """Stands in when no player is installed. Every `play` fails."""

    name = "none"
    available = False

    def __init__(self, config: PlayerConfig, searched: list[str] | None = None):
        super().__init__(config)
        self.searched = searched or []

    async def play(self, file_path: str, offset_ms: float = 0) -> int:
        raise NoBackendError(self.searched)

    async def stop(self) -> bool:
        return False

    async def pause(self) -> bool:
        return False

    async def resume(self) -> bool:
        return False

    async def seek(self, position_ms: float) -> bool:
        return False

    async def update_filters(self, chain: str) -> bool:
        self.filter_chain = chain
        return False

    async def set_volume(self, volume: int) -> bool:
        self.volume = volume
        return False


def create_backend(config: PlayerConfig) -> AudioBackend:
    """Build the backend for the first installed player, decided once at startup."""
    result = detect_player(config.backends)
    if result.name is None:
        logger.error(f"No audio player found (searched: {', '.join(result.searched)}). Install mpv or ffplay.")
        return UnavailableBackend(config, result.searched)
    logger.info(f"Using {result.name} for playback")
    return BACKENDS[result.name](config, result.executable)
