from ..config import ConfigData
from .base import Progress, ProgressCallback, Resolver, ResolveResult, classify_error, is_rate_limited
from .http import HttpResolver, is_direct_audio
from .ytdlp import YtDlpResolver


class DefaultResolver(Resolver):
    """Downloads direct audio links itself and hands everything else to yt-dlp."""

    def __init__(self, config: ConfigData):
        folder = config.downloads_folder
        self.http = HttpResolver(config.downloads, folder)
        self.ytdlp = YtDlpResolver(config.downloads, folder)

    async def resolve(self, target: str, on_progress: ProgressCallback | None = None) -> ResolveResult:
        if is_direct_audio(target):
            return await self.http.resolve(target, on_progress)
        return await self.ytdlp.resolve(target, on_progress)

    async def close(self):
        await self.http.close()


__all__ = [
    "DefaultResolver",
    "HttpResolver",
    "Progress",
    "ProgressCallback",
    "Resolver",
    "ResolveResult",
    "YtDlpResolver",
    "classify_error",
    "is_rate_limited",
]
