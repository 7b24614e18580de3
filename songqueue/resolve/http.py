"""Direct download of URLs that already point at an audio file."""

import hashlib
import logging
import os
from urllib.parse import unquote, urlparse

import aiofiles
import aiohttp

from .. import metadata
from ..config import DownloadsConfig
from ..exceptions import NotFoundError, RateLimitedError, ResolveError
from .base import Progress, ProgressCallback, Resolver, ResolveResult

logger = logging.getLogger("songqueue")

AUDIO_EXTENSIONS = (".mp3", ".flac", ".ogg", ".oga", ".opus", ".m4a", ".aac", ".wav")


def is_direct_audio(url: str) -> bool:
    path = urlparse(url).path.lower()
    return path.endswith(AUDIO_EXTENSIONS)


def local_name(url: str) -> str:
    path = urlparse(url).path
    ext = os.path.splitext(path)[1].lower() or ".audio"
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    return f"{digest}{ext}"


class HttpResolver(Resolver):
    def __init__(self, config: DownloadsConfig, folder: str, session: aiohttp.ClientSession | None = None):
        self.config = config
        self.folder = folder
        self._session = session
        self._owns_session = session is None

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.config.verify_ssl else False)
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def resolve(self, target: str, on_progress: ProgressCallback | None = None) -> ResolveResult:
        os.makedirs(self.folder, exist_ok=True)
        path = os.path.join(self.folder, local_name(target))
        tmp_path = path + ".part"
        session = await self.get_session()

        try:
            async with session.get(target, allow_redirects=True) as response:
                if response.status == 429:
                    raise RateLimitedError(f"429 Too Many Requests from {urlparse(target).netloc}", target)
                if response.status == 404:
                    raise NotFoundError(f"404 Not Found: {target}", target)
                if response.status >= 400:
                    raise ResolveError(f"HTTP {response.status} for {target}", target)

                total = response.content_length or 0
                received = 0
                last_percent = -1
                async with aiofiles.open(tmp_path, "wb") as file:
                    async for chunk in response.content.iter_chunked(self.config.chunk_size):
                        await file.write(chunk)
                        received += len(chunk)
                        if total and on_progress is not None:
                            percent = int(received * 100 / total)
                            if percent != last_percent:
                                last_percent = percent
                                on_progress(Progress(percent))
        except aiohttp.ClientError as e:
            _discard(tmp_path)
            raise ResolveError(f"Download failed: {e}", target)
        except BaseException:
            # also on cancellation
            _discard(tmp_path)
            raise

        os.replace(tmp_path, path)
        info = metadata.probe(path)
        title = info.title or os.path.splitext(unquote(os.path.basename(urlparse(target).path)))[0]
        logger.debug(f"Downloaded {target} to {path}")
        return ResolveResult(path, title, info.artist, None, info.duration_ms)


def _discard(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
