import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import NamedTuple

from ..exceptions import NotFoundError, RateLimitedError, ResolveError

_RATE_LIMIT = re.compile(r"\b429\b|too many requests|rate[- ]?limit", re.IGNORECASE)
_NOT_FOUND = re.compile(r"\b404\b|not found|video unavailable|no video results", re.IGNORECASE)


@dataclass(slots=True)
class ResolveResult:
    file_path: str
    title: str | None = None
    artist: str | None = None
    thumbnail_path: str | None = None
    duration_ms: int | None = None


class Progress(NamedTuple):
    percent: float
    status: str = "downloading"


ProgressCallback = Callable[[Progress], None]


class Resolver(ABC):
    """Turns a URL or search query into a local audio file."""

    @abstractmethod
    async def resolve(self, target: str, on_progress: ProgressCallback | None = None) -> ResolveResult:
        """Raises RateLimitedError, NotFoundError or ResolveError on failure."""

    async def close(self):
        pass


def is_rate_limited(message: str) -> bool:
    return bool(_RATE_LIMIT.search(message))


def classify_error(message: str, source: str | None = None) -> ResolveError:
    """Map a tool or server error message to the matching exception type."""
    if is_rate_limited(message):
        return RateLimitedError(message, source)
    if _NOT_FOUND.search(message):
        return NotFoundError(message, source)
    return ResolveError(message, source)
