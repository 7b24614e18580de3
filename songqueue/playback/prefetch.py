"""Resolve upcoming queue entries ahead of time so playback does not wait on downloads."""

import asyncio
import logging
import os
from dataclasses import dataclass

from ..config import PrefetchConfig
from ..exceptions import RateLimitedError
from ..models import DownloadStatus, ItemKind, QueueItem, now_ms
from ..resolve import Progress, Resolver, ResolveResult
from .events import EventHub, ItemAdded, ItemUpdated, PlaybackStarted, QueueReordered
from .queue import MediaQueue

logger = logging.getLogger("songqueue")

SKIP_STATUSES = (DownloadStatus.DOWNLOADING, DownloadStatus.READY, DownloadStatus.ERROR)


@dataclass(slots=True)
class Pacer:
    """Gap enforced between two resolution starts, adapted to how the source behaves."""

    delay_ms: float
    min_ms: float
    success_step_ms: float
    failure_step_ms: float
    failure_cap_ms: float
    rate_limit_cap_ms: float
    last_start: float | None = None

    @classmethod
    def from_config(cls, config: PrefetchConfig) -> "Pacer":
        return cls(
            delay_ms=config.initial_delay_ms,
            min_ms=config.min_delay_ms,
            success_step_ms=config.success_step_ms,
            failure_step_ms=config.failure_step_ms,
            failure_cap_ms=config.failure_cap_ms,
            rate_limit_cap_ms=config.rate_limit_cap_ms,
        )

    def on_success(self):
        self.delay_ms = max(self.min_ms, self.delay_ms - self.success_step_ms)

    def on_rate_limited(self):
        self.delay_ms = min(self.rate_limit_cap_ms, self.delay_ms * 2)

    def on_failure(self):
        self.delay_ms = min(self.failure_cap_ms, self.delay_ms + self.failure_step_ms)

    def wait_ms(self, now: float) -> float:
        if self.last_start is None:
            return 0.0
        return max(0.0, self.last_start + self.delay_ms - now)

    def mark_start(self, now: float):
        self.last_start = now


class PrefetchScheduler:
    """Downloads queued URLs in the background, a few at a time.

    `claimed` holds every URL that is being resolved, by a prefetch task or
    by the orchestrator itself, so a URL is never fetched twice at once.
    """

    def __init__(self, queue: MediaQueue, resolver: Resolver, config: PrefetchConfig, hub: EventHub):
        self.queue = queue
        self.resolver = resolver
        self.config = config
        self.hub = hub
        self.enabled = config.enabled
        self.max_concurrent = max(1, config.max_concurrent)
        self.pacer = Pacer.from_config(config)

        self.claimed: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}
        self._pump_task: asyncio.Task | None = None
        self._window: int = config.count
        self.peak_in_flight = 0

    def start(self):
        for event_type in (ItemAdded, QueueReordered, PlaybackStarted):
            self.hub.subscribe(event_type, self._on_event)

    def _on_event(self, _event):
        self.trigger()

    async def stop(self):
        tasks = list(self._tasks.values())
        if self._pump_task is not None:
            tasks.append(self._pump_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pump_task = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def stats(self) -> dict:
        return {
            "in_flight": self.in_flight,
            "peak_in_flight": self.peak_in_flight,
            "delay_ms": self.pacer.delay_ms,
        }

    def task_for(self, url: str) -> asyncio.Task | None:
        return self._tasks.get(url)

    def claim(self, url: str) -> bool:
        if url in self.claimed:
            return False
        self.claimed.add(url)
        return True

    def release(self, url: str):
        if url not in self._tasks:
            self.claimed.discard(url)

    def candidates(self, window: int | None = None) -> list[QueueItem]:
        """Queued URL items inside the look-ahead window that still need resolving."""
        if window is None:
            window = self._window
        items = self.queue.snapshot()
        if window > 0:
            items = items[:window]
        return [
            item
            for item in items
            if item.kind == ItemKind.URL
            and item.download_status not in SKIP_STATUSES
            and item.content not in self.claimed
        ]

    def trigger(self, count: int | None = None):
        """Make sure the pump is working through the current candidates."""
        if not self.enabled:
            return
        if count is None:
            count = self.config.count
        running = self._pump_task is not None and not self._pump_task.done()
        if running and (self._window == 0 or count == 0):
            self._window = 0
        elif running:
            self._window = max(self._window, count)
        else:
            self._window = count
        if not running:
            self._pump_task = asyncio.create_task(self._pump())

    def prefetch(self, count: int | None = None):
        self.trigger(count)

    def prefetch_all(self):
        """Re-arm failed items and resolve every queued URL."""
        for item in self.queue.snapshot():
            if item.kind == ItemKind.URL and item.download_status == DownloadStatus.ERROR:
                item.reset_download()
                self.queue.update(item)
        was_enabled = self.enabled
        self.enabled = True
        self.trigger(0)
        self.enabled = was_enabled

    async def _pump(self):
        while True:
            candidates = self.candidates()
            if not candidates:
                return
            if len(self._tasks) >= self.max_concurrent:
                await asyncio.wait(list(self._tasks.values()), return_when=asyncio.FIRST_COMPLETED)
                continue
            wait = self.pacer.wait_ms(now_ms())
            if wait > 0:
                await asyncio.sleep(wait / 1000)
                continue
            self._start(candidates[0])

    def _start(self, item: QueueItem):
        url = item.content
        self.claimed.add(url)
        self.pacer.mark_start(now_ms())
        task = asyncio.create_task(self._resolve(item, url))
        self._tasks[url] = task
        self.peak_in_flight = max(self.peak_in_flight, len(self._tasks))
        logger.debug(f"Prefetching '{item.title or url}' ({len(self._tasks)} in flight)")

    async def _resolve(self, item: QueueItem, url: str) -> ResolveResult | None:
        item.advance_status(DownloadStatus.PREPARING, 0)
        self.queue.update(item)

        def on_progress(progress: Progress):
            changed_status = item.download_status != DownloadStatus.DOWNLOADING
            if item.advance_status(DownloadStatus.DOWNLOADING, int(progress.percent)):
                if changed_status:
                    self.queue.update(item)
                else:
                    self.hub.publish(ItemUpdated(item))

        try:
            result = await self.resolver.resolve(url, on_progress)
        except asyncio.CancelledError:
            item.reset_download()
            raise
        except RateLimitedError as e:
            self.pacer.on_rate_limited()
            logger.warning(f"Rate limited while prefetching '{item.title or url}', backing off to {self.pacer.delay_ms:.0f}ms: {e}")
            self._mark_failed(item)
            return None
        except Exception as e:
            self.pacer.on_failure()
            logger.error(f"Prefetch of '{item.title or url}' failed: {e}")
            self._mark_failed(item)
            return None
        finally:
            self._tasks.pop(url, None)
            self.claimed.discard(url)

        self.pacer.on_success()
        if item not in self.queue:
            logger.debug(f"'{item.title or url}' left the queue while downloading, discarding")
            discard_result(result)
            return None

        item.mark_resolved(result.file_path, result.title, result.artist, result.thumbnail_path, result.duration_ms)
        self.queue.update(item)
        logger.info(f"Ready: {item.title}")
        return result

    def _mark_failed(self, item: QueueItem):
        item.download_status = DownloadStatus.ERROR
        self.queue.update(item)


def discard_result(result: ResolveResult):
    """Delete the files of a resolution nobody is going to play."""
    for path in (result.file_path, result.thumbnail_path):
        if not path:
            continue
        try:
            os.remove(path)
        except OSError as e:
            logger.debug(f"Could not remove {path}: {e}")
