import asyncio
import logging
import platform

from .. import db
from ..config import Config
from ..models import QueueItem
from ..player import AudioBackend, create_backend
from ..playback import (
    EventHub,
    MediaQueue,
    PlaybackOrchestrator,
    PrefetchScheduler,
    StateChanged,
    StatePersistence,
)
from ..resolve import DefaultResolver, Resolver

logger = logging.getLogger("songqueue")

if platform.system() == "Windows":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class Main:
    """Provides all of the functionality called into by the CLI.

    * Opens the database and restores the previous session
    * Picks the audio player
    * Wires queue, prefetcher, orchestrator and state persistence together

    User input (urls, queries, files) -> Main -> MediaQueue -> speakers
    """

    def __init__(
        self,
        config: Config,
        backend: AudioBackend | None = None,
        resolver: Resolver | None = None,
        database: db.Database | None = None,
    ):
        self.config = config
        c = config.session

        if database is not None:
            self.database = database
        elif c.database.enabled:
            self.database = db.Database.open(c.database_path)
        else:
            self.database = db.Database.dummy()

        self.hub = EventHub()
        self.queue = MediaQueue(self.hub, self.database)
        self.resolver = resolver or DefaultResolver(c)
        self.backend = backend or create_backend(c.player)
        self.prefetch = PrefetchScheduler(self.queue, self.resolver, c.prefetch, self.hub)
        self.orchestrator = PlaybackOrchestrator(
            self.queue,
            self.backend,
            self.resolver,
            self.hub,
            c.playback,
            prefetch=self.prefetch,
        )
        self.persistence = StatePersistence(
            self.database,
            self.orchestrator.state.to_dict,
            c.database.debounce_ms,
        )
        self.hub.subscribe(StateChanged, lambda _e: self.persistence.notify())

    async def start(self):
        restored = self.queue.load()
        self.orchestrator.restore(self.database.load_playback_state())
        if restored:
            logger.info(f"Resuming with {len(self.queue)} queued songs")
        self.prefetch.start()
        self.orchestrator.start()
        self.prefetch.trigger()

    async def add(self, content: str, requester_id: str = "", origin_channel: str = "") -> QueueItem | None:
        item = QueueItem.from_request(content, requester_id, origin_channel)
        added = await self.orchestrator.add(item)
        if added is None:
            logger.info(f"Already queued: {content}")
        return added

    async def add_all(self, contents: list[str], requester_id: str = "") -> list[QueueItem]:
        added = []
        for content in contents:
            item = await self.add(content, requester_id)
            if item is not None:
                added.append(item)
        return added

    async def wait_until_drained(self):
        await self.orchestrator.drained.wait()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.prefetch.stop()
        await self.orchestrator.stop()
        self.persistence.flush()
        await self.resolver.close()
