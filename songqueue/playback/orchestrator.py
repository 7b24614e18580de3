"""The playback state machine.

One task owns the queue and the playback state. Everything else talks to it
by posting messages to its mailbox, so state changes happen strictly in the
order they were requested. Downloads and player I/O report back through the
same mailbox.

    Idle --queue not empty--> Transitioning --resolved & started--> Playing
    Playing <--pause/resume--> Paused
    Playing/Paused --finished--> Idle (or Playing again for repeat one)
"""

import asyncio
import logging
import os
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..config import PlaybackConfig
from ..exceptions import NoBackendError
from ..models import (
    CurrentSong,
    DownloadStatus,
    ItemKind,
    OrchestratorState,
    Phase,
    QueueItem,
    RepeatMode,
    now_ms,
)
from ..player import AudioBackend, EndReason, Finished, Started
from ..resolve import Progress, Resolver, ResolveResult
from .events import EventHub, ItemAdded, PlaybackEnded, PlaybackStarted, StateChanged
from .prefetch import PrefetchScheduler, discard_result
from .queue import MediaQueue
from .repeat import ReplayBuffer
from .shuffle import weighted_index

logger = logging.getLogger("songqueue")

# controls that wait for playback to start when they arrive mid-transition
DEFERRABLE = ("pause", "resume", "seek", "skip")


@dataclass
class _Wake:
    pass


@dataclass
class _Shutdown:
    pass


@dataclass
class _Call:
    fn: Callable
    args: tuple
    future: asyncio.Future


@dataclass
class _Control:
    name: str
    args: tuple
    future: asyncio.Future | None = None


@dataclass
class _Resolved:
    attempt: int
    item: QueueItem
    result: ResolveResult | None = None
    error: BaseException | None = None


@dataclass
class _Progress:
    attempt: int
    item: QueueItem
    progress: Progress


@dataclass
class _Advance:
    attempt: int


@dataclass
class _Replay:
    attempt: int


@dataclass
class _Deferred:
    controls: list[_Control] = field(default_factory=list)


class PlaybackOrchestrator:
    def __init__(
        self,
        queue: MediaQueue,
        backend: AudioBackend,
        resolver: Resolver,
        hub: EventHub,
        config: PlaybackConfig,
        prefetch: PrefetchScheduler | None = None,
        rng: random.Random | None = None,
    ):
        self.queue = queue
        self.backend = backend
        self.resolver = resolver
        self.hub = hub
        self.config = config
        self.prefetch = prefetch
        self.rng = rng or random.Random()

        self.state = OrchestratorState(
            repeat_mode=RepeatMode.parse(config.repeat_mode),
            shuffle_enabled=config.shuffle,
        )
        self.replay = ReplayBuffer(self.state.replay_buffer)

        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        # bumped for every selection so late results of an abandoned attempt are ignored
        self._attempt = 0
        self._generation: int | None = None
        self._resolving: asyncio.Task | None = None
        self._deferred = _Deferred()
        self._advance_handle: asyncio.TimerHandle | None = None
        self._backend_failed = False
        self._replay_pending = False
        # item id -> position to continue from, for the song interrupted by the last shutdown
        self._resume_at: dict[str, float] = {}
        self.drained = asyncio.Event()

        backend.set_event_handler(self._post)
        hub.subscribe(ItemAdded, lambda _e: self._post(_Wake()))

    # ------------------------------------------------------------------
    # lifecycle

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            self._post(_Wake())

    async def stop(self):
        """Stop playback and the actor task."""
        if self._task is None:
            return
        self._post(_Shutdown())
        await self._task
        self._task = None
        if self._resolving is not None:
            self._resolving.cancel()
        self._cancel_advance()
        self._generation = None
        await self.backend.shutdown()

    def _post(self, message):
        self._mailbox.put_nowait(message)

    async def _run(self):
        while True:
            message = await self._mailbox.get()
            if isinstance(message, _Shutdown):
                break
            try:
                await self._handle(message)
            except Exception as e:
                logger.error(f"Error in playback loop handling {type(message).__name__}: {e}", exc_info=True)
                future = getattr(message, "future", None)
                if future is not None and not future.done():
                    future.set_exception(e)
            self._update_drained()

    async def _handle(self, message):
        if isinstance(message, _Wake):
            await self._maybe_start()
        elif isinstance(message, _Call):
            result = message.fn(*message.args)
            if not message.future.done():
                message.future.set_result(result)
        elif isinstance(message, _Control):
            result = await self._control(message)
            if message.future is not None and not message.future.done():
                message.future.set_result(result)
        elif isinstance(message, _Resolved):
            await self._on_resolved(message)
        elif isinstance(message, _Progress):
            self._on_progress(message)
        elif isinstance(message, Started):
            logger.debug(f"Backend session {message.generation} started")
        elif isinstance(message, Finished):
            await self._on_finished(message)
        elif isinstance(message, _Advance):
            if message.attempt == self._attempt:
                self._advance_handle = None
                self._set_phase(Phase.IDLE)
                await self._maybe_start()
        elif isinstance(message, _Replay):
            await self._on_replay(message)
        else:
            logger.warning(f"Unknown playback message {message!r}")

    def _update_drained(self):
        if self.state.phase == Phase.IDLE and not self.queue and self._advance_handle is None:
            self.drained.set()
        else:
            self.drained.clear()

    # ------------------------------------------------------------------
    # public API, safe to call from any task

    async def _request(self, message) -> Any:
        message.future = asyncio.get_running_loop().create_future()
        self._post(message)
        return await message.future

    async def call(self, fn: Callable, *args):
        """Run `fn(*args)` inside the actor and return its result."""
        return await self._request(_Call(fn, args, None))  # type: ignore[arg-type]

    async def add(self, item: QueueItem) -> QueueItem | None:
        return await self.call(self.queue.add, item)

    async def add_first(self, item: QueueItem) -> QueueItem:
        return await self.call(self.queue.add_first, item)

    async def remove(self, item_id: str) -> QueueItem | None:
        return await self.call(self.queue.remove_by_id, item_id)

    async def reorder(self, from_index: int, to_index: int) -> bool:
        return await self.call(self.queue.reorder, from_index, to_index)

    async def pause(self) -> bool:
        return await self._request(_Control("pause", ()))

    async def resume(self) -> bool:
        return await self._request(_Control("resume", ()))

    async def seek(self, position_ms: float) -> bool:
        return await self._request(_Control("seek", (position_ms,)))

    async def skip(self) -> bool:
        return await self._request(_Control("skip", ()))

    async def update_filters(self, chain: str) -> bool:
        return await self._request(_Control("filters", (chain,)))

    async def set_volume(self, volume: int) -> bool:
        return await self._request(_Control("volume", (volume,)))

    async def set_repeat_mode(self, mode: RepeatMode | str) -> RepeatMode:
        return await self._request(_Control("repeat", (RepeatMode.parse(mode),)))

    async def set_shuffle(self, enabled: bool) -> bool:
        return await self._request(_Control("shuffle", (enabled,)))

    async def reset_session(self) -> bool:
        return await self._request(_Control("reset", ()))

    async def prefetch_all(self) -> bool:
        return await self._request(_Control("prefetch_all", ()))

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def current(self) -> CurrentSong | None:
        return self.state.current

    def position_ms(self) -> float:
        if self.state.current is None:
            return 0.0
        return self.state.current.elapsed()

    # ------------------------------------------------------------------
    # state restore

    def restore(self, saved: dict | None):
        """Apply state saved by a previous run. Call before `start`."""
        if not saved:
            return
        self.state.songs_played = int(saved.get("songs_played", 0))
        self.state.repeat_mode = RepeatMode.parse(saved.get("repeat_mode", self.state.repeat_mode))
        self.state.shuffle_enabled = bool(saved.get("shuffle_enabled", self.state.shuffle_enabled))
        self.replay.clear()
        for row in saved.get("replay_buffer") or []:
            try:
                self.replay.items.append(QueueItem.from_dict(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping invalid replay entry: {e}")

        current = saved.get("current")
        if not current:
            return
        try:
            item = QueueItem.from_dict(current)
        except (KeyError, ValueError) as e:
            logger.warning(f"Could not restore the interrupted song: {e}")
            return
        if item.kind == ItemKind.FILE and not os.path.exists(item.content):
            if not item.source_url:
                logger.info(f"Interrupted song '{item.title}' is gone, not restoring it")
                return
            item.kind = ItemKind.URL
            item.content = item.source_url
            item.reset_download()
        logger.info(f"Putting interrupted song '{item.title or item.content}' back at the front")
        restored = self.queue.add_first(item, keep_priority=True)
        offset = float(saved.get("elapsed_ms") or 0)
        if offset > 0:
            self._resume_at[restored.id] = offset

    # ------------------------------------------------------------------
    # selection and resolution

    def _set_phase(self, phase: Phase):
        changed = phase != self.state.phase
        self.state.phase = phase
        if changed:
            logger.debug(f"Playback phase -> {phase.value}")
        self._publish_state()

    def _publish_state(self):
        self.hub.publish(StateChanged(self.state.phase, self.state.songs_played))

    def _select_index(self) -> int:
        if self.state.shuffle_enabled and len(self.queue) > 1:
            return weighted_index(self.queue.snapshot(), self.rng)
        return 0

    async def _maybe_start(self):
        if self.state.phase != Phase.IDLE or self._advance_handle is not None:
            return
        if not self.queue and self.state.repeat_mode == RepeatMode.ALL and len(self.replay):
            for item in self.replay.drain(self.state.shuffle_enabled, self.rng):
                self.queue.add(item, keep_priority=True)
        if not self.queue:
            return
        if not self.backend.available or self._backend_failed:
            if not self._backend_failed:
                logger.error("No audio player available, leaving the queue untouched")
                self._backend_failed = True
            return

        item = self.queue.snapshot()[self._select_index()]
        self._attempt += 1
        attempt = self._attempt
        self._deferred = _Deferred()
        self._set_phase(Phase.TRANSITIONING)

        if item.kind == ItemKind.FILE:
            await self._begin_play(item, attempt)
            return

        logger.info(f"Resolving '{item.title or item.content}'")
        if item.download_status == DownloadStatus.ERROR:
            item.reset_download()
        if item.advance_status(DownloadStatus.PREPARING):
            self.queue.update(item)
        self._resolving = asyncio.create_task(self._resolve(item, attempt))

    async def _resolve(self, item: QueueItem, attempt: int):
        url = item.content
        claimed = False
        try:
            if self.prefetch is not None:
                task = self.prefetch.task_for(url)
                if task is not None:
                    logger.debug(f"Waiting for the running prefetch of '{item.title or url}'")
                    await asyncio.shield(task)
                    if item.kind == ItemKind.FILE:
                        self._post(_Resolved(attempt, item))
                        return
                claimed = self.prefetch.claim(url)

            def on_progress(progress: Progress):
                self._post(_Progress(attempt, item, progress))

            result = await self.resolver.resolve(url, on_progress)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post(_Resolved(attempt, item, error=e))
        else:
            self._post(_Resolved(attempt, item, result))
        finally:
            if claimed and self.prefetch is not None:
                self.prefetch.release(url)

    def _on_progress(self, message: _Progress):
        if message.attempt != self._attempt:
            return
        item = message.item
        before = item.download_status
        if item.advance_status(DownloadStatus.DOWNLOADING, int(message.progress.percent)):
            if before != item.download_status:
                self.queue.update(item)

    async def _on_resolved(self, message: _Resolved):
        if message.attempt != self._attempt:
            logger.debug("Ignoring result of an abandoned resolution")
            return
        self._resolving = None
        item = message.item
        if message.error is not None:
            self._fail(item, f"could not resolve: {message.error}")
            return
        if message.result is not None:
            r = message.result
            if item not in self.queue:
                logger.info(f"'{item.title or item.content}' was removed while downloading, discarding it")
                discard_result(r)
                self._set_phase(Phase.IDLE)
                await self._maybe_start()
                return
            item.mark_resolved(r.file_path, r.title, r.artist, r.thumbnail_path, r.duration_ms)
            self.queue.update(item)
        await self._begin_play(item, message.attempt)

    # ------------------------------------------------------------------
    # playing

    async def _begin_play(self, item: QueueItem, attempt: int):
        index = self.queue.index_of(item.id)
        if index is None:
            logger.info(f"'{item.title or item.content}' was removed before it could play")
            self._set_phase(Phase.IDLE)
            await self._maybe_start()
            return
        if not os.path.exists(item.content):
            self._fail(item, f"file not found: {item.content}")
            return

        offset = self._resume_at.pop(item.id, 0.0)
        if item.duration_ms and offset >= item.duration_ms:
            offset = 0.0
        self.queue.remove_at(index)
        try:
            generation = await self.backend.play(item.content, offset)
        except NoBackendError as e:
            logger.error(str(e))
            self._backend_failed = True
            self.queue.add_first(item, keep_priority=True)
            if offset:
                self._resume_at[item.id] = offset
            self._set_phase(Phase.IDLE)
            return
        except Exception as e:
            self._fail(item, f"player failed to start: {e}")
            return

        self._generation = generation
        self.state.current = CurrentSong(item, now_ms() - offset)
        self._set_phase(Phase.PLAYING)
        logger.info(f"Now playing: {item.title or item.content}")
        self.hub.publish(PlaybackStarted(item))

        deferred = self._deferred.controls
        self._deferred = _Deferred()
        for control in deferred:
            await self._control(control)

    def _fail(self, item: QueueItem, message: str):
        """Consume `item` after a failed attempt and continue after the transition delay."""
        logger.error(f"Skipping '{item.title or item.content}': {message}")
        item.download_status = DownloadStatus.ERROR
        self.queue.remove_by_id(item.id)
        self._cleanup(item)
        self.state.current = None
        self._deferred = _Deferred()
        self.hub.publish(PlaybackEnded(item, False, message))
        self._schedule(_Advance(self._attempt))

    def _schedule(self, message):
        self._cancel_advance()
        loop = asyncio.get_running_loop()
        self._advance_handle = loop.call_later(
            self.config.transition_delay_ms / 1000, self._post, message
        )

    def _cancel_advance(self):
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None

    async def _on_finished(self, event: Finished):
        """Handle the end of the current backend session.

        Only a natural end restarts the song under repeat one. A skip always
        moves on to the next song and, like a natural end, counts as played.
        """
        if event.generation != self._generation:
            logger.debug(f"Ignoring stale finish from session {event.generation}")
            return
        self._generation = None
        current = self.state.current
        if current is None:
            return
        item = current.item
        success = event.reason != EndReason.ERROR

        if success and event.reason == EndReason.ENDED and self.state.repeat_mode == RepeatMode.ONE:
            logger.info(f"Repeating '{item.title or item.content}'")
            self._set_phase(Phase.TRANSITIONING)
            self._replay_pending = True
            self._schedule(_Replay(self._attempt))
            return

        if not success:
            logger.error(f"Playback of '{item.title or item.content}' failed: {event.message}")
        self._complete(item, success, event.reason)

    def _complete(self, item: QueueItem, success: bool, reason: EndReason):
        """Account for a song that is done and move on after the transition delay."""
        if success:
            self.state.songs_played += 1
            if self.state.repeat_mode == RepeatMode.ALL:
                self.replay.record(item)
            logger.info(f"Finished '{item.title or item.content}' ({reason.value})")

        self.state.current = None
        self._cleanup(item)
        self.hub.publish(PlaybackEnded(item, success, reason.value))
        self._set_phase(Phase.IDLE)
        self._schedule(_Advance(self._attempt))

    async def _on_replay(self, message: _Replay):
        if message.attempt != self._attempt or self.state.current is None:
            return
        self._advance_handle = None
        self._replay_pending = False
        current = self.state.current
        try:
            generation = await self.backend.play(current.item.content, 0)
        except Exception as e:
            self._fail(current.item, f"could not restart: {e}")
            return
        self._generation = generation
        current.restart()
        self._set_phase(Phase.PLAYING)
        self.hub.publish(PlaybackStarted(current.item))

        deferred = self._deferred.controls
        self._deferred = _Deferred()
        for control in deferred:
            await self._control(control)

    def _cleanup(self, item: QueueItem):
        # only files we downloaded ourselves
        if not self.config.cleanup_after_play or not item.source_url or item.kind != ItemKind.FILE:
            return
        for path in (item.content, item.thumbnail):
            if path and os.path.exists(path):
                try:
                    os.remove(path)
                    logger.debug(f"Removed {path}")
                except OSError as e:
                    logger.warning(f"Could not remove {path}: {e}")

    # ------------------------------------------------------------------
    # controls

    async def _control(self, control: _Control):
        name = control.name
        phase = self.state.phase
        if name == "skip" and self._replay_pending:
            return self._skip_replay()
        if name in DEFERRABLE and phase == Phase.TRANSITIONING:
            logger.debug(f"Deferring {name} until playback starts")
            self._deferred.controls.append(_Control(name, control.args))
            return True
        handler = getattr(self, f"_do_{name}")
        return await handler(*control.args)

    def _skip_replay(self) -> bool:
        """Skip during the repeat-one gap: drop the restart and advance instead."""
        current = self.state.current
        self._cancel_advance()
        self._replay_pending = False
        if current is None:
            return False
        self._complete(current.item, True, EndReason.SKIPPED)
        return True

    async def _do_pause(self) -> bool:
        if self.state.phase != Phase.PLAYING or self.state.current is None:
            return False
        if not await self.backend.pause():
            return False
        self.state.current.pause()
        self._set_phase(Phase.PAUSED)
        return True

    async def _do_resume(self) -> bool:
        if self.state.phase != Phase.PAUSED or self.state.current is None:
            return False
        if not await self.backend.resume():
            return False
        self.state.current.resume()
        self._set_phase(Phase.PLAYING)
        return True

    async def _do_seek(self, position_ms: float) -> bool:
        current = self.state.current
        if self.state.phase not in (Phase.PLAYING, Phase.PAUSED) or current is None:
            return False
        position_ms = current.clamp(position_ms)
        if not await self.backend.seek(position_ms):
            return False
        if self.state.phase == Phase.PAUSED and not await self.backend.resume():
            logger.warning("Seek applied but the player did not resume")
        current.seek(position_ms)
        self._set_phase(Phase.PLAYING)
        return True

    async def _do_skip(self) -> bool:
        if self.state.phase not in (Phase.PLAYING, Phase.PAUSED):
            return False
        logger.info("Skipping current song")
        if not await self.backend.stop():
            return False
        # completes when the backend's Finished event comes back through the mailbox
        self._set_phase(Phase.TRANSITIONING)
        return True

    async def _do_filters(self, chain: str) -> bool:
        return await self.backend.update_filters(chain)

    async def _do_volume(self, volume: int) -> bool:
        return await self.backend.set_volume(volume)

    async def _do_repeat(self, mode: RepeatMode) -> RepeatMode:
        self.state.repeat_mode = mode
        if mode != RepeatMode.ALL:
            self.replay.clear()
        logger.info(f"Repeat mode: {mode.value}")
        self._publish_state()
        return mode

    async def _do_shuffle(self, enabled: bool) -> bool:
        self.state.shuffle_enabled = enabled
        logger.info(f"Shuffle {'on' if enabled else 'off'}")
        self._publish_state()
        return enabled

    async def _do_prefetch_all(self) -> bool:
        if self.prefetch is None:
            return False
        self.prefetch.prefetch_all()
        return True

    async def _do_reset(self) -> bool:
        logger.info("Resetting session")
        self._attempt += 1
        self._generation = None
        self._cancel_advance()
        self._replay_pending = False
        self._resume_at.clear()
        if self._resolving is not None:
            self._resolving.cancel()
            self._resolving = None
        self._deferred = _Deferred()
        await self.backend.stop()
        if self.state.current is not None:
            self._cleanup(self.state.current.item)
        self.state.current = None
        self.queue.clear()
        self.replay.clear()
        self.state.songs_played = 0
        self._set_phase(Phase.IDLE)
        return True
