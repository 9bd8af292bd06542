"""
Probing Scheduler

Drives stream liveness probing for the channels currently on display.
Channels are queued FIFO; whenever a probe slot frees up, the first queued
channel that is visible is dispatched, falling back to the first queued
channel. At most `max_concurrent` probes run at once and a channel is never
probed twice concurrently.

All status and cache updates happen on the dispatcher loop, which consumes
finished probe tasks; results that arrive after `close()` are discarded.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from opentv.models.channel import Channel, Stream
from opentv.models.probe import ProbeCacheEntry, ProbeResult, ProbeStatus
from opentv.services.probe_cache import ProbeCache
from opentv.services.stream_prober import DEFAULT_PROBE_TIMEOUT, StreamProber, probe_channel_streams

logger = logging.getLogger(__name__)

FetchStreams = Callable[[str], Awaitable[list[Stream]]]
StatusListener = Callable[[str, ProbeStatus], None]


class ProbeScheduler:
    """Bounded-concurrency, visibility-aware probe queue."""

    MAX_CONCURRENT_PROBES = 3

    def __init__(
        self,
        prober: StreamProber,
        cache: ProbeCache,
        fetch_streams: FetchStreams,
        max_concurrent: int = MAX_CONCURRENT_PROBES,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        self.prober = prober
        self.cache = cache
        self.fetch_streams = fetch_streams
        self.max_concurrent = max_concurrent
        self.probe_timeout = probe_timeout

        self._channel_ids: list[str] = []
        self._status: dict[str, ProbeStatus] = {}
        self._results: dict[str, ProbeCacheEntry] = {}
        self._queue: list[str] = []
        self._visible: set[str] = set()
        self._in_flight: dict[asyncio.Task, str] = {}
        self._listeners: list[StatusListener] = []

        self._active = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stats = {"probed": 0, "working": 0, "failed": 0}

    # ==================== PUBLIC API ====================

    @property
    def status_by_channel_id(self) -> dict[str, ProbeStatus]:
        """Snapshot of the per-channel status map for the current channel list."""
        return dict(self._status)

    @property
    def is_any_pending(self) -> bool:
        """True while any channel is still pending or probing."""
        return any(s in (ProbeStatus.PENDING, ProbeStatus.PROBING) for s in self._status.values())

    @property
    def working_stream_urls(self) -> dict[str, list[str]]:
        """Known working stream URLs per channel, from this session's probes."""
        return {
            channel_id: entry.working_stream_urls
            for channel_id, entry in self._results.items()
            if entry.status == "working" and channel_id in self._channel_ids
        }

    @property
    def active(self) -> bool:
        return self._active

    def get_stats(self) -> dict:
        """Get scheduler statistics."""
        return {
            **self._stats,
            "running": self._active,
            "queued": len(self._queue),
            "in_flight": len(self._in_flight),
            "channels": len(self._channel_ids),
        }

    def add_listener(self, listener: StatusListener):
        """Call `listener(channel_id, status)` on every status transition."""
        self._listeners.append(listener)

    async def start(self):
        """Start the dispatcher loop."""
        if self._active:
            logger.warning("Probe scheduler already running")
            return
        self._active = True
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info(f"Probe scheduler started (max {self.max_concurrent} concurrent probes)")

    async def close(self):
        """Stop probing. In-flight probes are cancelled and their results discarded."""
        if not self._active:
            return
        self._active = False

        tasks = list(self._in_flight)
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._in_flight.clear()
        self._queue.clear()
        self._idle.set()
        logger.info("Probe scheduler stopped")

    async def submit(self, channels: Iterable[Channel | str]):
        """
        Replace the channel list under consideration.

        New channels start at their cached verdict when one is fresh, otherwise
        they become pending and are queued. Resubmitting channels that are
        queued, in flight or already settled is a no-op.
        """
        if not self._active:
            return

        channel_ids = []
        for channel in channels:
            channel_id = channel if isinstance(channel, str) else channel.channel_id
            if channel_id not in channel_ids:
                channel_ids.append(channel_id)

        keep = set(channel_ids)
        in_flight = set(self._in_flight.values())
        self._queue = [cid for cid in self._queue if cid in keep]
        self._status = {cid: s for cid, s in self._status.items() if cid in keep}
        self._results = {cid: e for cid, e in self._results.items() if cid in keep}
        self._visible &= keep
        self._channel_ids = channel_ids

        for channel_id in channel_ids:
            # Already scheduled: restore the status dropped if it left the list meanwhile
            if channel_id in in_flight:
                if self._status.get(channel_id) != ProbeStatus.PROBING:
                    self._set_status(channel_id, ProbeStatus.PROBING)
                continue
            if channel_id in self._queue:
                if self._status.get(channel_id) != ProbeStatus.PENDING:
                    self._set_status(channel_id, ProbeStatus.PENDING)
                continue

            entry = await self.cache.get(channel_id) or self._results.get(channel_id)
            if entry is not None and self.cache.is_fresh(entry):
                self._results[channel_id] = entry
                if self._status.get(channel_id) != entry.status:
                    self._set_status(channel_id, ProbeStatus(entry.status))
                continue

            # Never probed, or its verdict expired: start a fresh pass
            self._set_status(channel_id, ProbeStatus.PENDING)
            self._queue.append(channel_id)

        if self._queue:
            self._idle.clear()
        self._wakeup.set()

    def set_visible(self, channel_id: str, visible: bool):
        """Mark a listed channel as on-screen (or not); visible channels are probed first."""
        if visible and channel_id in self._channel_ids:
            self._visible.add(channel_id)
        else:
            self._visible.discard(channel_id)
        self._wakeup.set()

    async def wait_idle(self):
        """Wait until nothing is queued or in flight."""
        await self._idle.wait()

    # ==================== DISPATCH ====================

    def _next_channel(self) -> Optional[str]:
        for channel_id in self._queue:
            if channel_id in self._visible:
                break
        else:
            channel_id = self._queue[0] if self._queue else None
        if channel_id is not None:
            self._queue.remove(channel_id)
        return channel_id

    def _fill_slots(self):
        while self._queue and len(self._in_flight) < self.max_concurrent:
            channel_id = self._next_channel()
            self._set_status(channel_id, ProbeStatus.PROBING)
            task = asyncio.create_task(self._probe_channel(channel_id))
            self._in_flight[task] = channel_id

    async def _dispatch_loop(self):
        """Main dispatcher loop: fill free slots, then consume finished probes."""
        while self._active:
            self._wakeup.clear()
            self._fill_slots()
            if not self._queue and not self._in_flight:
                self._idle.set()

            wakeup = asyncio.create_task(self._wakeup.wait())
            try:
                done, _ = await asyncio.wait(
                    {wakeup, *self._in_flight},
                    return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                wakeup.cancel()

            for task in done:
                if task is wakeup:
                    continue
                channel_id = self._in_flight.pop(task)
                await self._complete(channel_id, task)

    async def _probe_channel(self, channel_id: str) -> ProbeResult:
        """Fetch candidate streams and probe them in order."""
        try:
            streams = await self.fetch_streams(channel_id)
        except Exception as e:
            logger.warning(f"Failed to fetch streams for {channel_id}: {e}")
            streams = []

        if not streams:
            return ProbeResult(has_working=False)
        return await probe_channel_streams(self.prober, streams, timeout=self.probe_timeout)

    async def _complete(self, channel_id: str, task: asyncio.Task):
        if not self._active:
            return

        if task.cancelled():
            result = ProbeResult(has_working=False)
        elif task.exception() is not None:
            logger.error(f"Probe of {channel_id} crashed: {task.exception()}")
            result = ProbeResult(has_working=False)
        else:
            result = task.result()

        status = ProbeStatus.WORKING if result.has_working else ProbeStatus.FAILED
        entry = ProbeCacheEntry(
            status=status.value,
            working_stream_urls=result.working_stream_urls,
            timestamp=self.cache.clock(),
        )
        # Record locally before the cache write yields, so a concurrent submit sees it
        self._results[channel_id] = entry
        self._stats["probed"] += 1
        self._stats[status.value] += 1
        logger.debug(f"Probed {channel_id}: {status.value}")

        if channel_id in self._channel_ids:
            self._set_status(channel_id, status)
        else:
            self._status.pop(channel_id, None)

        await self.cache.put(channel_id, entry)

    def _set_status(self, channel_id: str, status: ProbeStatus):
        self._status[channel_id] = status
        for listener in self._listeners:
            try:
                listener(channel_id, status)
            except Exception as e:
                logger.error(f"Probe status listener failed: {e}")


async def probe_channels(
    channels: Iterable[Channel | str],
    fetch_streams: FetchStreams,
    prober: StreamProber,
    cache: ProbeCache,
    max_concurrent: int = ProbeScheduler.MAX_CONCURRENT_PROBES,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> ProbeScheduler:
    """Start a scheduler probing `channels`. Callers own the returned scheduler and must close it."""
    scheduler = ProbeScheduler(
        prober,
        cache,
        fetch_streams,
        max_concurrent=max_concurrent,
        probe_timeout=probe_timeout,
    )
    await scheduler.start()
    await scheduler.submit(channels)
    return scheduler
