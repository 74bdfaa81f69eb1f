"""
Solar Charge Port Manager - Synchronization Scheduler
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Change-feed listener with fixed-window debounce
v1.0.0 (2026-10-02): Initial named refresh tasks with visibility pause

Owns one timer task per named data source. Every task handle lives on the
scheduler instance and teardown() cancels all of them.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from errors import UpstreamFetchFailure

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
RefreshCallback = Callable[[List[str]], Awaitable[None]]


class RefreshTask:
    """One data source: its fetcher, cadence, last-known value and timer handle"""

    def __init__(self, name: str, fetch: Fetcher, interval: float):
        self.name = name
        self.fetch = fetch
        self.interval = interval
        self.value: Any = None
        self.fetched_at: Optional[datetime] = None
        self.last_error: Optional[UpstreamFetchFailure] = None
        self.failures = 0
        self.timer: Optional[asyncio.Task] = None
        self.lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.timer is not None and not self.timer.done()


class SyncScheduler:
    """
    Refresh coordinator for one consumer (a connected client or the server).

    Args:
        name: label used in log lines
        debounce_s: change-feed coalescing window
        on_refresh: awaited with the refreshed source names after each refresh
    """

    def __init__(self, name: str = "scheduler", debounce_s: float = 1.0,
                 on_refresh: Optional[RefreshCallback] = None):
        self.name = name
        self.debounce_s = debounce_s
        self.on_refresh = on_refresh
        self.visible = False
        self.torn_down = False
        self.coalesced_events = 0
        self._sources: Dict[str, RefreshTask] = {}
        self._window_open = False
        self._debounce_tasks: Set[asyncio.Task] = set()
        self._feed_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, name: str, fetch: Fetcher, interval: float) -> RefreshTask:
        if name in self._sources:
            raise ValueError(f"Source '{name}' already registered")
        task = RefreshTask(name, fetch, interval)
        self._sources[name] = task
        return task

    def source(self, name: str) -> RefreshTask:
        return self._sources[name]

    def value(self, name: str) -> Any:
        return self._sources[name].value

    def fetched_at(self) -> Dict[str, Optional[datetime]]:
        return {name: s.fetched_at for name, s in self._sources.items()}

    @property
    def source_names(self) -> List[str]:
        return list(self._sources)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, name: str, notify: bool = True) -> bool:
        """
        Fetch one source. On failure the last-known value is kept and the
        error recorded on the source; returns False.
        """
        source = self._sources[name]
        async with source.lock:
            try:
                value = await source.fetch()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                source.failures += 1
                source.last_error = UpstreamFetchFailure(name, e)
                logger.warning(f"[{self.name}] {source.last_error} "
                               f"(keeping value from {source.fetched_at})")
                return False
            source.value = value
            source.fetched_at = datetime.now()
            source.last_error = None
            source.failures = 0

        if notify:
            await self._notify([name])
        return True

    async def refresh_all(self) -> Dict[str, bool]:
        """Refresh every source concurrently; one failure does not block the others"""
        names = list(self._sources)
        results = await asyncio.gather(*(self.refresh(n, notify=False) for n in names))
        await self._notify(names)
        return dict(zip(names, results))

    async def _notify(self, names: List[str]):
        if self.on_refresh is None or self.torn_down:
            return
        try:
            await self.on_refresh(names)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] refresh callback failed: {e}")

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _timer_loop(self, source: RefreshTask):
        while True:
            await asyncio.sleep(source.interval)
            await self.refresh(source.name)

    def _start_timers(self):
        for source in self._sources.values():
            if not source.running:
                source.timer = asyncio.create_task(self._timer_loop(source))

    async def _cancel_timers(self):
        timers = [s.timer for s in self._sources.values() if s.timer is not None]
        for s in self._sources.values():
            s.timer = None
        await _cancel_all(timers)

    async def start(self):
        """Refresh everything once, then run the per-source timers"""
        if self.torn_down:
            raise RuntimeError(f"Scheduler '{self.name}' was torn down")
        self.visible = True
        await self.refresh_all()
        self._start_timers()
        logger.info(f"[{self.name}] started with sources {self.source_names}")

    async def set_visible(self, visible: bool):
        """
        Hidden: all timers and any pending debounce are cancelled.
        Visible again: one immediate refresh of every source, then timers resume.
        """
        if self.torn_down or visible == self.visible:
            return
        self.visible = visible
        if not visible:
            await self._cancel_timers()
            await self._cancel_debounce()
            logger.debug(f"[{self.name}] hidden, timers paused")
            return

        await self.refresh_all()
        self._start_timers()
        logger.debug(f"[{self.name}] visible, timers resumed")

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def notify_change(self, event: Optional[dict] = None):
        """
        Push-event entry point. The first event arms the debounce window,
        later ones inside the window are coalesced into the same refresh.
        """
        if self.torn_down or not self.visible:
            return
        if self._window_open:
            self.coalesced_events += 1
            return
        self._window_open = True
        task = asyncio.create_task(self._debounced_refresh())
        self._debounce_tasks.add(task)
        task.add_done_callback(self._debounce_tasks.discard)

    async def _debounced_refresh(self):
        await asyncio.sleep(self.debounce_s)
        # Events arriving during the fetch open a new window
        self._window_open = False
        await self.refresh_all()

    async def _cancel_debounce(self):
        self._window_open = False
        await _cancel_all(list(self._debounce_tasks))
        self._debounce_tasks.clear()

    def attach_feed(self, queue: asyncio.Queue):
        """Consume change events from a change-feed queue"""
        if self._feed_task is not None and not self._feed_task.done():
            raise RuntimeError(f"Scheduler '{self.name}' already has a feed attached")
        self._feed_task = asyncio.create_task(self._feed_loop(queue))

    async def _feed_loop(self, queue: asyncio.Queue):
        while True:
            event = await queue.get()
            self.notify_change(event)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self):
        """Cancel every timer, the debounce and the feed listener"""
        if self.torn_down:
            return
        self.torn_down = True
        self.visible = False
        await self._cancel_timers()
        await self._cancel_debounce()
        await _cancel_all([self._feed_task])
        self._feed_task = None
        logger.info(f"[{self.name}] torn down")

    def active_tasks(self) -> int:
        """Number of live task handles owned by this scheduler"""
        tasks = [s.timer for s in self._sources.values()] + list(self._debounce_tasks) + [self._feed_task]
        return sum(1 for t in tasks if t is not None and not t.done())

    def status(self) -> dict:
        return {
            "name": self.name,
            "visible": self.visible,
            "sources": {
                name: {
                    "interval_s": s.interval,
                    "fetched_at": s.fetched_at.isoformat() if s.fetched_at else None,
                    "last_error": str(s.last_error) if s.last_error else None,
                    "running": s.running,
                }
                for name, s in self._sources.items()
            },
        }


async def _cancel_all(tasks):
    live = [t for t in tasks if t is not None and not t.done()]
    current = asyncio.current_task()
    for t in live:
        if t is not current:
            t.cancel()
    await asyncio.gather(*(t for t in live if t is not current), return_exceptions=True)
