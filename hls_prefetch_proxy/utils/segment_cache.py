"""
In-memory prefetch cache for HLS media segments.

Segments listed in a playlist are fetched ahead of the player. A pending
placeholder is inserted before each fetch is scheduled, so every prefetch of
the same segment shares a single download. Requests that arrive while that
download is in flight register a listener and are called back with the
payload when it completes.

All slot store mutations happen on the event loop thread. A slot's position
in the store is only valid until the next await; fetch continuations always
look the slot up again by key.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional, Union

from hls_prefetch_proxy.utils.segment_keys import KeyStrategy, derive_key, should_fetch

logger = logging.getLogger(__name__)

Fetch = Callable[[dict], Awaitable[bytes]]
RequestOptionsBuilder = Callable[[str], dict]
Listener = Callable[[bytes], None]

# debug level -> logging level
DEBUG_LOG_LEVELS = {
    1: logging.INFO,  # lifecycle: start/complete/hit/miss/pending
    2: logging.WARNING,  # error detail
    3: logging.DEBUG,  # verbose, including periodic key dumps
}


class SegmentCacheError(Exception):
    pass


class CacheExhaustedError(SegmentCacheError):
    """A prefetch completed after its pending slot had already been evicted."""

    def __init__(self, key: str, max_segments: int):
        self.key = key
        self.max_segments = max_segments
        super().__init__(
            f'Prefetch of "{key}" completed after its pending entry was ejected from the cache. '
            f'Try increasing the "max_segments" option (currently {max_segments}).'
        )


@dataclass
class Pending:
    """Fetch in flight, nobody waiting on it yet."""


@dataclass
class PendingWithWaiters:
    waiters: List[Listener] = field(default_factory=list)


@dataclass
class Ready:
    payload: bytes


SlotState = Union[Pending, PendingWithWaiters, Ready]


@dataclass
class Slot:
    key: str
    state: Optional[SlotState] = field(default_factory=Pending)  # None once evicted


class CacheStatus(Enum):
    NOT_APPLICABLE = "not_applicable"
    MISS = "miss"
    PENDING = "pending"
    HIT = "hit"


class CacheLookup(NamedTuple):
    status: CacheStatus
    payload: Optional[bytes] = None


@dataclass
class CacheStats:
    """Statistics for segment cache performance tracking."""

    cache_hits: int = 0
    cache_misses: int = 0
    pending_lookups: int = 0
    fetches_started: int = 0
    fetches_completed: int = 0
    fetches_failed: int = 0
    bytes_fetched: int = 0
    segments_evicted: int = 0
    exhausted_races: int = 0
    last_reset: float = field(default_factory=time.time)

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate percentage."""
        total = self.cache_hits + self.cache_misses + self.pending_lookups
        return (self.cache_hits / total * 100) if total > 0 else 0.0

    def reset(self) -> None:
        """Reset statistics."""
        self.cache_hits = 0
        self.cache_misses = 0
        self.pending_lookups = 0
        self.fetches_started = 0
        self.fetches_completed = 0
        self.fetches_failed = 0
        self.bytes_fetched = 0
        self.segments_evicted = 0
        self.exhausted_races = 0
        self.last_reset = time.time()

    def to_dict(self) -> dict:
        """Convert stats to dictionary for logging."""
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "pending_lookups": self.pending_lookups,
            "hit_rate": f"{self.hit_rate:.1f}%",
            "fetches_started": self.fetches_started,
            "fetches_completed": self.fetches_completed,
            "fetches_failed": self.fetches_failed,
            "bytes_fetched_mb": f"{self.bytes_fetched / 1024 / 1024:.2f}",
            "segments_evicted": self.segments_evicted,
            "exhausted_races": self.exhausted_races,
            "uptime_seconds": int(time.time() - self.last_reset),
        }


class SlotStore:
    """Ordered, bounded list of cache slots, oldest first."""

    def __init__(self, max_segments: int):
        if max_segments < 1:
            raise ValueError(f"max_segments must be a positive integer, got {max_segments}")
        self.max_segments = max_segments
        self._slots: List[Slot] = []

    def __len__(self) -> int:
        return len(self._slots)

    def __getitem__(self, index: int) -> Slot:
        return self._slots[index]

    def append(self, slot: Slot) -> None:
        self._slots.append(slot)

    def find_by_key(self, key: str) -> Optional[int]:
        """Return the index of the newest slot for ``key``, or None."""
        for index in range(len(self._slots) - 1, -1, -1):
            if self._slots[index].key == key:
                return index
        return None

    def evict(self, start: int, count: int) -> int:
        """
        Remove ``count`` slots starting at ``start``.

        Payload references are dropped before the slots leave the list so the
        bytes can be released even if something else still holds a slot.

        Returns:
            int: The number of slots removed.
        """
        targets = self._slots[start : start + count]
        for slot in targets:
            slot.state = None
        del self._slots[start : start + count]
        return len(targets)

    def enforce_capacity(self) -> int:
        overflow = len(self._slots) - self.max_segments
        if overflow > 0:
            return self.evict(0, overflow)
        return 0

    def keys(self) -> List[str]:
        return [slot.key for slot in self._slots]


class SegmentCache:
    """
    Prefetch cache for sequentially named media segments.

    One instance per proxy application. It must be used from a single event
    loop: ``prefetch`` schedules its download as a task on the running loop.
    """

    def __init__(
        self,
        fetch: Fetch,
        get_request_options: RequestOptionsBuilder,
        max_segments: int = 20,
        cache_key: int = KeyStrategy.SEQUENCE,
        debug_level: int = 0,
        diagnostics_interval: float = 5.0,
    ):
        """
        Initialize the segment cache.

        Args:
            fetch: Coroutine function taking request options and returning the response bytes.
            get_request_options: Maps a segment URL to the options passed to ``fetch``.
            max_segments: Maximum number of slots (pending or ready) kept after a completion.
            cache_key: KeyStrategy used to derive cache keys from segment URLs.
            debug_level: Diagnostic verbosity threshold; messages above it are dropped.
            diagnostics_interval: Seconds between cache key dumps when ``debug_level >= 3``.
        """
        self._fetch = fetch
        self._get_request_options = get_request_options
        self._store = SlotStore(max_segments)
        self.cache_key = cache_key
        self.debug_level = debug_level
        self.stats = CacheStats()

        self._tasks: Dict[str, asyncio.Task] = {}  # in-flight fetch per key
        self._diagnostics_task: Optional[asyncio.Task] = None
        self._diagnostics_interval = diagnostics_interval

    @property
    def max_segments(self) -> int:
        return self._store.max_segments

    def __len__(self) -> int:
        return len(self._store)

    def keys(self) -> List[str]:
        """Cached keys, oldest first."""
        return self._store.keys()

    def key_for(self, url: str) -> str:
        return derive_key(url, self.cache_key)

    def debug(self, level: int, message: str) -> None:
        if level > self.debug_level:
            return
        logger.log(DEBUG_LOG_LEVELS.get(level, logging.DEBUG), message)

    def _debug_url(self, url: str, key: str) -> str:
        return url if self.debug_level >= 3 else key

    def prefetch(self, url: str, request_options: Optional[dict] = None) -> None:
        """
        Start downloading a segment in the background unless it is already
        pending or cached. Non-segment URLs are ignored.

        Args:
            url (str): The segment URL.
            request_options (dict, optional): Options for the fetch. Built with
                ``get_request_options`` when omitted.
        """
        if not should_fetch(url):
            return

        key = self.key_for(url)
        if self._store.find_by_key(key) is not None:
            return

        loop = asyncio.get_running_loop()
        self._ensure_diagnostics()
        self.debug(1, f"prefetch (start): {self._debug_url(url, key)}")

        # placeholder goes in before the download is scheduled
        self._store.append(Slot(key))
        self.stats.fetches_started += 1

        task = loop.create_task(self._run_fetch(url, key, request_options))
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget_task(key, done))

    def _forget_task(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _run_fetch(self, url: str, key: str, request_options: Optional[dict]) -> None:
        debug_url = self._debug_url(url, key)
        try:
            if request_options is None:
                request_options = self._get_request_options(url)
            payload = await self._fetch(request_options)
        except Exception as e:
            self._fail(key, debug_url, e)
            return

        try:
            self._complete(key, debug_url, payload)
        except CacheExhaustedError as e:
            self.stats.exhausted_races += 1
            logger.error(str(e))

    def _complete(self, key: str, debug_url: str, payload: bytes) -> None:
        self.debug(1, f"prefetch (complete, {len(payload)} bytes): {debug_url}")

        index = self._store.find_by_key(key)
        if index is None:
            raise CacheExhaustedError(key, self.max_segments)

        slot = self._store[index]
        waiters = slot.state.waiters if isinstance(slot.state, PendingWithWaiters) else []
        slot.state = Ready(payload)
        self.stats.fetches_completed += 1
        self.stats.bytes_fetched += len(payload)

        for listener in waiters:
            self._notify(listener, payload, debug_url)

        evicted = self._store.enforce_capacity()
        if evicted:
            self.stats.segments_evicted += evicted
            self.debug(3, f"cache (evicted {evicted} oldest segments)")

    def _fail(self, key: str, debug_url: str, error: Exception) -> None:
        self.stats.fetches_failed += 1
        self.debug(1, f"prefetch (error): {debug_url}")
        self.debug(2, f"prefetch (error): {error}")

        index = self._store.find_by_key(key)
        if index is not None:
            self._store.evict(index, 1)

    def _notify(self, listener: Listener, payload: bytes, debug_url: str) -> None:
        try:
            listener(payload)
        except Exception:
            logger.exception(f"Segment listener raised for {debug_url}")
            return
        self.debug(1, f"cache (callback complete): {debug_url}")

    def get(self, url: str) -> CacheLookup:
        """
        Look up a segment without blocking.

        A PENDING result means a download is in flight; use ``add_listener``
        (or ``wait_for``) to receive it.
        """
        if not should_fetch(url):
            return CacheLookup(CacheStatus.NOT_APPLICABLE)

        key = self.key_for(url)
        debug_url = self._debug_url(url, key)

        index = self._store.find_by_key(key)
        if index is None:
            self.stats.cache_misses += 1
            self.debug(1, f"cache (miss): {debug_url}")
            return CacheLookup(CacheStatus.MISS)

        state = self._store[index].state
        if not isinstance(state, Ready):
            self.stats.pending_lookups += 1
            self.debug(1, f"cache (pending prefetch): {debug_url}")
            return CacheLookup(CacheStatus.PENDING)

        # hits never evict older segments
        self.stats.cache_hits += 1
        self.debug(1, f"cache (hit): {debug_url}")
        return CacheLookup(CacheStatus.HIT, state.payload)

    def add_listener(self, url: str, listener: Listener) -> bool:
        """
        Register ``listener`` for the segment's payload.

        Pending downloads queue the listener; cached segments call it right
        away. Nothing happens if no slot exists for the segment.

        Returns:
            bool: False if the URL is not a cacheable segment, True otherwise.
        """
        if not should_fetch(url):
            return False

        key = self.key_for(url)
        debug_url = self._debug_url(url, key)

        index = self._store.find_by_key(key)
        if index is None:
            return True

        slot = self._store[index]
        if isinstance(slot.state, Pending):
            slot.state = PendingWithWaiters([listener])
            self.debug(1, f"cache (callback added): {debug_url}")
        elif isinstance(slot.state, PendingWithWaiters):
            slot.state.waiters.append(listener)
            self.debug(1, f"cache (callback added): {debug_url}")
        else:
            self._notify(listener, slot.state.payload, debug_url)
        return True

    async def wait_for(self, url: str, timeout: float) -> Optional[bytes]:
        """
        Wait for a pending or cached segment.

        Returns early with None when the download ends without delivering a
        payload (failed, or completed after its slot was evicted).

        Returns:
            Optional[bytes]: The payload, or None if the URL is not a segment,
            no slot exists for it, the download failed, or it did not finish
            in time.
        """
        future = asyncio.get_running_loop().create_future()

        def resolve(payload: bytes) -> None:
            if not future.done():
                future.set_result(payload)

        if not self.add_listener(url, resolve):
            return None
        if future.done():
            return future.result()

        key = self.key_for(url)
        fetch_task = self._tasks.get(key)
        if fetch_task is None:
            self._remove_listener(key, resolve)
            return None

        await asyncio.wait({future, fetch_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if future.done():
            return future.result()

        future.cancel()
        self._remove_listener(key, resolve)
        if not fetch_task.done():
            self.debug(1, f"cache (listener timeout after {timeout}s): {self._debug_url(url, key)}")
        return None

    def _remove_listener(self, key: str, listener: Listener) -> None:
        index = self._store.find_by_key(key)
        if index is None:
            return
        slot = self._store[index]
        if isinstance(slot.state, PendingWithWaiters) and listener in slot.state.waiters:
            slot.state.waiters.remove(listener)
            if not slot.state.waiters:
                slot.state = Pending()

    def _ensure_diagnostics(self) -> None:
        """Ensure the key dump task is running when verbose diagnostics are on."""
        if self.debug_level < 3:
            return
        if self._diagnostics_task is None or self._diagnostics_task.done():
            self._diagnostics_task = asyncio.create_task(self._periodic_key_dump())

    async def _periodic_key_dump(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._diagnostics_interval)
                self.debug(3, f"cache (keys): {json.dumps(self.keys())}")
            except asyncio.CancelledError:
                return
            except Exception as e:
                logger.warning(f"Error in cache diagnostics: {e}")

    def log_stats(self) -> None:
        """Log current cache statistics."""
        logger.info(f"Segment cache stats: {self.stats.to_dict()}")

    async def aclose(self) -> None:
        """Cancel outstanding downloads and drop every slot."""
        tasks = list(self._tasks.values())
        if self._diagnostics_task is not None:
            tasks.append(self._diagnostics_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._diagnostics_task = None
        self._store.evict(0, len(self._store))
