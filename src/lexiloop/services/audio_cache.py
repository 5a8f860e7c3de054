"""Local audio cache index, session audio registry and background fetcher."""
import asyncio
import logging
import threading
from collections.abc import Mapping
from typing import Awaitable, Callable, Dict, Iterable, Iterator, Optional

from lexiloop import monitoring
from lexiloop.models.cycle_models import CachedAudio

logger = logging.getLogger(__name__)

DownloadFn = Callable[[str, str], Awaitable[CachedAudio]]


class AudioCacheIndex(Mapping):
    """Read-mostly index of cached audio keyed by audio id.

    Writes come from the fetcher while the session reads, so every access
    goes through a lock.
    """

    def __init__(self, entries: Optional[Iterable[CachedAudio]] = None):
        self._lock = threading.Lock()
        self._entries: Dict[str, CachedAudio] = {}
        for entry in entries or ():
            self._entries[entry.audio_id] = entry

    def __getitem__(self, audio_id: str) -> CachedAudio:
        with self._lock:
            return self._entries[audio_id]

    def __contains__(self, audio_id: object) -> bool:
        with self._lock:
            return audio_id in self._entries

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, entry: CachedAudio) -> None:
        with self._lock:
            self._entries[entry.audio_id] = entry

    def evict(self, audio_id: str) -> Optional[CachedAudio]:
        with self._lock:
            return self._entries.pop(audio_id, None)


class AudioRegistry:
    """Audio id -> resolved URL lookup, scoped to one practice session."""

    def __init__(self):
        self._urls: Dict[str, str] = {}

    def register(self, audio_id: str, url: str) -> None:
        self._urls[audio_id] = url

    def resolve(self, audio_id: str) -> Optional[str]:
        return self._urls.get(audio_id)

    def clear(self) -> None:
        self._urls.clear()

    def __len__(self) -> int:
        return len(self._urls)


class AudioFetcher:
    """Fetches missing audio in the background, one cancelable task per id."""

    def __init__(self, cache: AudioCacheIndex, registry: AudioRegistry, download: DownloadFn):
        self.cache = cache
        self.registry = registry
        self.download = download
        self.tasks: Dict[str, asyncio.Task] = {}

    def request(self, audio_ids: Iterable[str]) -> None:
        """Start fetching every id that is neither cached nor already in flight."""
        for audio_id in audio_ids:
            if audio_id in self.cache or audio_id in self.tasks:
                continue
            logger.info("Fetching missing audio %s", audio_id)
            task = asyncio.create_task(self._fetch(audio_id))
            self.tasks[audio_id] = task
            task.add_done_callback(lambda _t, key=audio_id: self.tasks.pop(key, None))

    async def _fetch(self, audio_id: str) -> None:
        url = self.registry.resolve(audio_id)
        if url is None:
            logger.error("No URL registered for audio %s", audio_id)
            monitoring.audio_fetch_failures.inc()
            return
        try:
            entry = await self.download(audio_id, url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error fetching audio %s from %s: %s", audio_id, url, e)
            monitoring.audio_fetch_failures.inc()
            return
        self.cache.add(entry)

    async def wait(self, audio_ids: Iterable[str], timeout: Optional[float] = None) -> None:
        """Wait for in-flight fetches of the given ids to finish."""
        pending = [self.tasks[audio_id] for audio_id in audio_ids if audio_id in self.tasks]
        if not pending:
            return
        _done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("%d audio fetches still running after %.1fs", len(still_pending), timeout or 0)

    def in_flight(self) -> int:
        return len(self.tasks)

    async def cancel_all(self) -> None:
        """Cancel every in-flight fetch."""
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()
