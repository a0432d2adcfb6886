from abc import ABC, abstractmethod
from fnmatch import fnmatchcase
import logging
from typing import Any, Dict, List, Optional, Pattern, Union

from .model import CacheEntry, CacheStats
from .timing import AsyncioScheduler, PeriodicTimer, Scheduler


logger = logging.getLogger(__name__)

_GLOB_CHARACTERS = set('*?[')


class Cache(ABC):
    """
    An abstraction of a value cache.

    A cache remembers values under string keys for a limited time. Absence and
    expiry are never errors: lookups simply come back empty.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve the value cached under `key`.

        @param key
          The key to look up.
        @return
          The cached value, or `None` if there is no valid one. An expired entry is deleted by the lookup.
        """

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Cache `value` under `key`, replacing any previous value.

        @param ttl
          How long the value stays valid, in seconds. Defaults to the cache's default TTL.
        """

    @abstractmethod
    def has(self, key: str) -> bool:
        """
        Whether a valid value is cached under `key`.
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete the value cached under `key`.

        @return
          Whether there was an entry to delete.
        """

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def invalidate_pattern(self, pattern: Union[str, Pattern]) -> int:
        """
        Delete every entry whose key matches `pattern`.

        @param pattern
          A compiled regular expression, which is searched for in each key; a
          string containing glob wildcards (`*`, `?`, `[`), which must match
          the whole key; or any other string, which is an exact key.
        @return
          The number of deleted entries.
        """

    @abstractmethod
    def keys(self) -> List[str]:
        """
        The keys of all currently valid entries.
        """

    @abstractmethod
    def stats(self) -> CacheStats:
        pass

    def close(self):
        """
        Close any resources associated with the cache.
        """


def _matcher(pattern: Union[str, Pattern]):
    if isinstance(pattern, str):
        if _GLOB_CHARACTERS & set(pattern):
            return lambda key: fnmatchcase(key, pattern)
        return lambda key: key == pattern
    return lambda key: pattern.search(key) is not None


class MemoryCache(Cache):
    """
    An in-memory cache with a per-entry TTL and a bound on the number of entries.

    When a new key is added to a full cache, expired entries are swept first. If
    that does not free a slot, the entry that was inserted the longest time ago is
    evicted. Reads do not refresh an entry's position.

    Expired entries are otherwise only removed when they are looked at, plus by a
    periodic sweep so that entries nobody reads again do not pile up.
    """

    def __init__(self, max_size: int = 100, default_ttl: float = 5 * 60,
                 scheduler: Optional[Scheduler] = None, sweep_interval: Optional[float] = 60) -> None:
        """
        Initialize the cache.

        @param max_size
          The maximum number of entries, valid or stale.
        @param default_ttl
          The TTL, in seconds, of entries set without one.
        @param scheduler
          The clock and timer source. Defaults to the asyncio event loop.
        @param sweep_interval
          Seconds between two periodic sweeps. `None` disables the periodic sweep.
          The sweep starts with the first `set()` that happens while the scheduler
          is able to schedule.
        """
        self.__max_size = max(max_size, 1)
        self.__default_ttl = default_ttl
        self.__scheduler = scheduler or AsyncioScheduler()
        # Ordered by insertion: the first entry is always the oldest one.
        self.__entries = {}  # type: Dict[str, CacheEntry]
        self.__sweeper = None  # type: Optional[PeriodicTimer]
        if sweep_interval:
            self.__sweeper = PeriodicTimer(self.__scheduler, sweep_interval, self.cleanup)

    def __live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self.__entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.__scheduler.now()):
            logger.debug('Cache entry {} expired. Deleting it.'.format(key))
            del self.__entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        entry = self.__live_entry(key)
        if entry is None:
            logger.debug('Cache miss for {}'.format(key))
            return None
        logger.debug('Cache hit for {}'.format(key))
        return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if key in self.__entries:
            # Re-inserting moves the key to the end of the eviction order.
            del self.__entries[key]
        elif len(self.__entries) >= self.__max_size:
            self.cleanup()
            if len(self.__entries) >= self.__max_size:
                oldest = next(iter(self.__entries))
                logger.info('Cache is full. Evicting the oldest entry: {}'.format(oldest))
                del self.__entries[oldest]

        self.__entries[key] = CacheEntry(key=key,
                                         data=value,
                                         inserted_at=self.__scheduler.now(),
                                         ttl=self.__default_ttl if ttl is None else ttl)
        self.__ensure_sweeper()

    def has(self, key: str) -> bool:
        return self.__live_entry(key) is not None

    def delete(self, key: str) -> bool:
        return self.__entries.pop(key, None) is not None

    def clear(self) -> None:
        logger.info('Clearing {} cache entries'.format(len(self.__entries)))
        self.__entries.clear()

    def invalidate_pattern(self, pattern: Union[str, Pattern]) -> int:
        matches = _matcher(pattern)
        doomed = [key for key in self.__entries if matches(key)]
        for key in doomed:
            del self.__entries[key]
        logger.info('Invalidated {} cache entries matching {!r}'.format(len(doomed), pattern))
        return len(doomed)

    def keys(self) -> List[str]:
        return [key for key in list(self.__entries) if self.__live_entry(key) is not None]

    def stats(self) -> CacheStats:
        return CacheStats(size=len(self.__entries), max_size=self.__max_size)

    def cleanup(self) -> int:
        """
        Delete every expired entry.

        @return
          The number of deleted entries.
        """
        now = self.__scheduler.now()
        expired = [key for key, entry in self.__entries.items() if entry.is_expired(now)]
        for key in expired:
            del self.__entries[key]
        if expired:
            logger.debug('Swept {} expired cache entries'.format(len(expired)))
        return len(expired)

    def __ensure_sweeper(self) -> None:
        if self.__sweeper is not None and not self.__sweeper.running and self.__scheduler.can_schedule():
            self.__sweeper.start()

    def close(self):
        if self.__sweeper is not None:
            self.__sweeper.stop()
