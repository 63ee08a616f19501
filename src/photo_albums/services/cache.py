"""Reactive client-side cache of server entities."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from itertools import count

from photo_albums.domain.keys import CacheKey, matches

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[object]]


class _Absent:
    """Marker for an entry without a value."""

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


@dataclass(frozen=True)
class CacheEntry:
    """Immutable snapshot of one cache key."""

    key: CacheKey
    value: object = ABSENT
    fetched_at: datetime | None = None
    subscriber_count: int = 0
    stale: bool = False
    error: Exception | None = None

    @property
    def has_value(self) -> bool:
        return self.value is not ABSENT


Subscriber = Callable[[CacheEntry], None]


@dataclass
class _Slot:
    entry: CacheEntry
    inflight: "asyncio.Task[CacheEntry] | None" = None
    inflight_generation: int = 0
    generation: int = 0


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class CacheStore:
    """Key to entry map with subscription, de-duplicated fetches and invalidation.

    An entry is fresh for ``stale_after`` after its ``fetched_at`` unless it was
    invalidated. Reads of a fresh entry never call the fetcher; reads of a
    stale or absent entry share one in-flight fetch per key, as long as that
    fetch started after the entry's last invalidation. Subscribers are
    notified synchronously with the same snapshot whenever an entry changes.
    Fetchers and subscribers are registered per key and outlive the entry.
    """

    stale_after: timedelta = timedelta(minutes=5)
    clock: Callable[[], datetime] = _utcnow
    _slots: dict[CacheKey, _Slot] = field(default_factory=dict, init=False)
    _fetchers: dict[CacheKey, Fetcher] = field(default_factory=dict, init=False)
    _subscribers: dict[CacheKey, dict[int, Subscriber]] = field(
        default_factory=dict, init=False
    )
    _background: set[asyncio.Task] = field(default_factory=set, init=False)
    _tokens: count = field(default_factory=count, init=False)

    def peek(self, key: CacheKey) -> CacheEntry:
        """Return the current entry without fetching."""
        slot = self._slots.get(key)
        entry = slot.entry if slot else CacheEntry(key=key)
        return replace(entry, subscriber_count=self.subscriber_count(key))

    def keys(self) -> list[CacheKey]:
        return list(self._slots)

    def subscriber_count(self, key: CacheKey) -> int:
        return len(self._subscribers.get(key, {}))

    def is_fresh(self, entry: CacheEntry) -> bool:
        """Return True if the entry can be served without a fetch."""
        if not entry.has_value or entry.stale or entry.fetched_at is None:
            return False
        return self.clock() - entry.fetched_at < self.stale_after

    async def read(self, key: CacheKey, fetcher: Fetcher | None = None) -> CacheEntry:
        """Return a fresh entry for key, fetching it if stale or absent.

        ``fetcher`` is remembered for the key and reused by invalidation
        refetches. Concurrent callers await the same fetch; cancelling one
        caller does not cancel the shared fetch.
        """
        if fetcher is not None:
            self._fetchers[key] = fetcher
        slot = self._slot(key)
        if self.is_fresh(slot.entry):
            return self.peek(key)
        if key not in self._fetchers:
            raise LookupError(f"No fetcher registered for cache key {key!r}")
        return await asyncio.shield(self._ensure_fetch(slot))

    def write(self, key: CacheKey, value: object) -> CacheEntry:
        """Store a fresh value and notify subscribers."""
        slot = self._slot(key)
        slot.generation += 1
        slot.entry = CacheEntry(key=key, value=value, fetched_at=self.clock())
        return self._notify(key)

    def restore(self, snapshot: CacheEntry) -> CacheEntry:
        """Put a previously taken snapshot back in place."""
        slot = self._slot(snapshot.key)
        slot.generation += 1
        slot.entry = replace(snapshot, subscriber_count=0)
        return self._notify(snapshot.key)

    def invalidate(
        self, pattern: CacheKey, exact: bool = False
    ) -> list[asyncio.Task]:
        """Mark every entry under pattern stale, or only pattern itself if exact.

        Entries with subscribers are refetched in the background, including
        subscribed keys whose entry was removed; the rest refetch lazily on
        their next read. Returns the scheduled refetches.
        """
        scheduled: list[asyncio.Task] = []
        subscribed = [key for key in self._subscribers if key not in self._slots]
        for key in [*self._slots, *subscribed]:
            hit = key == pattern if exact else matches(pattern, key)
            if not hit or (key not in self._slots and key not in self._fetchers):
                continue
            slot = self._slot(key)
            slot.generation += 1
            slot.entry = replace(slot.entry, stale=True)
            if self.subscriber_count(key) and key in self._fetchers:
                scheduled.append(self._schedule_refetch(slot))
        return scheduled

    def remove(self, pattern: CacheKey) -> list[CacheKey]:
        """Drop every entry under pattern and notify its subscribers.

        Registered fetchers and subscribers stay, so the next read or
        invalidation of a removed key fetches it again.
        """
        removed = [key for key in self._slots if matches(pattern, key)]
        for key in removed:
            self._slots.pop(key)
            self._notify(key)
        return removed

    def clear(self) -> list[CacheKey]:
        return self.remove(())

    def subscribe(
        self,
        key: CacheKey,
        callback: Subscriber,
        fetcher: Fetcher | None = None,
    ) -> Callable[[], None]:
        """Register callback for changes of key and return an unsubscribe handle.

        Unsubscribing stops notifications only; a fetch already shared with
        other subscribers still completes and populates the entry.
        """
        token = next(self._tokens)
        self._subscribers.setdefault(key, {})[token] = callback
        if fetcher is not None:
            self._fetchers[key] = fetcher

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks is None:
                return
            callbacks.pop(token, None)
            if not callbacks:
                self._subscribers.pop(key, None)

        return unsubscribe

    async def settle(self) -> None:
        """Wait until every background refetch has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _slot(self, key: CacheKey) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot(entry=CacheEntry(key=key))
            self._slots[key] = slot
        return slot

    def _ensure_fetch(self, slot: _Slot) -> "asyncio.Task[CacheEntry]":
        # A fetch started before the last invalidation may carry old data.
        if slot.inflight is None or slot.inflight_generation != slot.generation:
            task = asyncio.ensure_future(self._fetch(slot, slot.generation))
            task.add_done_callback(self._log_failure)
            slot.inflight = task
            slot.inflight_generation = slot.generation
        return slot.inflight

    def _schedule_refetch(self, slot: _Slot) -> asyncio.Task:
        task = self._ensure_fetch(slot)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _fetch(self, slot: _Slot, generation: int) -> CacheEntry:
        key = slot.entry.key
        try:
            value = await self._fetchers[key]()
        except Exception as exc:
            self._release(slot)
            if self._slots.get(key) is slot and slot.generation == generation:
                slot.entry = replace(slot.entry, error=exc)
            raise
        self._release(slot)
        result = CacheEntry(key=key, value=value, fetched_at=self.clock())
        if self._slots.get(key) is not slot:
            # Removed while in flight; the entity no longer exists locally.
            return result
        if slot.generation != generation:
            # Invalidated or overwritten while in flight: callers that started
            # earlier get this result, the entry itself stays as it is now.
            if slot.entry.stale and self.subscriber_count(key):
                self._schedule_refetch(slot)
            return replace(result, subscriber_count=self.subscriber_count(key))
        slot.entry = result
        return self._notify(key)

    @staticmethod
    def _release(slot: _Slot) -> None:
        if slot.inflight is asyncio.current_task():
            slot.inflight = None

    def _notify(self, key: CacheKey) -> CacheEntry:
        snapshot = self.peek(key)
        for callback in list(self._subscribers.get(key, {}).values()):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Cache subscriber failed for %s", key)
        return snapshot

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Cache fetch failed: %s", exc)
