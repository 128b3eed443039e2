"""Client-side query cache keyed by (operation, parameters).

Entries are perishable copies of server projections. Mutations never edit
them in place; they mark keys stale through :func:`stale_keys` and the
caller refetches.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set, Tuple

from memoria_dm.config import get_settings


QueryKey = Tuple[str, Tuple[Any, ...]]

CONVERSATIONS: QueryKey = ("conversations", ())
UNREAD_COUNT: QueryKey = ("unread_count", ())


def thread_key(partner_id: str) -> QueryKey:
    return ("thread", (partner_id,))


def user_key(user_id: str) -> QueryKey:
    return ("user", (user_id,))


def stale_keys(mutation: str, partner_id: Optional[str] = None, cached: Iterable[QueryKey] = ()) -> Set[QueryKey]:
    """Keys made stale by a local mutation or a remote event.

    ``cached`` is only consulted for ``mark_all_read``, which touches every
    thread the cache knows about.
    """
    if mutation in ("send", "mark_read", "message", "read"):
        if not partner_id:
            return {CONVERSATIONS, UNREAD_COUNT}
        return {thread_key(partner_id), CONVERSATIONS, UNREAD_COUNT}
    if mutation in ("mark_all_read", "read_all"):
        threads = {key for key in cached if key[0] == "thread"}
        return threads | {CONVERSATIONS, UNREAD_COUNT}
    return set()


@dataclass
class CacheEntry:
    data: Any
    fetched_at: float
    stale: bool = False


@dataclass
class _Inflight:
    generation: int
    task: "asyncio.Future[Any]"
    # set when a newer fetch of the same key replaced this one
    successor: Optional["_Inflight"] = None


class QueryCache:

    def __init__(self, stale_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._stale_seconds = stale_seconds if stale_seconds is not None else get_settings().client_stale_seconds
        self._clock = clock
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._generations: Dict[QueryKey, int] = {}
        self._inflight: Dict[QueryKey, _Inflight] = {}

    def keys(self) -> Set[QueryKey]:
        return set(self._entries)

    def get(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.data if entry else None

    def is_fresh(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._fresh(entry)

    def _fresh(self, entry: CacheEntry) -> bool:
        return not entry.stale and self._clock() - entry.fetched_at < self._stale_seconds

    def invalidate(self, keys: Iterable[QueryKey]) -> Set[QueryKey]:
        """Mark keys stale; returns those that were cached or being fetched."""
        touched: Set[QueryKey] = set()
        for key in keys:
            self._generations[key] = self._generations.get(key, 0) + 1
            entry = self._entries.get(key)
            if entry is not None:
                entry.stale = True
                touched.add(key)
            if key in self._inflight:
                touched.add(key)
        return touched

    async def fetch(self, key: QueryKey, loader: Callable[[], Awaitable[Any]], force: bool = False) -> Any:
        entry = self._entries.get(key)
        if not force and entry is not None and self._fresh(entry):
            return entry.data

        generation = self._generations.get(key, 0)
        inflight = self._inflight.get(key)
        if inflight is None or inflight.generation != generation:
            replacement = _Inflight(generation, asyncio.ensure_future(self._load(key, generation, loader)))
            if inflight is not None:
                # started before an invalidation, its answer is already stale
                inflight.successor = replacement
                inflight.task.cancel()
            self._inflight[key] = replacement
            inflight = replacement
        # otherwise a duplicate request for the same key: share it
        return await self._wait(key, inflight)

    async def _load(self, key: QueryKey, generation: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        data = await loader()
        if self._generations.get(key, 0) == generation:
            self._entries[key] = CacheEntry(data, self._clock())
        return data

    async def _wait(self, key: QueryKey, inflight: _Inflight) -> Any:
        try:
            return await asyncio.shield(inflight.task)
        except asyncio.CancelledError:
            if not inflight.task.cancelled() or inflight.successor is None:
                raise
            # superseded: follow the request that replaced it
            return await self._wait(key, inflight.successor)
        finally:
            if self._inflight.get(key) is inflight and inflight.task.done():
                del self._inflight[key]
