"""TTL cache driven by an injected :class:`~crossmatrix.clock.Clock`."""

from __future__ import annotations

import asyncio
import heapq
import threading
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Hashable

from .clock import Clock, system_clock


class TTLCache:
    """A small TTL cache usable from async code.

    Expiry is computed from ``clock.monotonic()`` so tests can advance time
    with :class:`~crossmatrix.clock.ManualClock` instead of sleeping.  Expired
    entries stay reachable through :meth:`get_stale` until the next
    :meth:`set` purges them, which lets callers serve the last good value
    when a refresh fails.
    """

    def __init__(
        self, maxsize: int = 128, ttl: float = 60.0, *, clock: Clock | None = None
    ) -> None:
        self.maxsize = maxsize
        self.ttl = float(ttl)
        self.clock = clock or system_clock()
        self._data: "OrderedDict[Hashable, tuple[Any, float]]" = OrderedDict()
        self._expiry_heap: list[tuple[float, Hashable]] = []
        self._pending: dict[tuple[Hashable, asyncio.AbstractEventLoop], asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._thread_lock = threading.RLock()

    # internal helpers -----------------------------------------------------
    def _evict(self) -> None:
        with self._thread_lock:
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def _live(self, exp: float) -> bool:
        return exp > self.clock.monotonic()

    # basic dict API -------------------------------------------------------
    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._thread_lock:
            item = self._data.get(key)
            if item is None:
                return default
            value, exp = item
            if not self._live(exp):
                return default
            return value

    def get_stale(self, key: Hashable, default: Any = None) -> Any:
        """Return the cached value for ``key`` even when it has expired."""
        with self._thread_lock:
            item = self._data.get(key)
            return default if item is None else item[0]

    def __contains__(self, key: Hashable) -> bool:  # pragma: no cover - trivial
        return self.get(key) is not None

    def __getitem__(self, key: Hashable) -> Any:  # pragma: no cover - trivial
        val = self.get(key)
        if val is None:
            raise KeyError(key)
        return val

    def __setitem__(self, key: Hashable, value: Any) -> None:
        self.set(key, value)

    def set(self, key: Hashable, value: Any) -> None:
        self.purge()
        with self._thread_lock:
            exp = self.clock.monotonic() + self.ttl
            self._data.pop(key, None)
            self._data[key] = (value, exp)
            heapq.heappush(self._expiry_heap, (exp, key))
            self._evict()

    def purge(self) -> int:
        """Drop expired entries and return how many were removed."""
        removed = 0
        with self._thread_lock:
            now = self.clock.monotonic()
            heap = self._expiry_heap
            while heap and heap[0][0] <= now:
                _, key = heapq.heappop(heap)
                item = self._data.get(key)
                if item is not None and item[1] <= now:
                    self._data.pop(key, None)
                    removed += 1
        return removed

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._thread_lock:
            item = self._data.pop(key, None)
        if item is None:
            return default
        return item[0]

    def clear(self) -> None:  # pragma: no cover - trivial
        with self._thread_lock:
            self._data.clear()
            self._expiry_heap.clear()

    def __len__(self) -> int:  # pragma: no cover - trivial
        with self._thread_lock:
            return sum(1 for _, exp in self._data.values() if self._live(exp))

    # async helpers -------------------------------------------------------
    async def get_or_set_async(
        self, key: Hashable, factory: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Return cached value or set result of awaiting ``factory()``.

        Only a single task runs ``factory`` when a key is missing; concurrent
        callers await the same task.
        """

        val = self.get(key)
        if val is not None:
            return val

        async with self._lock:
            val = self.get(key)
            if val is not None:
                return val
            loop = asyncio.get_running_loop()
            pend_key = (key, loop)
            task = self._pending.get(pend_key)
            if task is None:
                task = asyncio.ensure_future(factory())
                self._pending[pend_key] = task

        try:
            val = await task
            self.set(key, val)
            return val
        finally:
            self._pending.pop((key, asyncio.get_running_loop()), None)
