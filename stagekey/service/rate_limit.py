from __future__ import annotations

import math
import threading
from collections import deque
from typing import Deque, Dict, NamedTuple, Optional, Protocol, Tuple

from stagekey.logging import get_logger
from stagekey.service.clock import Clock, SystemClock
from stagekey.service.errors import RateLimitedError

logger = get_logger(__name__)


class WindowStore(Protocol):
    async def hit(
        self, namespace: str, key: str, limit: int, window_seconds: float
    ) -> Tuple[bool, int, float]:
        ...

    async def reset(self, namespace: str, key: str) -> None:
        ...


class MemoryWindowStore:
    """In-process sliding windows: one deque and one lock per key.

    The prune, count and append for a key happen under that key's lock and
    never await, so both threads and tasks see a consistent window. Every
    ``sweep_every`` hits, slots whose newest admission has aged out of the
    window are evicted so idle actors and destinations do not accumulate.
    """

    def __init__(self, clock: Optional[Clock] = None, *, sweep_every: int = 1024) -> None:
        self.clock = clock or SystemClock()
        self.sweep_every = max(1, sweep_every)
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}
        self._spans: Dict[Tuple[str, str], float] = {}
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._hits_since_sweep = 0

    def _acquire(self, slot: Tuple[str, str]) -> threading.Lock:
        """Lock ``slot``, retrying if a sweep evicted it while we waited."""
        while True:
            with self._registry_lock:
                lock = self._locks.get(slot)
                if lock is None:
                    lock = self._locks[slot] = threading.Lock()
                    self._windows[slot] = deque()
            lock.acquire()
            with self._registry_lock:
                if self._locks.get(slot) is lock:
                    return lock
            lock.release()

    def _evict(self, slot: Tuple[str, str]) -> None:
        # caller holds the registry lock and the slot lock
        self._locks.pop(slot, None)
        self._windows.pop(slot, None)
        self._spans.pop(slot, None)

    def sweep(self) -> int:
        """Drop slots with no admission inside their window; returns the count."""
        now = self.clock.monotonic()
        evicted = 0
        with self._registry_lock:
            self._hits_since_sweep = 0
            for slot, lock in list(self._locks.items()):
                if not lock.acquire(blocking=False):
                    continue
                try:
                    window = self._windows.get(slot)
                    span = self._spans.get(slot, 0.0)
                    if not window or now - window[-1] > span:
                        self._evict(slot)
                        evicted += 1
                finally:
                    lock.release()
        return evicted

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._windows)

    def hit_now(
        self, namespace: str, key: str, limit: int, window_seconds: float
    ) -> Tuple[bool, int, float]:
        slot = (namespace, key)
        lock = self._acquire(slot)
        try:
            now = self.clock.monotonic()
            window = self._windows[slot]
            self._spans[slot] = window_seconds
            while window and now - window[0] > window_seconds:
                window.popleft()
            if len(window) >= limit:
                retry_after = window[0] + window_seconds - now
                result = (False, len(window), max(0.0, retry_after))
            else:
                window.append(now)
                result = (True, len(window), 0.0)
        finally:
            lock.release()

        with self._registry_lock:
            self._hits_since_sweep += 1
            due = self._hits_since_sweep >= self.sweep_every
        if due:
            self.sweep()
        return result

    async def hit(
        self, namespace: str, key: str, limit: int, window_seconds: float
    ) -> Tuple[bool, int, float]:
        return self.hit_now(namespace, key, limit, window_seconds)

    async def reset(self, namespace: str, key: str) -> None:
        slot = (namespace, key)
        lock = self._acquire(slot)
        try:
            with self._registry_lock:
                self._evict(slot)
        finally:
            lock.release()


class RateDecision(NamedTuple):
    allowed: bool
    count: int
    retry_after_seconds: int


class SlidingWindowLimiter:
    """Budget of ``limit`` admissions per trailing ``window_seconds`` per key."""

    def __init__(
        self,
        store: WindowStore,
        *,
        namespace: str,
        limit: int,
        window_seconds: float,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.namespace = namespace
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, key: str) -> RateDecision:
        allowed, count, retry_after = await self.store.hit(
            self.namespace, key, self.limit, self.window_seconds
        )
        return RateDecision(allowed, count, int(math.ceil(retry_after)) if not allowed else 0)

    async def check(self, key: str) -> None:
        """Consume one unit for ``key`` or raise ``RateLimitedError``."""
        decision = await self.hit(key)
        if decision.allowed:
            return
        retry_after = max(1, decision.retry_after_seconds)
        logger.warning(
            "rate_limited",
            limiter=self.namespace,
            subject=key,
            limit=self.limit,
            window_seconds=self.window_seconds,
            retry_after_seconds=retry_after,
        )
        raise RateLimitedError(
            f"too many {self.namespace} actions; retry in {retry_after}s",
            retry_after_seconds=retry_after,
            detail={"limiter": self.namespace},
        )

    async def reset(self, key: str) -> None:
        await self.store.reset(self.namespace, key)


class RateLimiter:
    """Actor and destination limiters with independent key spaces."""

    def __init__(
        self,
        store: WindowStore,
        *,
        actor_limit: int = 10,
        actor_window_seconds: float = 60,
        destination_limit: int = 3,
        destination_window_seconds: float = 60,
    ) -> None:
        self.actor = SlidingWindowLimiter(
            store, namespace="actor", limit=actor_limit, window_seconds=actor_window_seconds
        )
        self.destination = SlidingWindowLimiter(
            store,
            namespace="destination",
            limit=destination_limit,
            window_seconds=destination_window_seconds,
        )

    async def check_actor(self, actor_id: str) -> None:
        await self.actor.check(actor_id)

    async def check_destination(self, destination: str) -> None:
        await self.destination.check(destination)
