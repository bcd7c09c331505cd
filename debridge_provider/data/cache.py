import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from loguru import logger

T = TypeVar("T")


class TTLCache:
    """
    In-memory cache with per-entry expiry and a size bound.

    Expired entries are evicted lazily on access. When full, the oldest
    inserted entry is dropped (insertion order, not access order).
    """

    def __init__(self, ttl: float, max_size: int = 1000, name: str = "cache",
                 clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.ttl = ttl
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self.store: Dict[Hashable, Tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self.store.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self.store[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if key not in self.store and len(self.store) >= self.max_size:
            oldest = next(iter(self.store))
            del self.store[oldest]
            logger.debug(f"{self.name}: evicted oldest entry {oldest!r}")
        self.store[key] = (self._clock() + self.ttl, value)

    def has(self, key: Hashable) -> bool:
        entry = self.store.get(key)
        if entry is None:
            return False
        if self._clock() >= entry[0]:
            del self.store[key]
            return False
        return True

    def clear(self) -> None:
        self.store.clear()

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self.store.items() if now >= expires_at]:
            del self.store[key]
        return {
            "name": self.name,
            "size": len(self.store),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return len(self.store)


class RequestDeduplicator(Generic[T]):
    """Coalesces concurrent calls sharing a key into one in-flight task"""

    def __init__(self):
        self.pending: Dict[str, "asyncio.Task[T]"] = {}

    async def deduplicate(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        task = self.pending.get(key)
        if task is None:
            task = asyncio.ensure_future(operation())
            self.pending[key] = task
            task.add_done_callback(lambda done, key=key: self._settle(key, done))
        else:
            logger.debug(f"Joining in-flight request {key}")
        # a cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)

    def _settle(self, key: str, task: "asyncio.Task[T]") -> None:
        if self.pending.get(key) is task:
            del self.pending[key]
        if not task.cancelled():
            # mark the exception as retrieved even if every waiter went away
            task.exception()

    def pending_count(self) -> int:
        return len(self.pending)

    def clear(self) -> None:
        self.pending.clear()
