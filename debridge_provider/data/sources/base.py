from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from ..cache import RequestDeduplicator, TTLCache
from ..resilience import CircuitBreaker


class DataSource(ABC):
    name: str

    def __init__(self, deduplicator: RequestDeduplicator):
        self.deduplicator = deduplicator

    @abstractmethod
    async def health(self) -> Dict[str, Any]:
        ...

    async def _resilient_fetch(self, key: str, breaker: CircuitBreaker,
                               operation: Callable[[], Awaitable[Any]],
                               cache: Optional[TTLCache] = None) -> Any:
        """cache -> dedup -> circuit breaker -> rate limited retrying HTTP"""
        if cache is not None:
            cached = cache.get(key)
            if cached is not None:
                logger.debug(f"{self.name}: cache hit {key}")
                return cached

        async def guarded() -> Any:
            value = await breaker.call(operation)
            if cache is not None and value is not None:
                cache.set(key, value)
            return value

        return await self.deduplicator.deduplicate(f"{self.name}:{key}", guarded)
