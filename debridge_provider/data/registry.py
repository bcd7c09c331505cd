from typing import Any, Dict, Optional

import aiohttp

from .cache import RequestDeduplicator, TTLCache
from .config import ProviderSettings
from .http_client import ResilientHttpClient
from .rate_limiter import RateLimiter
from .resilience import CircuitBreaker
from .sources.debridge import DeBridgeSource
from .sources.defillama import DefiLlamaSource


class DataRegistry:
    """
    Owns the shared resilience primitives of one service instance: the rate
    limiter, caches, deduplicator, breakers and HTTP client, plus the sources
    wired on top of them.
    """

    def __init__(self, settings: ProviderSettings, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        rps = settings.max_requests_per_second
        self.rate_limiter = RateLimiter(max_tokens=rps, tokens_per_second=rps)
        self.http = ResilientHttpClient(
            self.rate_limiter, timeout=settings.timeout, max_backoff=settings.max_backoff, session=session,
        )
        self.deduplicator: RequestDeduplicator[Any] = RequestDeduplicator()

        self.quote_cache = TTLCache(settings.quote_cache_ttl, settings.quote_cache_size, name="quotes")
        self.volume_cache = TTLCache(settings.volume_cache_ttl, 1, name="volumes")
        self.token_list_cache = TTLCache(settings.token_list_cache_ttl, settings.token_list_cache_size,
                                         name="token-lists")

        self.quote_breaker = self._breaker("dln-quotes")
        self.token_list_breaker = self._breaker("dln-token-list")
        self.volume_breaker = self._breaker("defillama-volumes")

        self.debridge = DeBridgeSource(
            self.http, settings.base_url, self.deduplicator,
            quote_cache=self.quote_cache, token_list_cache=self.token_list_cache,
            quote_breaker=self.quote_breaker, token_list_breaker=self.token_list_breaker,
            api_key=settings.api_key, max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
        )
        self.defillama = DefiLlamaSource(
            self.http, settings.defillama_base_url, self.deduplicator,
            volume_cache=self.volume_cache, breaker=self.volume_breaker, bridge_id=settings.bridge_id,
            max_retries=settings.max_retries, retry_base_delay=settings.retry_base_delay,
        )

    def _breaker(self, name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=self.settings.breaker_failure_threshold,
            cooldown=self.settings.breaker_cooldown,
            success_threshold=self.settings.breaker_success_threshold,
        )

    async def start(self) -> None:
        await self.http.start()

    async def close(self) -> None:
        self.deduplicator.clear()
        await self.http.close()

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "breakers": [b.get_state() for b in (self.quote_breaker, self.token_list_breaker, self.volume_breaker)],
            "caches": [c.stats() for c in (self.quote_cache, self.volume_cache, self.token_list_cache)],
            "pending_requests": self.deduplicator.pending_count(),
        }
