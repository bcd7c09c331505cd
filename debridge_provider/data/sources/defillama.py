import math
from typing import Any, Dict, Optional

from ..cache import RequestDeduplicator, TTLCache
from ..errors import PermanentUpstreamError
from ..http_client import ResilientHttpClient
from ..resilience import CircuitBreaker
from .base import DataSource

WINDOW_FIELDS = {
    "24h": ("lastDailyVolume",),
    "7d": ("weeklyVolume", "lastWeeklyVolume"),
    "30d": ("monthlyVolume", "lastMonthlyVolume"),
}


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_bridge_volumes(payload: Any) -> Dict[str, float]:
    """Window -> USD volume; every window must be present and numeric"""
    if not isinstance(payload, dict):
        raise PermanentUpstreamError("DefiLlama response is not an object")
    volumes: Dict[str, float] = {}
    for window, fields in WINDOW_FIELDS.items():
        value = None
        for field in fields:
            value = _numeric(payload.get(field))
            if value is not None:
                break
        if value is None:
            raise PermanentUpstreamError(f"DefiLlama response missing {window} volume")
        if value < 0:
            raise PermanentUpstreamError(f"DefiLlama reported a negative {window} volume")
        volumes[window] = value
    return volumes


class DefiLlamaSource(DataSource):
    """Bridge volume aggregator"""
    name = "defillama"

    def __init__(self, http: ResilientHttpClient, base_url: str, deduplicator: RequestDeduplicator,
                 volume_cache: TTLCache, breaker: CircuitBreaker, bridge_id: str = "20",
                 max_retries: int = 3, retry_base_delay: float = 1.0):
        super().__init__(deduplicator)
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.volume_cache = volume_cache
        self.breaker = breaker
        self.bridge_id = bridge_id
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def bridge_volumes(self) -> Dict[str, float]:
        url = f"{self.base_url}/bridge/{self.bridge_id}"

        async def fetch() -> Dict[str, float]:
            payload = await self.http.fetch_with_retry(
                url, max_retries=self.max_retries, base_delay=self.retry_base_delay,
            )
            return parse_bridge_volumes(payload)

        return await self._resilient_fetch(
            f"bridge:{self.bridge_id}", self.breaker, fetch, cache=self.volume_cache,
        )

    async def health(self) -> Dict[str, Any]:
        try:
            await self.bridge_volumes()
            return {"ok": True}
        except Exception as e:
            return {"ok": False, "error": str(e)}
