"""
HTTP client with rate limiting, retries and exponential backoff.

Every attempt waits on the shared token bucket, so retries of one logical
request queue behind other traffic instead of bursting.
"""

import asyncio
import json
import random
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit

import aiohttp
from loguru import logger

from .errors import (
    ConfigurationError,
    PermanentUpstreamError,
    RetryExhaustedError,
    TransientUpstreamError,
)
from .rate_limiter import RateLimiter
from .results import Outcome

DEFAULT_HEADERS = {
    "User-Agent": "deBridge-Data-Provider/1.0",
    "Accept": "application/json",
}
MAX_BACKOFF_EXPONENT = 10
JITTER_RATIO = 0.1


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds (delta-seconds or HTTP date)"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class ResilientHttpClient:

    def __init__(self, limiter: RateLimiter, timeout: float = 30.0, max_backoff: float = 30.0,
                 headers: Optional[Dict[str, str]] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 jitter: Callable[[], float] = random.random):
        self.limiter = limiter
        self.timeout = timeout
        self.max_backoff = max_backoff
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._jitter = jitter

    async def __aenter__(self) -> "ResilientHttpClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self.headers,
            )
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session

    def backoff_delay(self, attempt: int, base_delay: float) -> float:
        """``base_delay * 2^min(attempt, 10)`` plus up to 10% jitter, capped"""
        if attempt < 0 or base_delay < 0:
            return 1.0
        exponential = base_delay * (2 ** min(attempt, MAX_BACKOFF_EXPONENT))
        jitter = self._jitter() * JITTER_RATIO * exponential
        return min(exponential + jitter, self.max_backoff)

    async def fetch_with_retry(self, url: str, params: Optional[Dict[str, Any]] = None,
                               headers: Optional[Dict[str, str]] = None,
                               max_retries: int = 3, base_delay: float = 1.0) -> Any:
        """Parsed JSON body, or raise once the request has definitively failed"""
        outcome = await self.request(url, params=params, headers=headers,
                                     max_retries=max_retries, base_delay=base_delay)
        return outcome.unwrap()

    async def request(self, url: str, params: Optional[Dict[str, Any]] = None,
                      headers: Optional[Dict[str, str]] = None,
                      max_retries: int = 3, base_delay: float = 1.0) -> Outcome[Any]:
        self._validate(url, max_retries, base_delay)
        await self.start()

        last_error: Optional[TransientUpstreamError] = None
        attempts = 0
        for attempt in range(max_retries + 1):
            attempts = attempt + 1
            try:
                payload = await self._attempt(url, params, headers)
                if attempt:
                    logger.debug(f"GET {url} succeeded on attempt {attempts}")
                return Outcome.success(payload, attempts=attempts)
            except PermanentUpstreamError as e:
                logger.warning(f"GET {url} failed permanently: {e}")
                return Outcome.failure(e, attempts=attempts)
            except TransientUpstreamError as e:
                last_error = e
                if attempt >= max_retries:
                    break
                delay = self.backoff_delay(attempt, base_delay)
                if e.retry_after is not None:
                    delay = min(e.retry_after, self.max_backoff)
                logger.warning(
                    f"GET {url} attempt {attempts}/{max_retries + 1} failed ({e}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        error = RetryExhaustedError(
            f"Request failed after {attempts} attempts: {last_error}",
            attempts=attempts, last_error=last_error, url=url,
        )
        logger.error(str(error))
        return Outcome.failure(error, attempts=attempts)

    @staticmethod
    def _validate(url: str, max_retries: int, base_delay: float) -> None:
        if not url or not isinstance(url, str):
            raise ConfigurationError("Valid URL is required")
        parsed = urlsplit(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid URL format: {url}")
        if max_retries < 0 or base_delay < 0:
            raise ConfigurationError("max_retries and base_delay must be non-negative")

    async def _attempt(self, url: str, params: Optional[Dict[str, Any]],
                       headers: Optional[Dict[str, str]]) -> Any:
        await self.limiter.acquire()
        try:
            async with self._session.get(url, params=params, headers=headers) as response:
                status = response.status
                if status == 429 or status >= 500:
                    retry_after = parse_retry_after(response.headers.get("Retry-After")) if status == 429 else None
                    raise TransientUpstreamError(
                        f"HTTP {status}: {response.reason}", status=status, url=url, retry_after=retry_after,
                    )
                if not 200 <= status < 300:
                    raise PermanentUpstreamError(f"HTTP {status}: {response.reason}", status=status, url=url)

                content_type = response.headers.get("Content-Type", "")
                if "json" not in content_type.lower():
                    raise PermanentUpstreamError(
                        f"Response is not JSON (content-type {content_type or 'missing'})", status=status, url=url,
                    )
                body = await response.text()
        except asyncio.TimeoutError as e:
            raise TransientUpstreamError(f"Request timed out after {self.timeout}s", url=url) from e
        except aiohttp.ClientError as e:
            raise TransientUpstreamError(f"Network error: {e}", url=url) from e

        try:
            return json.loads(body)
        except ValueError as e:
            raise PermanentUpstreamError(f"Malformed JSON: {e}", status=status, url=url) from e
