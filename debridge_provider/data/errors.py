"""
Error taxonomy for the data provider.

Configuration errors fail fast at call entry, transient upstream errors are
retried, permanent upstream errors are surfaced immediately and breaker-open
errors never touch the network.
"""

from typing import Optional


class ProviderError(Exception):
    """Base class for every error raised by the provider"""


class ConfigurationError(ProviderError, ValueError):
    """Invalid input or configuration (bad URL, missing amount, empty request)"""


class UpstreamError(ProviderError):
    """An upstream HTTP dependency misbehaved"""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class TransientUpstreamError(UpstreamError):
    """5xx, 429, timeout or network failure; worth retrying"""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status=status, url=url)
        self.retry_after = retry_after


class PermanentUpstreamError(UpstreamError):
    """4xx other than 429, malformed payload or non-JSON response"""


class RetryExhaustedError(UpstreamError):
    """All attempts of one logical request failed with transient errors"""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None,
                 url: Optional[str] = None):
        status = getattr(last_error, "status", None)
        super().__init__(message, status=status, url=url)
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(ProviderError):
    """The circuit breaker guarding a dependency is open"""

    def __init__(self, name: str, retry_in: float = 0.0):
        super().__init__(f"Circuit breaker '{name}' is OPEN - service is unavailable")
        self.name = name
        self.retry_in = retry_in


class DecimalComputationError(ProviderError, ValueError):
    """Malformed amounts, negative values or a zero denominator"""


class SnapshotError(ProviderError):
    """Unexpected failure while assembling a snapshot"""
