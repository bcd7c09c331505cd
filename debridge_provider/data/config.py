import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, field_validator

DEFAULT_BASE_URL = "https://dln.debridge.finance/v1.0"
DEFAULT_DEFILLAMA_BASE_URL = "https://bridges.llama.fi"
DEFAULT_CONFIG_PATH = "config/config.json"

# env var -> dotted settings key
ENV_OVERRIDES = {
    "DEBRIDGE_BASE_URL": "base_url",
    "DEBRIDGE_DEFILLAMA_BASE_URL": "defillama_base_url",
    "DEBRIDGE_API_KEY": "api_key",
    "DEBRIDGE_TIMEOUT": "timeout",
    "DEBRIDGE_MAX_REQUESTS_PER_SECOND": "max_requests_per_second",
    "DEBRIDGE_MAX_RETRIES": "max_retries",
    "DEBRIDGE_RETRY_BASE_DELAY": "retry_base_delay",
    "DEBRIDGE_PROBE_DELAY": "probe.delay",
}


def sanitize_http_url(url: Optional[str], fallback: str) -> str:
    """Strip the trailing slash and accept only http(s) URLs, else use ``fallback``"""
    if not url or not isinstance(url, str):
        logger.warning(f"Missing URL, using fallback {fallback}")
        return fallback
    trimmed = url.strip().rstrip("/")
    try:
        parsed = urlsplit(trimmed)
    except ValueError as e:
        logger.warning(f"Invalid URL {url!r}, using fallback {fallback}: {e}")
        return fallback
    if parsed.scheme not in ("http", "https"):
        logger.warning(f"Invalid protocol {parsed.scheme!r} in {url!r}, using fallback {fallback}")
        return fallback
    if not parsed.netloc:
        logger.warning(f"Invalid URL {url!r}, using fallback {fallback}")
        return fallback
    return trimmed


class ProbePolicy(BaseModel):
    """Route intelligence probing schedule"""
    sizes_usd: Tuple[int, ...] = (1_000, 5_000, 10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000)
    delay: float = Field(default=0.2, ge=0)
    stop_on_first_failure: bool = True
    optimal_tolerance: float = Field(default=0.01, ge=0, lt=1)

    @field_validator("sizes_usd")
    @classmethod
    def _ascending(cls, sizes):
        if not sizes:
            raise ValueError("at least one probe size is required")
        if any(size <= 0 for size in sizes):
            raise ValueError("probe sizes must be positive")
        if list(sizes) != sorted(set(sizes)):
            raise ValueError("probe sizes must be strictly ascending")
        return sizes


class ProviderSettings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    defillama_base_url: str = DEFAULT_DEFILLAMA_BASE_URL
    api_key: str = "not-required"
    # seconds
    timeout: float = Field(default=30.0, ge=1, le=60)
    max_requests_per_second: float = Field(default=10, ge=1, le=100)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0)
    max_backoff: float = Field(default=30.0, gt=0)
    bridge_id: str = "20"

    quote_cache_ttl: float = Field(default=300, gt=0)
    quote_cache_size: int = Field(default=1000, ge=1)
    volume_cache_ttl: float = Field(default=600, gt=0)
    token_list_cache_ttl: float = Field(default=300, gt=0)
    token_list_cache_size: int = Field(default=100, ge=1)

    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_cooldown: float = Field(default=60.0, ge=0)
    breaker_success_threshold: int = Field(default=2, ge=1)

    probe: ProbePolicy = Field(default_factory=ProbePolicy)

    @field_validator("base_url", mode="before")
    @classmethod
    def _base_url(cls, value):
        return sanitize_http_url(value, DEFAULT_BASE_URL)

    @field_validator("defillama_base_url", mode="before")
    @classmethod
    def _defillama_url(cls, value):
        return sanitize_http_url(value, DEFAULT_DEFILLAMA_BASE_URL)

    @field_validator("api_key", mode="before")
    @classmethod
    def _api_key(cls, value):
        return (value or "").strip() or "not-required"

    @property
    def has_api_key(self) -> bool:
        return self.api_key != "not-required"


class ConfigManager:
    """
    Loads provider settings from a JSON file and ``DEBRIDGE_*`` env vars.
    Env vars win over the file; the file wins over defaults.
    """

    def __init__(self, config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path or DEFAULT_CONFIG_PATH)
        if env is None:
            load_dotenv()
            env = dict(os.environ)
        self._env = env
        self._config: Dict[str, Any] = self._load_file()

    def _load_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.debug(f"Config file not found at {self.config_path}, using defaults")
            return {}
        try:
            with open(self.config_path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Invalid config file {self.config_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Config file {self.config_path} must hold a JSON object")
            return {}
        logger.info(f"Loaded config from {self.config_path}")
        # the provider section may be nested or sit at the top level
        section = data.get("provider", data)
        return section if isinstance(section, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        """Get config value by key (dot notation supported)"""
        value: Any = self._config
        for part in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(part)
            if value is None:
                return default
        return value

    def _merged(self) -> Dict[str, Any]:
        merged = json.loads(json.dumps(self._config))
        for env_name, dotted in ENV_OVERRIDES.items():
            raw = self._env.get(env_name)
            if raw is None or raw == "":
                continue
            target = merged
            *parents, leaf = dotted.split(".")
            for part in parents:
                if not isinstance(target.get(part), dict):
                    target[part] = {}
                target = target[part]
            target[leaf] = raw
        return merged

    def settings(self, **overrides: Any) -> ProviderSettings:
        data = self._merged()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return ProviderSettings(**data)
