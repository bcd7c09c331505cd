from typing import Any, Dict, List, Optional

from loguru import logger

from ..cache import RequestDeduplicator, TTLCache
from ..decimal_utils import is_raw_amount
from ..errors import ConfigurationError, PermanentUpstreamError
from ..http_client import ResilientHttpClient
from ..models import Asset, Quote
from ..resilience import CircuitBreaker
from .base import DataSource

# placeholder recipient/authority; quotes only, nothing is ever signed
DEFAULT_ACCOUNT = "0x1111111111111111111111111111111111111111"
DEFAULT_DECIMALS = 18


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _amount(value: Any) -> Optional[str]:
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    return value.strip() if is_raw_amount(value) else None


def parse_quote(payload: Any) -> Quote:
    estimation = payload.get("estimation") if isinstance(payload, dict) else None
    if not isinstance(estimation, dict):
        raise PermanentUpstreamError("Invalid quote response structure")

    src = estimation.get("srcChainTokenIn") or {}
    dst = estimation.get("dstChainTokenOut") or {}
    amount_in = _amount(src.get("amount"))
    amount_out = _amount(dst.get("recommendedAmount")) or _amount(dst.get("amount"))
    if amount_in is None or amount_out is None:
        raise PermanentUpstreamError("Missing amount data in quote estimation")

    in_usd = _optional_float(src.get("approximateUsdValue"))
    if in_usd is None:
        in_usd = _optional_float(src.get("originApproximateUsdValue"))
    out_usd = None
    for field in ("recommendedApproximateUsdValue", "approximateUsdValue", "maxTheoreticalApproximateUsdValue"):
        out_usd = _optional_float(dst.get(field))
        if out_usd is not None:
            break

    fee_usd_values = []
    for cost in estimation.get("costsDetails") or []:
        fee = (cost.get("payload") or {}).get("feeApproximateUsdValue") if isinstance(cost, dict) else None
        if _optional_float(fee) is not None:
            fee_usd_values.append(str(fee))

    return Quote(
        amount_in=amount_in,
        amount_out=amount_out,
        max_theoretical_amount=_amount(dst.get("maxTheoreticalAmount")),
        in_usd=in_usd,
        out_usd=out_usd,
        fee_usd_values=fee_usd_values,
    )


def parse_token_list(chain_id: str, payload: Any) -> List[Asset]:
    tokens = payload.get("tokens") if isinstance(payload, dict) else None
    if not isinstance(tokens, dict):
        raise PermanentUpstreamError(f"Token list for chain {chain_id} has no tokens mapping")

    assets: List[Asset] = []
    seen = set()
    for address, info in tokens.items():
        info = info if isinstance(info, dict) else {}
        asset_id = str(info.get("address") or address or "").lower()
        if not asset_id or asset_id in seen:
            continue
        seen.add(asset_id)
        try:
            decimals = int(info.get("decimals", DEFAULT_DECIMALS))
        except (TypeError, ValueError):
            decimals = DEFAULT_DECIMALS
        if decimals < 0:
            decimals = DEFAULT_DECIMALS
        assets.append(Asset(
            chain_id=chain_id,
            asset_id=asset_id,
            symbol=str(info.get("symbol") or asset_id),
            decimals=decimals,
        ))
    return assets


class DeBridgeSource(DataSource):
    """deBridge DLN: quotes, token lists and health"""
    name = "debridge"

    def __init__(self, http: ResilientHttpClient, base_url: str, deduplicator: RequestDeduplicator,
                 quote_cache: TTLCache, token_list_cache: TTLCache,
                 quote_breaker: CircuitBreaker, token_list_breaker: CircuitBreaker,
                 api_key: Optional[str] = None, max_retries: int = 3, retry_base_delay: float = 1.0):
        super().__init__(deduplicator)
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.quote_cache = quote_cache
        self.token_list_cache = token_list_cache
        self.quote_breaker = quote_breaker
        self.token_list_breaker = token_list_breaker
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.headers: Dict[str, str] = {}
        if api_key and api_key != "not-required":
            self.headers["x-api-key"] = api_key

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, **retry: Any) -> Any:
        return await self.http.fetch_with_retry(
            f"{self.base_url}{path}",
            params=params,
            headers=self.headers,
            max_retries=retry.get("max_retries", self.max_retries),
            base_delay=retry.get("base_delay", self.retry_base_delay),
        )

    @staticmethod
    def quote_key(source: Asset, destination: Asset, amount: str) -> str:
        return f"{source.chain_id}-{source.asset_id.lower()}-{destination.chain_id}-{destination.asset_id.lower()}-{amount}"

    async def quote(self, source: Asset, destination: Asset, amount: str) -> Quote:
        if not is_raw_amount(amount):
            raise ConfigurationError(f"Amount must be a non-negative integer string, got {amount!r}")
        amount = amount.strip()
        params = {
            "srcChainId": source.chain_id,
            "srcChainTokenIn": source.asset_id,
            "srcChainTokenInAmount": amount,
            "dstChainId": destination.chain_id,
            "dstChainTokenOut": destination.asset_id,
            "dstChainTokenOutAmount": "auto",
            "dstChainTokenOutRecipient": DEFAULT_ACCOUNT,
            "srcChainOrderAuthorityAddress": DEFAULT_ACCOUNT,
            "dstChainOrderAuthorityAddress": DEFAULT_ACCOUNT,
            "prependOperatingExpenses": "true",
        }

        async def fetch() -> Quote:
            payload = await self._get("/dln/order/create-tx", params)
            return parse_quote(payload)

        return await self._resilient_fetch(
            self.quote_key(source, destination, amount), self.quote_breaker, fetch, cache=self.quote_cache,
        )

    async def token_list(self, chain_id: str) -> List[Asset]:
        chain_id = str(chain_id)

        async def fetch() -> List[Asset]:
            payload = await self._get("/token-list", {"chainId": chain_id})
            assets = parse_token_list(chain_id, payload)
            logger.info(f"Token list fetched for chain {chain_id}: {len(assets)} tokens")
            return assets

        return await self._resilient_fetch(
            f"token-list:{chain_id}", self.token_list_breaker, fetch, cache=self.token_list_cache,
        )

    async def health(self) -> Dict[str, Any]:
        try:
            await self._get("/supported-chains-info", max_retries=1, base_delay=0.5)
            return {"ok": True}
        except Exception as e:
            return {"ok": False, "error": str(e)}
