"""
Shared fixtures: a local aiohttp server standing in for deBridge DLN and
DefiLlama, plus settings and services wired against it.
"""

from collections import Counter, defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from debridge_provider.data.config import ProbePolicy, ProviderSettings
from debridge_provider.data.models import Asset, Route
from debridge_provider.data.pipelines.snapshot import DataProviderService

USDC_ETHEREUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDC_POLYGON = "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"
WBTC_ETHEREUM = "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599"

VOLUMES = {
    "lastDailyVolume": 1_500_000.5,
    "weeklyVolume": 9_000_000,
    "monthlyVolume": 40_000_000,
}

TOKEN_LISTS = {
    "1": {
        "tokens": {
            USDC_ETHEREUM: {"address": USDC_ETHEREUM, "symbol": "USDC", "decimals": 6},
            # same token listed twice with different casing
            USDC_ETHEREUM.lower(): {"address": USDC_ETHEREUM.lower(), "symbol": "USDC", "decimals": 6},
            WBTC_ETHEREUM: {"address": WBTC_ETHEREUM, "symbol": "WBTC", "decimals": 8},
        }
    },
    "137": {
        "tokens": {
            USDC_POLYGON: {"address": USDC_POLYGON, "symbol": "USDC", "decimals": 6},
        }
    },
}


class FakeUpstream:
    """Scriptable upstream; every handler counts its calls"""

    def __init__(self):
        self.calls: Counter = Counter()
        self.scripted: Dict[str, Deque[Tuple[int, Dict[str, str]]]] = defaultdict(deque)
        self.always: Dict[str, int] = {}
        self.max_quote_amount: Optional[int] = None
        self.volumes = dict(VOLUMES)
        self.token_lists = dict(TOKEN_LISTS)

    def fail(self, endpoint: str, status: int, times: int = 1, headers: Optional[Dict[str, str]] = None):
        self.scripted[endpoint].extend([(status, headers or {})] * times)

    def fail_always(self, endpoint: str, status: int):
        self.always[endpoint] = status

    def _failure(self, endpoint: str) -> Optional[web.Response]:
        self.calls[endpoint] += 1
        if endpoint in self.always:
            return web.json_response({"error": "unavailable"}, status=self.always[endpoint])
        if self.scripted[endpoint]:
            status, headers = self.scripted[endpoint].popleft()
            return web.json_response({"error": "unavailable"}, status=status, headers=headers)
        return None

    async def quote(self, request: web.Request) -> web.Response:
        failure = self._failure("quote")
        if failure is not None:
            return failure
        amount = int(request.query["srcChainTokenInAmount"])
        if self.max_quote_amount is not None and amount > self.max_quote_amount:
            return web.json_response({"errorMessage": "insufficient liquidity"}, status=400)
        src_decimals = 8 if request.query["srcChainTokenIn"].lower() == WBTC_ETHEREUM.lower() else 6
        if src_decimals == 8:
            # 1 WBTC -> 65000 USDC
            recommended = amount * 650
        else:
            recommended = amount * 999 // 1000
        max_theoretical = recommended * 1003 // 1000
        in_usd = amount / 10 ** src_decimals * (65_000 if src_decimals == 8 else 1)
        return web.json_response({
            "estimation": {
                "srcChainTokenIn": {
                    "amount": str(amount),
                    "approximateUsdValue": in_usd,
                },
                "dstChainTokenOut": {
                    "amount": str(recommended),
                    "recommendedAmount": str(recommended),
                    "maxTheoreticalAmount": str(max_theoretical),
                    "recommendedApproximateUsdValue": recommended / 10 ** 6,
                },
                "costsDetails": [
                    {"type": "DlnProtocolFee", "payload": {"feeApproximateUsdValue": "0.0005"}},
                    {"type": "TakerMargin", "payload": {"feeApproximateUsdValue": "0.0005"}},
                ],
            },
            "tx": {"allowanceTarget": "0x0000000000000000000000000000000000000000"},
        })

    async def token_list(self, request: web.Request) -> web.Response:
        chain_id = request.query.get("chainId", "")
        failure = self._failure(f"token-list:{chain_id}")
        if failure is not None:
            return failure
        if chain_id not in self.token_lists:
            return web.json_response({"errorMessage": "unsupported chain"}, status=400)
        return web.json_response(self.token_lists[chain_id])

    async def supported_chains(self, request: web.Request) -> web.Response:
        failure = self._failure("chains")
        if failure is not None:
            return failure
        return web.json_response({"chains": [{"chainId": 1}, {"chainId": 137}]})

    async def bridge(self, request: web.Request) -> web.Response:
        failure = self._failure("volumes")
        if failure is not None:
            return failure
        return web.json_response({"id": request.match_info["bridge_id"], **self.volumes})

    async def html(self, request: web.Request) -> web.Response:
        self.calls["html"] += 1
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    async def broken_json(self, request: web.Request) -> web.Response:
        self.calls["broken"] += 1
        return web.Response(text='{"estimation": ', content_type="application/json")

    async def flaky(self, request: web.Request) -> web.Response:
        failure = self._failure("flaky")
        if failure is not None:
            return failure
        return web.json_response({"ok": True})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/v1.0/dln/order/create-tx", self.quote)
        app.router.add_get("/v1.0/token-list", self.token_list)
        app.router.add_get("/v1.0/supported-chains-info", self.supported_chains)
        app.router.add_get("/v1.0/html", self.html)
        app.router.add_get("/v1.0/broken", self.broken_json)
        app.router.add_get("/v1.0/flaky", self.flaky)
        app.router.add_get("/llama/bridge/{bridge_id}", self.bridge)
        return app


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def server(upstream):
    test_server = TestServer(upstream.app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
def settings(server):
    return ProviderSettings(
        base_url=str(server.make_url("/v1.0")),
        defillama_base_url=str(server.make_url("/llama")),
        timeout=5,
        max_requests_per_second=100,
        retry_base_delay=0.001,
        max_backoff=0.05,
        probe=ProbePolicy(delay=0),
    )


@pytest_asyncio.fixture
async def service(settings):
    async with DataProviderService(settings) as provider:
        yield provider


@pytest.fixture
def usdc_route():
    return Route(
        source=Asset(chain_id="1", asset_id=USDC_ETHEREUM, symbol="USDC", decimals=6),
        destination=Asset(chain_id="137", asset_id=USDC_POLYGON, symbol="USDC", decimals=6),
    )


@pytest.fixture
def wbtc_route():
    return Route(
        source=Asset(chain_id="1", asset_id=WBTC_ETHEREUM, symbol="WBTC", decimals=8),
        destination=Asset(chain_id="137", asset_id=USDC_POLYGON, symbol="USDC", decimals=6),
    )


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
