"""
deBridge DLN data provider service.

Assembles a snapshot of volumes, rates, liquidity depth and listed assets
for a set of routes. Every sub-fetch degrades on its own: a failed quote is
omitted, a failed volume call yields no volumes, a failed token list yields
no assets for that chain. Nothing is ever synthesized in their place.
"""

import asyncio
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from loguru import logger

from ..config import ProviderSettings
from ..decimal_utils import calculate_effective_rate, denormalize_amount, is_raw_amount, sum_fees
from ..errors import ConfigurationError, DecimalComputationError, ProviderError, SnapshotError
from ..models import (
    Asset,
    LiquidityDepth,
    LiquidityDepthPoint,
    ListedAssets,
    PingResult,
    ProviderSnapshot,
    Quote,
    Rate,
    Route,
    RouteIntelligence,
    SnapshotRequest,
    VolumeWindow,
    utcnow,
)
from ..registry import DataRegistry
from ..results import Outcome
from ..timing import PerformanceTimer
from .route_intelligence import RouteProber

T = TypeVar("T")

LIQUIDITY_REFERENCE_UNITS = 1000


def total_fees_usd(quote: Quote) -> Optional[float]:
    """USD in minus USD out, else the sum of itemized fees, else unknown"""
    if quote.in_usd is not None and quote.out_usd is not None:
        diff = Decimal(str(quote.in_usd)) - Decimal(str(quote.out_usd))
        return float(max(diff, Decimal(0)))
    if quote.fee_usd_values:
        return float(sum_fees(quote.fee_usd_values))
    return None


def liquidity_thresholds(quote: Quote) -> List[LiquidityDepthPoint]:
    """
    50 bps: the quoted input. 100 bps: the input scaled by
    maxTheoreticalAmount / recommendedAmount, never below the 50 bps amount.
    """
    src_amount = int(quote.amount_in)
    max_source = src_amount
    recommended = int(quote.amount_out)
    if quote.max_theoretical_amount is not None and recommended > 0:
        max_source = max(src_amount, src_amount * int(quote.max_theoretical_amount) // recommended)
    return [
        LiquidityDepthPoint(max_amount_in=str(src_amount), slippage_bps=50),
        LiquidityDepthPoint(max_amount_in=str(max_source), slippage_bps=100),
    ]


async def _settle(label: str, operation: Callable[[], Awaitable[T]]) -> Outcome[T]:
    try:
        return Outcome.success(await operation())
    except ProviderError as e:
        logger.warning(f"{label} omitted: {e}")
        return Outcome.failure(e)
    except Exception as e:
        logger.exception(f"{label} omitted after unexpected error: {e}")
        return Outcome.failure(e)


class DataProviderService:
    """
    Production data provider for deBridge Liquidity Network (DLN), with
    DefiLlama as the volume aggregator. Construct it, use it as an async
    context manager (or call ``close``), and share it across requests.
    """

    def __init__(self, settings: Optional[ProviderSettings] = None, registry: Optional[DataRegistry] = None,
                 prober: Optional[RouteProber] = None):
        self.settings = settings or (registry.settings if registry else ProviderSettings())
        self.registry = registry or DataRegistry(self.settings)
        self.prober = prober or RouteProber(self.registry.debridge, self.settings.probe)
        logger.info(
            f"Service configuration: dln={self.settings.base_url} defillama={self.settings.defillama_base_url} "
            f"timeout={self.settings.timeout}s rps={self.settings.max_requests_per_second}"
        )

    async def __aenter__(self) -> "DataProviderService":
        await self.registry.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.registry.close()

    async def get_snapshot(self, request: SnapshotRequest) -> ProviderSnapshot:
        if not request.routes or not request.notionals:
            raise ConfigurationError("Routes and notionals are required")

        timer = PerformanceTimer()
        windows = list(dict.fromkeys(request.include_windows or ["24h"]))
        logger.info(
            f"Snapshot fetch started: routes={len(request.routes)} notionals={len(request.notionals)} "
            f"windows={windows} intelligence={request.include_intelligence}"
        )

        try:
            timer.mark("fetch_start")
            volumes, rates, liquidity, listed_assets = await asyncio.gather(
                self.get_volumes(windows),
                self.get_rates(request.routes, request.notionals),
                self.get_liquidity_depth(request.routes),
                self.get_listed_assets(request.routes),
            )
            timer.mark("base_fetch_end")

            intelligence: Optional[List[RouteIntelligence]] = None
            if request.include_intelligence:
                logger.info(f"Fetching route intelligence for {len(request.routes)} routes")
                intelligence = await self.get_route_intelligence(request.routes)
                timer.mark("intelligence_end")
        except Exception as e:
            logger.error(f"Snapshot fetch failed after {timer.elapsed_ms():.0f}ms: {e}")
            raise SnapshotError(f"Snapshot fetch failed: {e}") from e

        logger.info(
            f"Snapshot fetch completed {timer.metadata()}: volumes={len(volumes)} rates={len(rates)} "
            f"liquidity={len(liquidity)} assets={len(listed_assets.assets)} "
            f"intelligence={len(intelligence) if intelligence is not None else 0}"
        )
        return ProviderSnapshot(
            volumes=volumes,
            rates=rates,
            liquidity=liquidity,
            listed_assets=listed_assets,
            route_intelligence=intelligence,
        )

    async def get_volumes(self, windows: Sequence[str]) -> List[VolumeWindow]:
        outcome = await _settle("Volumes", self.registry.defillama.bridge_volumes)
        if not outcome.ok:
            return []
        measured_at = utcnow()
        volumes = []
        for window in windows:
            volume_usd = outcome.value.get(window)
            if volume_usd is None:
                continue
            volumes.append(VolumeWindow(window=window, volume_usd=volume_usd, measured_at=measured_at))
            logger.debug(f"Volume {window}: ${volume_usd:,.2f}")
        return volumes

    async def get_rates(self, routes: Sequence[Route], notionals: Sequence[str]) -> List[Rate]:
        if not routes or not notionals:
            raise ConfigurationError("Routes and notionals are required for rate fetching")

        jobs = []
        for route in routes:
            for notional in notionals:
                if not is_raw_amount(notional):
                    logger.warning(f"Invalid notional {notional!r}, skipping")
                    continue
                jobs.append(_settle(
                    f"Rate {route.label} @ {notional}",
                    lambda route=route, notional=notional.strip(): self._rate(route, notional),
                ))

        outcomes = await asyncio.gather(*jobs)
        rates = [outcome.value for outcome in outcomes if outcome.ok]
        logger.info(f"Rates fetched: {len(rates)}/{len(jobs)}")
        return rates

    async def _rate(self, route: Route, notional: str) -> Rate:
        quote = await self.registry.debridge.quote(route.source, route.destination, notional)
        effective_rate = calculate_effective_rate(
            quote.amount_in, quote.amount_out, route.source.decimals, route.destination.decimals,
        )
        if effective_rate <= 0:
            raise DecimalComputationError(f"Quote for {route.label} returned no output")
        fees = total_fees_usd(quote)
        logger.debug(f"Rate {route.label} @ {notional}: {effective_rate} fees={fees}")
        return Rate(
            source=route.source,
            destination=route.destination,
            amount_in=quote.amount_in,
            amount_out=quote.amount_out,
            effective_rate=float(effective_rate),
            total_fees_usd=fees,
            quoted_at=utcnow(),
        )

    async def get_liquidity_depth(self, routes: Sequence[Route]) -> List[LiquidityDepth]:
        if not routes:
            logger.warning("No routes provided for liquidity depth")
            return []
        outcomes = await asyncio.gather(*(
            _settle(f"Liquidity {route.label}", lambda route=route: self._liquidity(route))
            for route in routes
        ))
        return [outcome.value for outcome in outcomes if outcome.ok]

    async def _liquidity(self, route: Route) -> LiquidityDepth:
        reference = denormalize_amount(LIQUIDITY_REFERENCE_UNITS, route.source.decimals)
        quote = await self.registry.debridge.quote(route.source, route.destination, reference)
        thresholds = liquidity_thresholds(quote)
        logger.debug(
            f"Liquidity {route.label}: 50bps={thresholds[0].max_amount_in} 100bps={thresholds[1].max_amount_in}"
        )
        return LiquidityDepth(route=route, thresholds=thresholds, measured_at=utcnow())

    async def get_listed_assets(self, routes: Sequence[Route]) -> ListedAssets:
        measured_at = utcnow()
        chain_ids = list(dict.fromkeys(
            str(chain_id)
            for route in routes
            for chain_id in (route.source.chain_id, route.destination.chain_id)
            if chain_id
        ))
        outcomes = await asyncio.gather(*(
            _settle(f"Token list for chain {chain_id}",
                    lambda chain_id=chain_id: self.registry.debridge.token_list(chain_id))
            for chain_id in chain_ids
        ))

        assets: List[Asset] = []
        seen = set()
        for outcome in outcomes:
            if not outcome.ok:
                continue
            for asset in outcome.value:
                if asset.key in seen:
                    continue
                seen.add(asset.key)
                assets.append(asset)
        return ListedAssets(assets=assets, measured_at=measured_at)

    async def get_route_intelligence(self, routes: Sequence[Route]) -> List[RouteIntelligence]:
        return await self.prober.analyze(list(routes))

    async def ping(self) -> PingResult:
        health = await self.registry.debridge.health()
        if not health["ok"]:
            logger.warning(f"Health check warning: {health.get('error')}")
        return PingResult()

    def diagnostics(self) -> Dict[str, object]:
        return self.registry.diagnostics()
