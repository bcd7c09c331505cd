"""
Route intelligence: capacity discovery by probing increasing trade sizes.

For every route a fixed ascending schedule of USD notionals is quoted
through the resilient pipeline. The successful prefix of that schedule gives
the largest size the route handled, how stable the rate stays across sizes,
where the rate is best, and how much it degrades at 10k and 100k compared to
a 1k baseline.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

import numpy as np
from loguru import logger

from ..config import ProbePolicy
from ..decimal_utils import calculate_effective_rate, calculate_price_impact_bps, denormalize_amount
from ..errors import DecimalComputationError
from ..models import OptimalRange, PriceImpact, Route, RouteIntelligence, utcnow
from ..sources.debridge import DeBridgeSource

BASELINE_SIZE_USD = 1_000
IMPACT_SIZES_USD = {"at10k": 10_000, "at100k": 100_000}
MIN_SUCCESSES = 2


@dataclass
class ProbeResult:
    size_usd: int
    amount_in: str
    effective_rate: Optional[Decimal] = None
    failed: bool = False
    attempted: bool = True
    error: Optional[str] = None


def fee_efficiency_score(rates: List[Decimal]) -> Optional[float]:
    """100 minus the coefficient of variation (in percent), clamped to [0, 100]"""
    if len(rates) < MIN_SUCCESSES:
        return None
    values = np.array([float(rate) for rate in rates], dtype=float)
    mean = values.mean()
    if mean <= 0:
        return None
    score = 100.0 - (values.std() / mean * 100.0)
    return float(np.clip(score, 0.0, 100.0))


def optimal_range(successes: List[ProbeResult], tolerance: float) -> Optional[OptimalRange]:
    if len(successes) < MIN_SUCCESSES:
        return None
    best = max(probe.effective_rate for probe in successes)
    floor = best * (Decimal(1) - Decimal(str(tolerance)))
    sizes = [probe.size_usd for probe in successes if probe.effective_rate >= floor]
    return OptimalRange(min=min(sizes), max=max(sizes))


def price_impact(successes: List[ProbeResult]) -> PriceImpact:
    by_size: Dict[int, Decimal] = {probe.size_usd: probe.effective_rate for probe in successes}
    baseline = by_size.get(BASELINE_SIZE_USD)
    if baseline is None:
        return PriceImpact()
    impacts = {
        field: calculate_price_impact_bps(baseline, by_size[size]) if size in by_size else None
        for field, size in IMPACT_SIZES_USD.items()
    }
    return PriceImpact(at1k=0, **impacts)


def summarize_probes(route: Route, probes: List[ProbeResult], tolerance: float = 0.01,
                     measured_at: Optional[datetime] = None) -> RouteIntelligence:
    successes = [probe for probe in probes if not probe.failed]
    return RouteIntelligence(
        route=route,
        max_capacity_usd=max((probe.size_usd for probe in successes), default=None),
        optimal_range_usd=optimal_range(successes, tolerance),
        fee_efficiency_score=fee_efficiency_score([probe.effective_rate for probe in successes]),
        price_impact_bps=price_impact(successes),
        measured_at=measured_at or utcnow(),
    )


class RouteProber:

    def __init__(self, source: DeBridgeSource, policy: Optional[ProbePolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.source = source
        self.policy = policy or ProbePolicy()
        self._sleep = sleep

    async def probe_route(self, route: Route) -> List[ProbeResult]:
        src, dst = route.source, route.destination
        probes: List[ProbeResult] = []
        stopped = False
        sizes = list(self.policy.sizes_usd)

        for index, size_usd in enumerate(sizes):
            # unit-value source asset: 1 USD == 1 whole token
            amount_in = denormalize_amount(size_usd, src.decimals)
            if stopped:
                probes.append(ProbeResult(size_usd, amount_in, failed=True, attempted=False))
                continue
            # pause between successive probes
            if index and self.policy.delay:
                await self._sleep(self.policy.delay)
            try:
                quote = await self.source.quote(src, dst, amount_in)
                rate = calculate_effective_rate(quote.amount_in, quote.amount_out, src.decimals, dst.decimals)
                if rate <= 0:
                    raise DecimalComputationError(f"Quote for {route.label} returned no output")
                probes.append(ProbeResult(size_usd, amount_in, effective_rate=rate))
            except Exception as e:
                logger.debug(f"Probe {route.label} @ ${size_usd:,} failed: {e}")
                probes.append(ProbeResult(size_usd, amount_in, failed=True, error=str(e)))
                if self.policy.stop_on_first_failure:
                    stopped = True
        return probes

    async def analyze_route(self, route: Route, measured_at: Optional[datetime] = None) -> RouteIntelligence:
        measured_at = measured_at or utcnow()
        try:
            probes = await self.probe_route(route)
            intelligence = summarize_probes(route, probes, self.policy.optimal_tolerance, measured_at)
        except Exception as e:
            logger.warning(f"Route intelligence analysis failed for {route.label}: {e}")
            return RouteIntelligence.unavailable(route, measured_at)

        logger.info(
            f"Route intelligence {route.label}: capacity={intelligence.max_capacity_usd} "
            f"score={intelligence.fee_efficiency_score}"
        )
        return intelligence

    async def analyze(self, routes: List[Route]) -> List[RouteIntelligence]:
        measured_at = utcnow()
        return list(await asyncio.gather(*(self.analyze_route(route, measured_at) for route in routes)))
