from datetime import datetime, timezone
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

Window = Literal["24h", "7d", "30d"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """Snake case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Asset(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    chain_id: str
    asset_id: str
    symbol: str
    decimals: int = Field(ge=0)

    @field_validator("chain_id", mode="before")
    @classmethod
    def _chain_id_as_str(cls, value):
        return str(value) if isinstance(value, int) and not isinstance(value, bool) else value

    @property
    def key(self) -> Tuple[str, str]:
        return (self.chain_id, self.asset_id.lower())


class Route(ApiModel):
    source: Asset
    destination: Asset

    @property
    def label(self) -> str:
        return f"{self.source.symbol}->{self.destination.symbol}"


class Rate(ApiModel):
    source: Asset
    destination: Asset
    amount_in: str
    amount_out: str
    effective_rate: float = Field(gt=0)
    total_fees_usd: Optional[float] = None
    quoted_at: datetime = Field(default_factory=utcnow)


class Quote(BaseModel):
    """Parsed estimation from the quote endpoint"""
    amount_in: str
    amount_out: str
    max_theoretical_amount: Optional[str] = None
    in_usd: Optional[float] = None
    out_usd: Optional[float] = None
    fee_usd_values: List[str] = Field(default_factory=list)


class LiquidityDepthPoint(ApiModel):
    max_amount_in: str
    slippage_bps: int


class LiquidityDepth(ApiModel):
    route: Route
    thresholds: List[LiquidityDepthPoint]
    measured_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_thresholds(self):
        by_bps = {point.slippage_bps: point for point in self.thresholds}
        if 50 not in by_bps or 100 not in by_bps:
            raise ValueError("liquidity thresholds must include 50 and 100 bps")
        ordered = sorted(self.thresholds, key=lambda point: point.slippage_bps)
        amounts = [int(point.max_amount_in) for point in ordered]
        if any(later < earlier for earlier, later in zip(amounts, amounts[1:])):
            raise ValueError("maxAmountIn must not decrease as slippageBps increases")
        return self


class VolumeWindow(ApiModel):
    window: Window
    volume_usd: float = Field(ge=0)
    measured_at: datetime = Field(default_factory=utcnow)


class ListedAssets(ApiModel):
    assets: List[Asset] = Field(default_factory=list)
    measured_at: datetime = Field(default_factory=utcnow)


class OptimalRange(ApiModel):
    min: float
    max: float


class PriceImpact(ApiModel):
    at1k: Optional[int] = None
    at10k: Optional[int] = None
    at100k: Optional[int] = None


class RouteIntelligence(ApiModel):
    route: Route
    max_capacity_usd: Optional[float] = None
    optimal_range_usd: Optional[OptimalRange] = None
    fee_efficiency_score: Optional[float] = Field(default=None, ge=0, le=100)
    price_impact_bps: PriceImpact = Field(default_factory=PriceImpact)
    measured_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def unavailable(cls, route: Route, measured_at: Optional[datetime] = None) -> "RouteIntelligence":
        return cls(route=route, measured_at=measured_at or utcnow())


class ProviderSnapshot(ApiModel):
    volumes: List[VolumeWindow]
    rates: List[Rate]
    liquidity: List[LiquidityDepth]
    listed_assets: ListedAssets
    route_intelligence: Optional[List[RouteIntelligence]] = None


class SnapshotRequest(ApiModel):
    routes: List[Route]
    notionals: List[str]
    include_windows: List[Window] = Field(default_factory=lambda: ["24h"])
    include_intelligence: bool = False


class PingResult(ApiModel):
    status: Literal["ok"] = "ok"
    timestamp: datetime = Field(default_factory=utcnow)
