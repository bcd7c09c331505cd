"""
End-to-end snapshot tests against the local upstream
"""

import asyncio

import pytest

from debridge_provider.data.errors import ConfigurationError, SnapshotError
from debridge_provider.data.models import Quote, SnapshotRequest
from debridge_provider.data.pipelines.snapshot import DataProviderService, liquidity_thresholds, total_fees_usd


class TestHelpers:
    """Fee and liquidity threshold derivation"""

    def test_fees_from_usd_difference(self):
        """Test fees from USD values"""
        quote = Quote(amount_in="1", amount_out="1", in_usd=1.0, out_usd=0.999, fee_usd_values=["5"])
        assert total_fees_usd(quote) == pytest.approx(0.001)

    def test_fees_never_negative(self):
        """Test fees are never negative"""
        quote = Quote(amount_in="1", amount_out="1", in_usd=1.0, out_usd=1.2)
        assert total_fees_usd(quote) == 0.0

    def test_fees_from_itemized_costs(self):
        """Test fees from itemized costs"""
        quote = Quote(amount_in="1", amount_out="1", fee_usd_values=["0.1", "0.2"])
        assert total_fees_usd(quote) == pytest.approx(0.3)

    def test_fees_unknown(self):
        """Test unknown fees"""
        assert total_fees_usd(Quote(amount_in="1", amount_out="1")) is None

    def test_thresholds_scale_by_max_theoretical(self):
        """Test thresholds from max theoretical output"""
        quote = Quote(amount_in="1000000000", amount_out="999000000", max_theoretical_amount="1001997000")
        points = liquidity_thresholds(quote)
        assert [(p.slippage_bps, p.max_amount_in) for p in points] == [(50, "1000000000"), (100, "1003000000")]

    def test_thresholds_never_decrease(self):
        """Test thresholds never decrease"""
        quote = Quote(amount_in="1000", amount_out="1000", max_theoretical_amount="900")
        points = liquidity_thresholds(quote)
        assert [p.max_amount_in for p in points] == ["1000", "1000"]

    def test_thresholds_without_max_theoretical(self):
        """Test thresholds without max theoretical output"""
        quote = Quote(amount_in="1000", amount_out="990")
        assert [p.max_amount_in for p in liquidity_thresholds(quote)] == ["1000", "1000"]


class TestGetSnapshot:
    """Full snapshot assembly and per-item degradation"""

    @pytest.mark.asyncio
    async def test_usdc_ethereum_to_polygon(self, service, usdc_route):
        """Test USDC from Ethereum to Polygon"""
        snapshot = await service.get_snapshot(SnapshotRequest(
            routes=[usdc_route],
            notionals=["1000000"],
            include_windows=["24h", "7d", "30d"],
        ))

        assert [(v.window, v.volume_usd) for v in snapshot.volumes] == [
            ("24h", 1_500_000.5), ("7d", 9_000_000.0), ("30d", 40_000_000.0),
        ]

        assert len(snapshot.rates) == 1
        rate = snapshot.rates[0]
        assert rate.amount_in == "1000000"
        assert rate.amount_out == "999000"
        assert rate.effective_rate == pytest.approx(0.999)
        assert rate.total_fees_usd == pytest.approx(0.001)

        assert len(snapshot.liquidity) == 1
        thresholds = {p.slippage_bps: p.max_amount_in for p in snapshot.liquidity[0].thresholds}
        assert thresholds == {50: "1000000000", 100: "1003000000"}

        # chain 1 lists USDC twice with different casing
        keys = {asset.key for asset in snapshot.listed_assets.assets}
        assert len(snapshot.listed_assets.assets) == 3
        assert ("1", usdc_route.source.asset_id.lower()) in keys
        assert ("137", usdc_route.destination.asset_id.lower()) in keys

        assert snapshot.route_intelligence is None

    @pytest.mark.asyncio
    async def test_default_window_is_24h(self, service, usdc_route):
        """Test the default volume window"""
        snapshot = await service.get_snapshot(SnapshotRequest(routes=[usdc_route], notionals=["1000000"]))
        assert [v.window for v in snapshot.volumes] == ["24h"]

    @pytest.mark.asyncio
    async def test_mixed_decimals(self, service, wbtc_route):
        """Test tokens with different decimals"""
        snapshot = await service.get_snapshot(SnapshotRequest(routes=[wbtc_route], notionals=["100000000"]))
        assert snapshot.rates[0].effective_rate == pytest.approx(65000)
        assert snapshot.rates[0].total_fees_usd == 0.0

    @pytest.mark.asyncio
    async def test_every_route_and_notional_is_quoted(self, service, upstream, usdc_route, wbtc_route):
        """Test every route and notional is quoted"""
        snapshot = await service.get_snapshot(SnapshotRequest(
            routes=[usdc_route, wbtc_route], notionals=["1000000", "5000000"],
        ))
        assert len(snapshot.rates) == 4
        assert len(snapshot.liquidity) == 2
        # 4 rate quotes + 2 liquidity quotes
        assert upstream.calls["quote"] == 6

    @pytest.mark.asyncio
    async def test_failing_quotes_degrade_to_empty(self, service, upstream, usdc_route):
        """Test failing quotes"""
        upstream.fail_always("quote", 500)

        snapshot = await service.get_snapshot(SnapshotRequest(routes=[usdc_route], notionals=["1000000"]))

        assert snapshot.rates == []
        assert snapshot.liquidity == []
        assert len(snapshot.volumes) == 1
        assert len(snapshot.listed_assets.assets) == 3

    @pytest.mark.asyncio
    async def test_partial_quote_failure(self, service, upstream, usdc_route):
        """Test partially failing quotes"""
        upstream.max_quote_amount = 2_000_000

        snapshot = await service.get_snapshot(SnapshotRequest(
            routes=[usdc_route], notionals=["1000000", "5000000"],
        ))

        assert [rate.amount_in for rate in snapshot.rates] == ["1000000"]
        # the liquidity reference quote (1000 USDC) is above the limit too
        assert snapshot.liquidity == []

    @pytest.mark.asyncio
    async def test_volume_failure_yields_no_volumes(self, service, upstream, usdc_route):
        """Test failing volumes"""
        upstream.fail_always("volumes", 503)

        snapshot = await service.get_snapshot(SnapshotRequest(routes=[usdc_route], notionals=["1000000"]))

        assert snapshot.volumes == []
        assert len(snapshot.rates) == 1

    @pytest.mark.asyncio
    async def test_token_list_failure_only_drops_that_chain(self, service, upstream, usdc_route):
        """Test a failing token list"""
        upstream.fail_always("token-list:137", 404)

        snapshot = await service.get_snapshot(SnapshotRequest(routes=[usdc_route], notionals=["1000000"]))

        assert {asset.chain_id for asset in snapshot.listed_assets.assets} == {"1"}

    @pytest.mark.asyncio
    async def test_invalid_notionals_are_skipped(self, service, upstream, usdc_route):
        """Test invalid notionals"""
        snapshot = await service.get_snapshot(SnapshotRequest(
            routes=[usdc_route], notionals=["abc", "-5", "1.5", "1000000"],
        ))
        assert [rate.amount_in for rate in snapshot.rates] == ["1000000"]

    @pytest.mark.asyncio
    async def test_zero_output_quote_is_omitted(self, service, usdc_route):
        """Test quotes with no output"""
        snapshot = await service.get_snapshot(SnapshotRequest(routes=[usdc_route], notionals=["1"]))
        # 1 * 999 // 1000 == 0
        assert snapshot.rates == []

    @pytest.mark.asyncio
    async def test_repeated_snapshot_is_served_from_cache(self, service, upstream, usdc_route):
        """Test repeated snapshots use the cache"""
        request = SnapshotRequest(routes=[usdc_route], notionals=["1000000"])
        await service.get_snapshot(request)
        calls = dict(upstream.calls)

        await service.get_snapshot(request)

        assert dict(upstream.calls) == calls

    @pytest.mark.asyncio
    async def test_concurrent_snapshots_share_requests(self, service, upstream, usdc_route):
        """Test concurrent snapshots share requests"""
        request = SnapshotRequest(routes=[usdc_route], notionals=["1000000"])
        await asyncio.gather(service.get_snapshot(request), service.get_snapshot(request))
        assert upstream.calls["quote"] == 2
        assert upstream.calls["volumes"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("routes, notionals", [([], ["1000000"]), (None, [])])
    async def test_requires_routes_and_notionals(self, service, upstream, usdc_route, routes, notionals):
        """Test empty routes or notionals"""
        request = SnapshotRequest(routes=routes if routes is not None else [usdc_route], notionals=notionals)
        with pytest.raises(ConfigurationError):
            await service.get_snapshot(request)
        assert sum(upstream.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_snapshot_error(self, service, usdc_route, monkeypatch):
        """Test unexpected errors"""
        async def broken(routes):
            raise RuntimeError("prober crashed")

        monkeypatch.setattr(service, "get_route_intelligence", broken)

        with pytest.raises(SnapshotError, match="prober crashed"):
            await service.get_snapshot(SnapshotRequest(
                routes=[usdc_route], notionals=["1000000"], include_intelligence=True,
            ))

    @pytest.mark.asyncio
    async def test_with_route_intelligence(self, service, upstream, usdc_route):
        """Test snapshot with route intelligence"""
        upstream.max_quote_amount = 50_000 * 10 ** 6

        snapshot = await service.get_snapshot(SnapshotRequest(
            routes=[usdc_route], notionals=["1000000"], include_intelligence=True,
        ))

        assert len(snapshot.route_intelligence) == 1
        intelligence = snapshot.route_intelligence[0]
        assert intelligence.max_capacity_usd == 50_000
        assert intelligence.fee_efficiency_score == pytest.approx(100.0)
        assert intelligence.price_impact_bps.at1k == 0
        assert intelligence.price_impact_bps.at10k == 0
        assert intelligence.price_impact_bps.at100k is None


    @pytest.mark.asyncio
    async def test_capacity_limits_leave_quotes_available(self, service, upstream, usdc_route):
        """Test that probing past route capacity does not take quotes offline"""
        upstream.max_quote_amount = 50_000 * 10 ** 6
        routes = [
            usdc_route.model_copy(update={
                "destination": usdc_route.destination.model_copy(update={"chain_id": chain_id}),
            })
            for chain_id in ("137", "10", "56", "8453", "42161")
        ]

        snapshot = await service.get_snapshot(SnapshotRequest(
            routes=routes, notionals=["1000000"], include_intelligence=True,
        ))
        assert [i.max_capacity_usd for i in snapshot.route_intelligence] == [50_000] * 5
        assert service.registry.quote_breaker.get_state()["state"] == "CLOSED"

        follow_up = await service.get_snapshot(SnapshotRequest(routes=[usdc_route], notionals=["2000000"]))
        assert [rate.amount_in for rate in follow_up.rates] == ["2000000"]
        assert len(follow_up.liquidity) == 1

class TestServiceLifecycle:
    """Ping, diagnostics and context management"""

    @pytest.mark.asyncio
    async def test_ping(self, service):
        """Test ping"""
        result = await service.ping()
        assert result.status == "ok"

    @pytest.mark.asyncio
    async def test_ping_reports_ok_even_when_upstream_is_down(self, service, upstream):
        """Test ping while the upstream is down"""
        upstream.fail_always("chains", 503)
        result = await service.ping()
        assert result.status == "ok"

    @pytest.mark.asyncio
    async def test_diagnostics(self, service):
        """Test diagnostics"""
        diagnostics = service.diagnostics()
        assert set(diagnostics) == {"breakers", "caches", "pending_requests"}

    @pytest.mark.asyncio
    async def test_context_manager_closes_session(self, settings):
        """Test the context manager closes the session"""
        async with DataProviderService(settings) as provider:
            assert provider.registry.http._session is not None
        assert provider.registry.http._session is None
