"""
deBridge Data Provider - command line interface
Snapshot, health check and API server for deBridge DLN routes
"""
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

import click
from loguru import logger
from rich.console import Console
from rich.table import Table

from .. import __version__
from ..data.config import ConfigManager, ProviderSettings
from ..data.errors import ProviderError
from ..data.models import Asset, ProviderSnapshot, Route, SnapshotRequest
from ..data.pipelines.snapshot import DataProviderService

console = Console()

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    logger.remove()
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if os.getenv("DEBUG", "false").lower() == "true":
        log_level = "DEBUG"
    logger.add(sys.stderr, format=LOG_FORMAT, level=log_level, colorize=True)
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / "debridge_provider_{time:YYYY-MM-DD}.log",
            rotation="1 day",
            retention="30 days",
            format=FILE_LOG_FORMAT,
            level="DEBUG",
        )
    logger.debug(f"Logging configured at {log_level}")


def parse_asset(text: str) -> Asset:
    parts = text.strip().split(":")
    if len(parts) != 4:
        raise click.BadParameter(f"Asset must be chainId:assetId:symbol:decimals, got {text!r}")
    chain_id, asset_id, symbol, decimals = parts
    try:
        return Asset(chain_id=chain_id, asset_id=asset_id, symbol=symbol, decimals=int(decimals))
    except ValueError as e:
        raise click.BadParameter(f"Invalid asset {text!r}: {e}")


def parse_route(text: str) -> Route:
    """``1:0xa0b8...:USDC:6->137:0x3c49...:USDC:6``"""
    if "->" not in text:
        raise click.BadParameter(f"Route must be SRC->DST, got {text!r}")
    source, destination = text.split("->", 1)
    return Route(source=parse_asset(source), destination=parse_asset(destination))


def _load_settings(ctx: click.Context) -> ProviderSettings:
    return ConfigManager(ctx.obj.get("config")).settings()


def render_snapshot(snapshot: ProviderSnapshot) -> None:
    volumes = Table(title="Bridge Volumes")
    volumes.add_column("Window", style="cyan")
    volumes.add_column("Volume (USD)", justify="right")
    for volume in snapshot.volumes:
        volumes.add_row(volume.window, f"${volume.volume_usd:,.2f}")
    console.print(volumes)

    rates = Table(title="Rates")
    rates.add_column("Route", style="cyan")
    rates.add_column("Amount In", justify="right")
    rates.add_column("Amount Out", justify="right")
    rates.add_column("Effective Rate", justify="right")
    rates.add_column("Fees (USD)", justify="right", style="dim")
    for rate in snapshot.rates:
        fees = f"${rate.total_fees_usd:,.4f}" if rate.total_fees_usd is not None else "-"
        rates.add_row(f"{rate.source.symbol}->{rate.destination.symbol}", rate.amount_in, rate.amount_out,
                      f"{rate.effective_rate:.6f}", fees)
    console.print(rates)

    depth = Table(title="Liquidity Depth")
    depth.add_column("Route", style="cyan")
    depth.add_column("Slippage (bps)", justify="right")
    depth.add_column("Max Amount In", justify="right")
    for liquidity in snapshot.liquidity:
        for point in liquidity.thresholds:
            depth.add_row(liquidity.route.label, str(point.slippage_bps), point.max_amount_in)
    console.print(depth)

    console.print(f"Listed assets: [bold]{len(snapshot.listed_assets.assets)}[/bold]")

    if snapshot.route_intelligence is not None:
        intel = Table(title="Route Intelligence")
        intel.add_column("Route", style="cyan")
        intel.add_column("Max Capacity (USD)", justify="right")
        intel.add_column("Optimal Range (USD)", justify="right")
        intel.add_column("Fee Efficiency", justify="right")
        intel.add_column("Impact 10k/100k (bps)", justify="right")
        for item in snapshot.route_intelligence:
            capacity = f"${item.max_capacity_usd:,.0f}" if item.max_capacity_usd is not None else "-"
            window = item.optimal_range_usd
            optimal = f"${window.min:,.0f} - ${window.max:,.0f}" if window else "-"
            score = f"{item.fee_efficiency_score:.1f}" if item.fee_efficiency_score is not None else "-"
            impact = item.price_impact_bps
            intel.add_row(item.route.label, capacity, optimal, score, f"{impact.at10k} / {impact.at100k}")
        console.print(intel)


@click.group()
@click.option('--config', '-c', help='Path to configuration file')
@click.option('--log-level', default=None, help='Log level (defaults to LOG_LEVEL or INFO)')
@click.option('--log-dir', default=None, help='Directory for rotated log files')
@click.pass_context
def cli(ctx, config, log_level, log_dir):
    """deBridge Data Provider - volumes, rates, liquidity and route intelligence"""
    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    setup_logging(log_level, log_dir)


@cli.command()
@click.option('--route', '-r', 'routes', multiple=True, required=True,
              help='Route as chainId:assetId:symbol:decimals->chainId:assetId:symbol:decimals')
@click.option('--notional', '-n', 'notionals', multiple=True, required=True,
              help='Source amount in smallest units (can specify multiple)')
@click.option('--window', '-w', 'windows', multiple=True, type=click.Choice(['24h', '7d', '30d']),
              help='Volume windows to include (default 24h)')
@click.option('--intelligence', is_flag=True, help='Probe routes for capacity and price impact')
@click.option('--json', 'as_json', is_flag=True, help='Print the snapshot as JSON')
@click.pass_context
def snapshot(ctx, routes, notionals, windows, intelligence, as_json):
    """Fetch a full snapshot for one or more routes"""
    request = SnapshotRequest(
        routes=[parse_route(route) for route in routes],
        notionals=list(notionals),
        include_windows=list(windows) or ["24h"],
        include_intelligence=intelligence,
    )

    async def run_snapshot() -> ProviderSnapshot:
        async with DataProviderService(_load_settings(ctx)) as service:
            return await service.get_snapshot(request)

    try:
        result = asyncio.run(run_snapshot())
    except ProviderError as e:
        console.print(f"[red]Snapshot failed: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Snapshot cancelled by user[/yellow]")
        return

    if as_json:
        exclude = {"route_intelligence"} if result.route_intelligence is None else None
        click.echo(json.dumps(result.model_dump(mode="json", by_alias=True, exclude=exclude), indent=2))
    else:
        render_snapshot(result)


@cli.command()
@click.pass_context
def ping(ctx):
    """Check connectivity to the deBridge API"""
    async def run_ping():
        async with DataProviderService(_load_settings(ctx)) as service:
            result = await service.ping()
            return result, service.diagnostics()

    try:
        result, diagnostics = asyncio.run(run_ping())
    except Exception as e:
        console.print(f"[red]Ping failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]Status: {result.status.upper()}[/green] at {result.timestamp.isoformat()}")
    table = Table(title="Circuit Breakers")
    table.add_column("Breaker", style="cyan")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    for breaker in diagnostics["breakers"]:
        color = "green" if breaker["state"] == "CLOSED" else "yellow"
        table.add_row(breaker["name"], f"[{color}]{breaker['state']}[/{color}]", str(breaker["failure_count"]))
    console.print(table)


@cli.command()
@click.option('--host', default='127.0.0.1', help='Bind address')
@click.option('--port', default=8000, type=int, help='Bind port')
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API"""
    import uvicorn

    from ..interfaces import create_app

    console.print(f"[bold blue]Starting deBridge Data Provider API on {host}:{port}[/bold blue]")
    uvicorn.run(create_app(_load_settings(ctx)), host=host, port=port, log_level="info")


@cli.command()
def version():
    """Show version information"""
    console.print("[bold blue]deBridge Data Provider[/bold blue]")
    console.print(f"Version: {__version__}")
    console.print("Sources: deBridge DLN (quotes, token lists) • DefiLlama (bridge volumes)")


def main(argv: Optional[List[str]] = None):
    try:
        cli(args=argv)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
