"""Command-line interface for ladder-mm."""

import asyncio
import os
import sys
from decimal import Decimal
from typing import Optional, Tuple

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ladder_mm import __version__
from ladder_mm.config import ConfigError, Settings, StrategyConfig, load_strategy_config, reload_settings
from ladder_mm.utils.logging import setup_logging

console = Console()

LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"])


def _load(config_path: Optional[str]) -> Tuple[Settings, StrategyConfig]:
    """Load settings and the strategy document, exiting with a message on bad config."""
    if config_path:
        os.environ["STRATEGY_CONFIG_PATH"] = config_path
    try:
        settings = reload_settings()
        strategy = load_strategy_config(settings.strategy_config_path)
    except (ConfigError, ValidationError) as e:
        console.print(f"[red]Config error:[/red] {escape(str(e))}")
        sys.exit(1)
    return settings, strategy


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """ladder-mm - inventory-skewed ladder market maker."""
    pass


@cli.command()
@click.option("--dry-run/--live", default=True, help="Dry run against the paper venue (no transactions)")
@click.option("--config", "config_path", type=click.Path(), help="Strategy YAML path")
@click.option("--log-level", type=LOG_LEVELS, default="INFO")
def run(dry_run: bool, config_path: Optional[str], log_level: str) -> None:
    """Run the market maker loop."""
    os.environ["DRY_RUN"] = str(dry_run).lower()
    os.environ["LOG_LEVEL"] = log_level

    settings, strategy = _load(config_path)
    setup_logging(log_level, json_output=settings.log_json)

    mode = "[yellow]DRY RUN[/yellow]" if settings.dry_run else "[red]LIVE TRADING[/red]"
    console.print(f"\n[bold]ladder-mm[/bold] - {mode}")

    if not settings.dry_run:
        if not settings.is_trading_enabled():
            console.print(
                "[red]Error:[/red] Live trading requires PRIVATE_KEY, WALLET_ADDRESS, "
                "SUBGRAPH_URL and CONTROLLER_ADDRESS.\n"
                "Set these in your .env file or environment."
            )
            sys.exit(1)
        console.print(f"[dim]Wallet:[/dim] {settings.wallet_address}")

    console.print(f"[dim]Markets:[/dim] {', '.join(strategy.markets)}")
    console.print(f"[dim]Interval:[/dim] {strategy.fetch_interval_seconds}s")
    console.print()

    from ladder_mm.market_maker.bot import MarketMakerBot, setup_signal_handlers

    async def _run() -> None:
        async with MarketMakerBot(settings, strategy) as bot:
            setup_signal_handlers(bot)
            await bot.run()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


@cli.command()
@click.option("--config", "config_path", type=click.Path(), help="Strategy YAML path")
@click.option("--oracle-price", type=str, help="Use this price for every market instead of the configured oracle")
@click.option("--log-level", type=LOG_LEVELS, default="WARNING")
def plan(config_path: Optional[str], oracle_price: Optional[str], log_level: str) -> None:
    """Run one decision cycle against the paper venue and show the instructions."""
    settings, strategy = _load(config_path)
    setup_logging(log_level)

    from ladder_mm.market_maker.bot import MarketMakerBot
    from ladder_mm.market_maker.oracle import StaticOracle
    from ladder_mm.market_maker.venue import PaperVenue

    oracle = None
    if oracle_price is not None:
        oracle = StaticOracle(
            {
                mid: m.oracle.model_copy(update={"source": "static", "price": Decimal(oracle_price)})
                for mid, m in strategy.markets.items()
            }
        )

    settings = settings.model_copy(update={"dry_run": True, "cancel_on_start": False, "cancel_on_stop": False})

    async def _plan() -> None:
        async with MarketMakerBot(settings, strategy, venue=PaperVenue(strategy.markets), oracle=oracle) as bot:
            plans, errors = await bot.plan()

        for market_id, error in errors.items():
            console.print(f"[red]{market_id}:[/red] {escape(error)}")

        for market_id, market_plan in plans.items():
            decision = market_plan.decision
            console.print(
                f"\n[bold]{market_id}[/bold] oracle={market_plan.oracle_price} "
                f"skew={decision.skew:.4f} ask_spread={decision.spreads.ask_spread} "
                f"bid_spread={decision.spreads.bid_spread} pnl={market_plan.pnl:.4f}"
            )
            if market_plan.ladder.skipped:
                console.print("[yellow]Book already quoted inside the spread budget, skipping[/yellow]")
            for shortfall in market_plan.ladder.insufficient:
                console.print(
                    f"[yellow]Insufficient inventory[/yellow] {shortfall.side.value}: "
                    f"required {shortfall.required}, available {shortfall.available}"
                )

            table = Table(title=f"Instructions for {market_id}")
            table.add_column("Action", style="cyan")
            table.add_column("Side")
            table.add_column("Tick", justify="right")
            table.add_column("Size", justify="right")
            table.add_column("Order")

            batch = market_plan.batch
            for claim in batch.claims:
                table.add_row("claim", "", "", "", claim.order_id)
            for cancel in batch.cancels:
                table.add_row("cancel", "", "", "", cancel.order_id)
            for make in batch.makes:
                table.add_row("make", make.side.value, str(make.tick), str(make.size), "")

            console.print(table)

    asyncio.run(_plan())


@cli.command()
@click.argument("trades_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--market", "market_id", required=True, help="Market id from the strategy document")
@click.option("--oracle-price", required=True, type=str, help="Reference price for the window")
@click.option("--start-block", type=int, default=0)
@click.option("--end-block", type=int, help="Last block (inclusive); defaults to the end of the tape")
@click.option("--config", "config_path", type=click.Path(), help="Strategy YAML path")
def backtest(
    trades_path: str,
    market_id: str,
    oracle_price: str,
    start_block: int,
    end_block: Optional[int],
    config_path: Optional[str],
) -> None:
    """Find the most profitable spreads over a JSON trade tape."""
    _, strategy = _load(config_path)
    setup_logging("WARNING")

    from ladder_mm.market_maker.simulator import DexSimulator, load_trades

    if market_id not in strategy.markets:
        console.print(f"[red]Error:[/red] unknown market {market_id}")
        sys.exit(1)

    tape = load_trades(trades_path)
    simulator = DexSimulator(strategy.markets)
    trades = tape.get(market_id, [])
    simulator.add_trades(market_id, trades)

    if end_block is None:
        end_block = max((t.block_number for t in trades), default=start_block)

    result = simulator.find_spread(market_id, start_block, end_block, Decimal(oracle_price))

    table = Table(title=f"Backtest {market_id} blocks {start_block}-{end_block}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Trades", str(len([t for t in trades if start_block <= t.block_number <= end_block])))
    table.add_row("Target bid", str(result.target_bid_price))
    table.add_row("Target ask", str(result.target_ask_price))
    table.add_row("Bid spread (ticks)", str(result.bid_spread))
    table.add_row("Ask spread (ticks)", str(result.ask_spread))
    table.add_row("Profit", f"[green]{result.profit}[/green]" if result.profit > 0 else str(result.profit))
    console.print(table)


@cli.command("cancel-all")
@click.option("--config", "config_path", type=click.Path(), help="Strategy YAML path")
@click.confirmation_option(prompt="Cancel every resting order on every configured market?")
def cancel_all(config_path: Optional[str]) -> None:
    """Emergency stop: claim and cancel all resting orders."""
    settings, strategy = _load(config_path)
    setup_logging(settings.log_level)

    if not settings.is_trading_enabled():
        console.print("[red]Error:[/red] cancel-all needs live credentials and venue addresses")
        sys.exit(1)

    from ladder_mm.market_maker.venue import CloberVenue

    async def _cancel() -> None:
        venue = CloberVenue(settings, strategy.markets)
        try:
            await venue.cancel_all()
        finally:
            await venue.close()

    asyncio.run(_cancel())
    console.print("[green]All orders cancelled[/green]")


@cli.command("check-config")
@click.option("--config", "config_path", type=click.Path(), help="Strategy YAML path")
def check_config(config_path: Optional[str]) -> None:
    """Validate settings and the strategy document."""
    settings, strategy = _load(config_path)

    table = Table(title="Markets")
    table.add_column("Market", style="cyan")
    table.add_column("Oracle")
    table.add_column("Spread (ticks)", justify="right")
    table.add_column("Rungs", justify="right")
    table.add_column("Order size", justify="right")
    table.add_column("Residual")

    for market_id, market in strategy.markets.items():
        params = market.params
        table.add_row(
            market_id,
            market.oracle.source,
            f"{params.min_tick_spread}-{params.max_tick_spread}",
            f"{params.order_num} x {params.order_gap}",
            str(params.order_size),
            params.residual_policy.value,
        )

    console.print(table)
    console.print(f"[dim]Dry run:[/dim] {settings.dry_run}")
    console.print(f"[dim]Trading enabled:[/dim] {settings.is_trading_enabled()}")
    console.print("[green]Configuration OK[/green]")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
