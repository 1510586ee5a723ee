"""
Command-line interface for ltpscope.
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .intelligence import MarketIntelligence
from .logger import configure_logging, get_logger
from .models.analysis import LTPAnalysis, MTFAnalysis, SetupQuality
from .streaming.worker import IngestionWorker

console = Console()

GRADE_STYLES = {
    SetupQuality.STRONG: "bold green",
    SetupQuality.MODERATE: "yellow",
    SetupQuality.WEAK: "red",
    SetupQuality.NO_SETUP: "dim",
}


@click.group()
@click.version_option(version=__version__, prog_name="ltpscope")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to .env configuration file"
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose logging"
)
@click.pass_context
def main(ctx: click.Context, config: Optional[Path], verbose: bool) -> None:
    """
    ltpscope: Levels / Trend / Patience market intelligence.

    Grades trade setups from key levels, multi-timeframe trend and
    patience candles, backed by a shared tiered cache.
    """
    ctx.ensure_object(dict)

    try:
        ctx.obj["config"] = Config.load_from_env(str(config) if config else None)
    except ValueError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)

    if verbose:
        ctx.obj["config"].logging.level = "DEBUG"

    logging_config = ctx.obj["config"].logging
    configure_logging(
        level=logging_config.level,
        log_file=logging_config.file_path,
        max_size=logging_config.max_size,
        backup_count=logging_config.backup_count,
        console_output=verbose
    )
    ctx.obj["logger"] = get_logger("ltpscope.cli", logging_config.level)


async def _with_intelligence(config: Config, action):
    intelligence = MarketIntelligence(config)
    try:
        return await action(intelligence)
    finally:
        await intelligence.close()


def _fmt(value: Optional[float]) -> str:
    return f"{value:,.2f}" if value is not None else "-"


def _render_ltp(analysis: LTPAnalysis) -> None:
    style = GRADE_STYLES.get(analysis.setup_quality, "")
    console.print(
        f"[bold]{analysis.symbol}[/bold]  grade [{style}]{analysis.grade.value}[/{style}]  "
        f"confluence {analysis.confluence_score}  ({analysis.setup_quality.value})"
    )
    console.print(analysis.recommendation)

    scores = Table(title="📊 LTP Scores", show_header=True)
    scores.add_column("Factor", style="cyan")
    scores.add_column("Score", style="green")
    scores.add_column("Details")
    levels = analysis.levels
    scores.add_row("Levels", str(levels.level_score), f"{levels.level_proximity.value}, {levels.price_position.value}")
    trend = analysis.trend
    scores.add_row(
        "Trend",
        str(trend.trend_score),
        f"daily {trend.daily_trend.value}, intraday {trend.intraday_trend.value} ({trend.trend_alignment.value})"
    )
    patience = analysis.patience
    candles = []
    for label, candle in (("5m", patience.candle_5m), ("15m", patience.candle_15m), ("1h", patience.candle_1h)):
        if candle is None:
            continue
        state = "confirmed" if candle.confirmed else "forming" if candle.forming else "none"
        candles.append(f"{label} {state}")
    scores.add_row("Patience", str(patience.patience_score), ", ".join(candles) or "no data")
    console.print(scores)

    named = Table(title="📍 Named Levels", show_header=True)
    named.add_column("Level", style="cyan")
    named.add_column("Price", style="green")
    for label, value in (
        ("PDH", levels.pdh), ("PDL", levels.pdl), ("VWAP", levels.vwap),
        ("ORB High", levels.orb_high), ("ORB Low", levels.orb_low),
        ("EMA9", levels.ema9), ("EMA21", levels.ema21), ("SMA200", levels.sma200),
        ("PMH", levels.pmh), ("PML", levels.pml),
    ):
        if value is not None:
            named.add_row(label, _fmt(value))
    console.print(named)

    if analysis.related_lessons:
        console.print("\n[bold]Related lessons[/bold]")
        for lesson in analysis.related_lessons:
            console.print(f"  • {lesson.title} [dim]({lesson.path})[/dim]")


def _render_mtf(mtf: MTFAnalysis) -> None:
    table = Table(title=f"📈 {mtf.symbol} Multi-Timeframe Trend", show_header=True)
    table.add_column("Timeframe", style="cyan")
    table.add_column("Trend", style="green")
    table.add_column("EMA9")
    table.add_column("EMA21")
    table.add_column("Alignment")
    for tf in mtf.timeframes:
        table.add_row(tf.timeframe.value, tf.trend.value, _fmt(tf.ema9), _fmt(tf.ema21), tf.ema_alignment.value)
    console.print(table)
    conflicts = ", ".join(t.value for t in mtf.conflicting_timeframes) or "none"
    console.print(
        f"Overall bias [bold]{mtf.overall_bias.value}[/bold], "
        f"alignment {mtf.alignment_score}, conflicts: {conflicts}"
    )


@main.command()
@click.argument("symbol")
@click.option("--timeout", "-t", type=float, default=None, help="Abort the analysis after N seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the raw report as JSON")
@click.pass_context
def analyze(ctx: click.Context, symbol: str, timeout: Optional[float], as_json: bool) -> None:
    """Grade the current LTP setup for SYMBOL."""
    config: Config = ctx.obj["config"]
    analysis = asyncio.run(_with_intelligence(config, lambda mi: mi.get_ltp_analysis(symbol, timeout)))

    if analysis is None:
        console.print(f"[red]✗[/red] LTP analysis unavailable for {symbol.upper()}")
        sys.exit(1)

    if as_json:
        click.echo(analysis.model_dump_json(indent=2))
    else:
        _render_ltp(analysis)
    ctx.obj["logger"].info(f"Analyzed {symbol.upper()}: {analysis.grade.value}")


@main.command()
@click.argument("symbol")
@click.pass_context
def levels(ctx: click.Context, symbol: str) -> None:
    """List key levels for SYMBOL, nearest first."""
    config: Config = ctx.obj["config"]
    key_levels = asyncio.run(_with_intelligence(config, lambda mi: mi.get_key_levels(symbol)))

    if not key_levels:
        console.print(f"[yellow]ℹ[/yellow] No key levels available for {symbol.upper()}")
        return

    table = Table(title=f"📍 {symbol.upper()} Key Levels", show_header=True)
    table.add_column("Type", style="cyan")
    table.add_column("Price", style="green")
    table.add_column("Distance %")
    table.add_column("Strength")
    table.add_column("Touches")
    for level in key_levels:
        table.add_row(
            level.type.value,
            _fmt(level.price),
            f"{level.distance:+.2f}",
            str(level.strength),
            str(level.touch_count) if level.touch_count is not None else "-"
        )
    console.print(table)


@main.command()
@click.argument("symbol")
@click.pass_context
def mtf(ctx: click.Context, symbol: str) -> None:
    """Show the multi-timeframe trend for SYMBOL."""
    config: Config = ctx.obj["config"]
    analysis = asyncio.run(_with_intelligence(config, lambda mi: mi.get_mtf_analysis(symbol)))

    if analysis is None:
        console.print(f"[red]✗[/red] Trend analysis unavailable for {symbol.upper()}")
        sys.exit(1)
    _render_mtf(analysis)


@main.command()
@click.pass_context
def context(ctx: click.Context) -> None:
    """Show market context and trading conditions."""
    config: Config = ctx.obj["config"]

    async def gather(mi: MarketIntelligence):
        return await asyncio.gather(
            mi.get_market_context(),
            mi.get_trading_conditions(),
            mi.should_avoid_longs(),
            mi.should_avoid_shorts(),
            mi.get_active_warnings()
        )

    market, conditions, avoid_longs, avoid_shorts, warnings = asyncio.run(_with_intelligence(config, gather))

    table = Table(title="🌎 Market Context", show_header=True)
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Market", market.market_status.market.value)
    table.add_row("VIX", f"{market.vix:.2f} ({market.volatility_level.value})")
    table.add_row("High impact today", "yes" if market.high_impact_today else "no")
    table.add_row("Conditions", f"{conditions.status.value}: {conditions.message}")
    table.add_row("Avoid longs", avoid_longs.reason or "no")
    table.add_row("Avoid shorts", avoid_shorts.reason or "no")
    console.print(table)

    if market.upcoming_events:
        events = Table(title="📅 Upcoming Events", show_header=True)
        events.add_column("Date", style="cyan")
        events.add_column("Time")
        events.add_column("Event", style="green")
        events.add_column("Impact")
        for event in market.upcoming_events:
            events.add_row(event.date.isoformat(), event.time, event.event, event.impact.value)
        console.print(events)

    for warning in warnings:
        console.print(f"[yellow]⚠[/yellow] {warning.title}: {warning.message}")


@main.command()
@click.pass_context
def worker(ctx: click.Context) -> None:
    """Run the WebSocket ingestion worker."""
    config: Config = ctx.obj["config"]
    logger = ctx.obj["logger"]

    async def run() -> bool:
        intelligence = MarketIntelligence(config)
        ingestion = IngestionWorker(intelligence.redistributor, config.provider, config.stream)

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, lambda: asyncio.ensure_future(ingestion.stop()))
            except NotImplementedError:
                pass

        try:
            return await ingestion.run()
        finally:
            await intelligence.close()

    console.print(f"[green]▶[/green] Starting ingestion for {', '.join(config.stream.watchlist)}")
    ok = asyncio.run(run())
    logger.info("Ingestion worker exited")
    if not ok:
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration status."""
    config: Config = ctx.obj["config"]

    table = Table(title="🔧 ltpscope Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Description")
    table.add_row(
        "Provider",
        "✅ Configured" if config.provider.is_configured else "❌ No API key",
        config.provider.base_url
    )
    table.add_row(
        "Cache",
        "✅ Redis" if config.cache.is_distributed else "⚠️  In-process",
        f"prefix '{config.cache.key_prefix}', hot freshness {config.cache.hot_freshness_seconds:.0f}s"
    )
    table.add_row("Watchlist", ", ".join(config.stream.watchlist), "Symbols streamed by the worker")
    table.add_row(
        "LTP thresholds",
        f"at {config.ltp.at_level_pct}% / near {config.ltp.near_level_pct}%",
        "Level proximity bands"
    )
    table.add_row(
        "LTP weights",
        f"{config.ltp.level_weight:.2f} / {config.ltp.trend_weight:.2f} / {config.ltp.patience_weight:.2f}",
        "Levels / Trend / Patience"
    )
    table.add_row(
        "Lessons",
        config.ltp.lesson_catalog_path or "-",
        "Lesson catalog for report enrichment"
    )
    table.add_row("Log level", config.logging.level, config.logging.file_path)
    console.print(table)

    for message in config.describe_degraded_modes():
        console.print(f"[yellow]⚠[/yellow] {message}")


if __name__ == "__main__":
    main()
