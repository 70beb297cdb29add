"""CLI entry point for the up/down decision engine.

Usage::

    python3 -m updown_bot --paper --duration-minutes 60
    python3 -m updown_bot --paper --assets BTC ETH --interval 1
    python3 -m updown_bot --live --sizing-mode kelly
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from updown_bot.config import EngineSettings, load_settings, with_overrides
from updown_bot.engine import DecisionEngine
from updown_bot.exchanges import (
    BinanceKlineSource,
    OrderExecutor,
    PaperExecutor,
    PolymarketLiveExecutor,
    PolymarketMarketData,
    PythPriceSource,
)
from updown_bot.logging_setup import configure_logging
from updown_bot.tick_recorder import TickRecorder
from updown_bot.volatility import JsonVolatilityStore, VolatilityEstimator

LOGGER = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """The process cannot start trading (e.g. no live executor)."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python3 -m updown_bot",
        description="Decision engine for crypto up/down binary markets",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--paper", action="store_true", default=False,
        help="Run in paper trading mode (default unless UPDOWN_LIVE is set)",
    )
    mode.add_argument(
        "--live", action="store_true",
        help="Run in live trading mode (requires UPDOWN_PRIVATE_KEY)",
    )

    parser.add_argument(
        "--assets", nargs="+", default=None,
        help="Assets to trade (e.g. BTC ETH)",
    )
    parser.add_argument(
        "--interval", type=float, default=None,
        help="Seconds between decision cycles (default: 2.0)",
    )
    parser.add_argument(
        "--duration-minutes", type=float, default=0,
        help="How long to run in minutes (0 = indefinitely)",
    )
    parser.add_argument(
        "--sizing-mode", choices=("heuristic", "kelly"), default=None,
        help="Normal-path sizing curve (default: heuristic)",
    )
    parser.add_argument(
        "--no-backfill", action="store_true",
        help="Skip the Binance kline backfill of the volatility history",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    return parser


def apply_overrides(settings: EngineSettings, args: argparse.Namespace) -> EngineSettings:
    """Apply CLI argument overrides to settings."""
    paper_mode: Optional[bool] = None
    if args.live:
        paper_mode = False
    elif args.paper:
        paper_mode = True

    assets = None
    if args.assets:
        wanted = [a.upper() for a in args.assets]
        assets = [settings.asset(a) for a in wanted]

    return with_overrides(
        settings,
        paper_mode=paper_mode,
        assets=assets,
        interval_seconds=args.interval,
        sizing_mode=args.sizing_mode,
        vol_backfill_enabled=False if args.no_backfill else None,
    )


def build_executor(settings: EngineSettings) -> OrderExecutor:
    if settings.paper_mode:
        return PaperExecutor()
    executor = PolymarketLiveExecutor(settings)
    if not executor.ready:
        raise StartupError(f"live executor unavailable: {executor.live_error}")
    return executor


async def _backfill(settings: EngineSettings, volatility: VolatilityEstimator) -> None:
    source = BinanceKlineSource(settings)
    try:
        for asset in settings.symbols:
            if not volatility.needs_backfill(asset):
                continue
            points = await source.fetch_closes(asset)
            volatility.backfill(asset, points)
    finally:
        await source.aclose()


async def _async_main(settings: EngineSettings, args: argparse.Namespace) -> None:
    executor = build_executor(settings)

    volatility = VolatilityEstimator(settings, JsonVolatilityStore(settings.vol_history_path))
    volatility.load()
    if settings.vol_backfill_enabled:
        await _backfill(settings, volatility)

    prices = PythPriceSource(settings)
    market = PolymarketMarketData(settings)
    engine = DecisionEngine(
        settings,
        prices=prices,
        metadata=market,
        books=market,
        executor=executor,
        volatility=volatility,
        recorder=TickRecorder(settings.tick_log_dir),
    )

    try:
        await engine.run(duration_minutes=args.duration_minutes)
    finally:
        await prices.aclose()
        await market.aclose()
        await executor.aclose()

    print(f"\n{'=' * 60}")
    print("Up/Down Engine Session Summary")
    print(f"{'=' * 60}")
    for outcome, count in sorted(engine.outcome_counts.items()):
        print(f"{outcome:<18} {count}")
    print(f"Orders resolved:   {len(engine.orders.outcomes)}")
    print(f"{'=' * 60}")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging("DEBUG" if args.verbose else "INFO")

    settings = apply_overrides(load_settings(), args)

    try:
        asyncio.run(_async_main(settings, args))
    except StartupError as exc:
        LOGGER.error("startup failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        print("Run with --paper for paper trading mode.", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        LOGGER.info("interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
