"""Periodic driver and per-asset tick pipeline.

Each cycle the engine reads prices for every asset in one batch, feeds
them to the volatility history and then runs one tick per asset
concurrently.  A tick for an asset whose previous tick is still running
is skipped, never queued.

Tick pipeline::

    rollover / slam window / window metadata / too early
      -> reference start price -> live price (fresh) -> sanity check
      -> sigma, regime, drift -> both order books (concurrently)
      -> SignalEngine -> PositionSizer -> RiskManager -> OrderLifecycleManager
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from updown_bot.config import EngineSettings
from updown_bot.exchanges.base import (
    MarketMetadataProvider,
    OrderBookProvider,
    OrderExecutor,
    PriceSource,
)
from updown_bot.models import PriceQuote, TradeMode
from updown_bot.order_lifecycle import OrderLifecycleManager
from updown_bot.risk import LedgerInvariantError, RiskManager
from updown_bot.signal_engine import SignalEngine, SignalInputs, in_utc_range
from updown_bot.sizing import OrderIntent, PositionSizer
from updown_bot.tick_recorder import OrderLogEntry, TickRecorder, TickSnapshot
from updown_bot.volatility import VolatilityEstimator
from updown_bot.window_tracker import WindowContext, WindowStateTracker

LOGGER = logging.getLogger(__name__)

# Tick outcomes
DATA_UNAVAILABLE = "data_unavailable"
SANITY_FAILED = "sanity_failed"
REJECTED = "rejected"
RISK_REJECTED = "risk_rejected"
EXECUTION_FAILED = "execution_failed"
SUBMITTED = "submitted"
SKIPPED = "skipped"
ROLLING = "rolling"
TICK_IN_FLIGHT = "tick_in_flight"


@dataclass(frozen=True)
class TickResult:
    asset: str
    outcome: str
    reason: str = ""
    orders_placed: int = 0
    shares_placed: int = 0


class DecisionEngine:
    """Wires the decision pipeline to its collaborators and drives it."""

    def __init__(
        self,
        settings: EngineSettings,
        prices: PriceSource,
        metadata: MarketMetadataProvider,
        books: OrderBookProvider,
        executor: OrderExecutor,
        volatility: Optional[VolatilityEstimator] = None,
        recorder: Optional[TickRecorder] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._prices = prices
        self._metadata = metadata
        self._books = books
        self._executor = executor
        self._clock = clock
        self._sleep = sleep

        self._volatility = volatility or VolatilityEstimator(settings)
        self._tracker = WindowStateTracker(settings, metadata, sleep=sleep)
        self._signal = SignalEngine(settings)
        self._sizer = PositionSizer(settings)
        self._risk = RiskManager(settings)
        self._orders = OrderLifecycleManager(settings, executor)
        self._recorder = recorder or TickRecorder(settings.tick_log_dir)

        self._locks: Dict[str, asyncio.Lock] = {a: asyncio.Lock() for a in settings.symbols}
        self._background: Set[asyncio.Task] = set()
        self._running = False
        self._cycles = 0
        self._outcome_counts: Dict[str, int] = {}

    # ── Accessors ─────────────────────────────────────────────────

    @property
    def tracker(self) -> WindowStateTracker:
        return self._tracker

    @property
    def volatility(self) -> VolatilityEstimator:
        return self._volatility

    @property
    def orders(self) -> OrderLifecycleManager:
        return self._orders

    @property
    def outcome_counts(self) -> Dict[str, int]:
        return dict(self._outcome_counts)

    # ── Driver ────────────────────────────────────────────────────

    async def run(self, duration_minutes: float = 0) -> None:
        """Run the engine loop.

        Parameters
        ----------
        duration_minutes:
            How long to run (0 = indefinitely until stopped).
        """
        self._running = True
        start = time.monotonic()

        LOGGER.info(
            "DecisionEngine: starting (paper=%s, assets=%s, interval=%.1fs, sizing=%s)",
            self._settings.paper_mode,
            self._settings.symbols,
            self._settings.interval_seconds,
            self._settings.sizing_mode,
        )

        try:
            while self._running:
                if duration_minutes > 0:
                    elapsed = (time.monotonic() - start) / 60.0
                    if elapsed >= duration_minutes:
                        LOGGER.info("DecisionEngine: duration limit reached (%.1f min)", elapsed)
                        break

                await self.run_cycle()
                await self._sleep(self._settings.interval_seconds)

        except asyncio.CancelledError:
            LOGGER.info("DecisionEngine: cancelled")
        finally:
            self._running = False
            await self.aclose()
            self._log_summary()

    def stop(self) -> None:
        """Signal the engine to stop after the current cycle."""
        self._running = False

    async def run_cycle(self) -> List[TickResult]:
        self._cycles += 1
        now = self._clock()
        symbols = self._settings.symbols

        try:
            quotes = await asyncio.wait_for(
                self._prices.get_prices(symbols), timeout=self._settings.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("price batch timed out")
            quotes = {}
        except Exception as exc:
            LOGGER.warning("price batch failed: %s", exc)
            quotes = {}

        for asset, quote in quotes.items():
            self._volatility.record(asset, quote.price, quote.timestamp)

        results = await asyncio.gather(
            *(self.tick(asset, quotes.get(asset), now) for asset in symbols)
        )
        for r in results:
            self._outcome_counts[r.outcome] = self._outcome_counts.get(r.outcome, 0) + 1
        return list(results)

    async def tick(self, asset: str, quote: Optional[PriceQuote], now: Optional[float] = None) -> TickResult:
        """One decision for one asset.

        Never raises for expected no-trade outcomes; a broken ledger
        invariant propagates.
        """
        lock = self._locks.setdefault(asset, asyncio.Lock())
        if lock.locked():
            LOGGER.debug("[%s] previous tick still running", asset)
            return TickResult(asset, TICK_IN_FLIGHT)
        async with lock:
            try:
                return await self._tick(asset, quote, self._clock() if now is None else now)
            except LedgerInvariantError:
                raise
            except Exception as exc:
                LOGGER.exception("[%s] tick failed: %s", asset, exc)
                return TickResult(asset, DATA_UNAVAILABLE, f"error: {exc}")

    # ── Pipeline ──────────────────────────────────────────────────

    async def _tick(self, asset: str, quote: Optional[PriceQuote], now: float) -> TickResult:
        cfg = self._settings
        tracker = self._tracker

        if tracker.is_rolling(asset):
            return TickResult(asset, ROLLING)

        if cfg.slam_window_enabled and in_utc_range(now, cfg.slam_window_utc):
            return TickResult(asset, SKIPPED, "slam_window")

        ctx = await tracker.ensure_window(asset, now)
        if ctx is None:
            return TickResult(asset, DATA_UNAVAILABLE, "metadata")

        if tracker.should_roll(ctx, now):
            self._spawn(tracker.roll(asset))
            return TickResult(asset, ROLLING, ctx.identity)

        minutes_left = tracker.minutes_left(ctx, now)
        if minutes_left > cfg.too_early_minutes:
            return TickResult(asset, SKIPPED, "too_early")

        start_price = await tracker.ensure_reference_price(ctx)
        if start_price is None:
            return TickResult(asset, DATA_UNAVAILABLE, "reference_price")

        if quote is None:
            return TickResult(asset, DATA_UNAVAILABLE, "price")
        if now - quote.timestamp > cfg.max_price_age_seconds:
            LOGGER.warning("[%s] stale price (%.0fs old)", asset, now - quote.timestamp)
            return TickResult(asset, DATA_UNAVAILABLE, "stale_price")
        current = quote.price

        rel_diff = abs(current - start_price) / start_price
        if rel_diff > cfg.max_rel_diff:
            LOGGER.warning(
                "[%s] sanity check failed: start=%.4f current=%.4f (%.1f%%)",
                asset, start_price, current, rel_diff * 100,
            )
            return TickResult(asset, SANITY_FAILED, f"rel_diff={rel_diff:.4f}")

        sigma = self._volatility.estimate(asset, current)
        ratio = self._volatility.regime_ratio(asset, sigma)
        drift = self._volatility.estimate_drift(asset, now) if cfg.drift_enabled else 0.0

        tokens = ctx.window.tokens
        if tokens is None:
            return TickResult(asset, DATA_UNAVAILABLE, "tokens")
        try:
            up_ask, down_ask = await asyncio.wait_for(
                asyncio.gather(
                    self._books.get_best_ask(tokens.up),
                    self._books.get_best_ask(tokens.down),
                ),
                timeout=cfg.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("[%s] order book fetch timed out", asset)
            return TickResult(asset, DATA_UNAVAILABLE, "order_book")
        except Exception as exc:
            LOGGER.warning("[%s] order book fetch failed: %s", asset, exc)
            return TickResult(asset, DATA_UNAVAILABLE, "order_book")

        ledger = ctx.ledger
        inputs = SignalInputs(
            asset=asset,
            start_price=start_price,
            current_price=current,
            minutes_left=minutes_left,
            sigma=sigma,
            regime_ratio=ratio,
            now=now,
            drift=drift,
            up_ask=up_ask,
            down_ask=down_ask,
            shares_up=ledger.shares_up,
            shares_down=ledger.shares_down,
        )
        result = self._signal.evaluate(inputs, ctx.signal_state)
        ctx.signal_state = result.state

        metrics = result.decision.metrics if result.decision else result.rejection.metrics
        if metrics is not None:
            LOGGER.info(
                "[%s] %.2f min | start=%.4f now=%.4f sigma=%.4f drift=%.4f z=%.3f "
                "p_up=%.4f p_down=%.4f | asks up=%s down=%s | shares up=%d down=%d",
                asset, minutes_left, start_price, current, sigma, drift, metrics.z,
                metrics.p_up, metrics.p_down, up_ask, down_ask,
                ledger.shares_up, ledger.shares_down,
            )

        rejection = result.rejection
        self._recorder.record_tick(TickSnapshot(
            timestamp=now, asset=asset, slug=ctx.identity, minutes_left=minutes_left,
            start_price=start_price, current_price=current, sigma=sigma, drift=drift,
            z=metrics.z if metrics else 0.0,
            p_up=metrics.p_up if metrics else 0.0,
            p_down=metrics.p_down if metrics else 0.0,
            up_ask=up_ask, down_ask=down_ask,
            shares_up=ledger.shares_up, shares_down=ledger.shares_down,
            outcome=REJECTED if rejection else SUBMITTED,
            reason=rejection.reason if rejection else result.decision.mode.value,
        ))

        if rejection is not None:
            return TickResult(asset, REJECTED, rejection.reason)

        intents = self._sizer.plan(result.decision, asset)
        if not intents:
            return TickResult(asset, REJECTED, "zero_size")
        return await self._execute(asset, ctx, intents)

    async def _execute(self, asset: str, ctx: WindowContext, intents: List[OrderIntent]) -> TickResult:
        ledger = ctx.ledger
        tokens = ctx.window.tokens
        expiration = int(ctx.window.end_ts)
        placed = shares = 0
        extreme_placed = False
        risk_reason = ""

        for intent in intents:
            # Layers behind a successful extreme order are only a fallback.
            if extreme_placed:
                break

            cap = self._risk.can_place_order(ledger, intent.side, intent.size, asset)
            corr = self._risk.check_correlation_risk(
                self._tracker.net_positions(), asset, intent.side, intent.size,
            )
            if not cap.ok or not corr.ok:
                risk_reason = cap.reason if not cap.ok else "correlation_limit"
                LOGGER.info(
                    "[%s] risk blocked %s %s %d @ %.2f: %s (total %d->%d, net %d->%d, "
                    "portfolio %.1f/%.1f)",
                    asset, intent.mode.value, intent.side.value, intent.size, intent.price,
                    risk_reason, cap.total_before, cap.total_after, cap.net_before,
                    cap.net_after, corr.portfolio_risk, corr.limit,
                )
                continue

            submitted = await self._orders.submit(
                asset, intent, tokens.for_side(intent.side), expiration,
            )
            if not submitted.success:
                continue

            ledger.add(intent.side, intent.size)
            extreme_placed = intent.mode is TradeMode.EXTREME
            placed += 1
            shares += intent.size
            self._recorder.record_order(OrderLogEntry(
                timestamp=self._clock(),
                asset=asset,
                order_id=submitted.order_id or "",
                side=intent.side.value,
                price=intent.price,
                size=intent.size,
                order_type=intent.mode.value if intent.layer is None else f"{intent.mode.value}_{intent.layer}",
            ))

        if placed:
            return TickResult(asset, SUBMITTED, intents[0].mode.value, placed, shares)
        if risk_reason:
            return TickResult(asset, RISK_REJECTED, risk_reason)
        return TickResult(asset, EXECUTION_FAILED, "submit_failed")

    # ── Lifecycle ─────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._orders.aclose()
        self._recorder.close()

    def _log_summary(self) -> None:
        LOGGER.info(
            "DecisionEngine: %d cycles | outcomes=%s | orders resolved=%d",
            self._cycles, self._outcome_counts, len(self._orders.outcomes),
        )
