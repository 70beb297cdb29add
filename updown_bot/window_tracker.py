"""Per-asset market window state.

Each asset owns at most one ``WindowContext``: the window identity, the
venue metadata, the cached reference start price, the signal state and
the position ledger.  Contexts are keyed by window identity; when the
identity computed from the clock no longer matches, the context is
replaced rather than patched.

Lifecycle per asset::

    UNINITIALIZED -> ACTIVE -> ROLLING -> (discarded) -> ACTIVE(next window)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from updown_bot.config import EngineSettings
from updown_bot.exchanges.base import MarketMetadataProvider
from updown_bot.models import MarketWindow
from updown_bot.risk import PositionLedger
from updown_bot.signal_engine import SignalState

LOGGER = logging.getLogger(__name__)


class WindowPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    ROLLING = "rolling"


@dataclass
class WindowContext:
    """Everything scoped to one asset's current market window."""

    window: MarketWindow
    phase: WindowPhase = WindowPhase.ACTIVE
    signal_state: SignalState = field(default_factory=SignalState)
    ledger: PositionLedger = field(default_factory=PositionLedger)

    @property
    def identity(self) -> str:
        return self.window.slug

    @property
    def reference_price(self) -> Optional[float]:
        return self.window.reference_start_price

    def set_reference_price(self, price: float) -> None:
        self.window = replace(self.window, reference_start_price=price)


class WindowStateTracker:
    """Owns the ``asset -> WindowContext`` table.

    Parameters
    ----------
    settings:
        Engine settings (window length, rollover thresholds, timeouts).
    metadata:
        Collaborator that resolves window metadata and reference prices.
    sleep:
        Awaitable sleep used for the rollover cooldown (injectable for tests).
    """

    def __init__(
        self,
        settings: EngineSettings,
        metadata: MarketMetadataProvider,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._metadata = metadata
        self._sleep = sleep
        self._contexts: Dict[str, WindowContext] = {}

    # ── Identity ───────────────────────────────────────────────────

    def window_bounds(self, now: float) -> tuple[int, int]:
        length = self._settings.window_minutes * 60
        start = int(now // length) * length
        return start, start + length

    def window_identity(self, asset: str, now: float) -> str:
        start, _ = self.window_bounds(now)
        prefix = self._settings.asset(asset).prefix
        return f"{prefix}-updown-{self._settings.window_key}-{start}"

    # ── Table access ───────────────────────────────────────────────

    def context(self, asset: str) -> WindowContext | None:
        return self._contexts.get(asset)

    def phase(self, asset: str) -> WindowPhase:
        ctx = self._contexts.get(asset)
        return ctx.phase if ctx is not None else WindowPhase.UNINITIALIZED

    def is_rolling(self, asset: str) -> bool:
        return self.phase(asset) is WindowPhase.ROLLING

    def net_positions(self) -> Dict[str, int]:
        """Snapshot of the net UP-minus-DOWN shares per asset."""
        return {asset: ctx.ledger.net for asset, ctx in self._contexts.items()}

    # ── Window / reference resolution ──────────────────────────────

    async def ensure_window(self, asset: str, now: float) -> WindowContext | None:
        """Return the context for the current window, fetching metadata if needed.

        A context whose own window has ended is returned as is, even when
        the clock already points at the next window, so the caller rolls
        it over before a new one is created.  Returns None (and leaves the
        table untouched) when metadata cannot be fetched.
        """
        identity = self.window_identity(asset, now)
        ctx = self._contexts.get(asset)
        if ctx is not None and (ctx.identity == identity or ctx.phase is WindowPhase.ROLLING):
            return ctx
        # An expired window is kept until it has rolled over.
        if ctx is not None and self.should_roll(ctx, now):
            return ctx

        start, end = self.window_bounds(now)
        window = MarketWindow(
            window_key=self._settings.window_key,
            asset=asset,
            slug=identity,
            start_ts=float(start),
            end_ts=float(end),
        )
        meta = await self._bounded(self._metadata.get_window_metadata(window), "metadata", asset)
        if meta is None:
            return None

        window = replace(
            window,
            market_id=meta.market_id,
            end_ts=meta.end_ts or window.end_ts,
            tokens=meta.tokens,
            reference_start_price=(
                meta.reference_start_price
                if meta.reference_start_price is not None and meta.reference_start_price > 0
                else None
            ),
        )
        if ctx is not None:
            LOGGER.info("[%s] window %s superseded by %s", asset, ctx.identity, identity)
        ctx = WindowContext(window=window)
        self._contexts[asset] = ctx
        LOGGER.info("[%s] cached meta for market %s (%s)", asset, meta.market_id, identity)
        return ctx

    async def ensure_reference_price(self, ctx: WindowContext) -> float | None:
        """Cached start price of the window; fetched once, fail-closed."""
        if ctx.reference_price is not None:
            return ctx.reference_price

        asset = ctx.window.asset
        price = await self._bounded(
            self._metadata.get_reference_price(ctx.window), "reference price", asset,
        )
        if price is None:
            return None
        if price <= 0:
            LOGGER.error("[%s] invalid reference price %s", asset, price)
            return None
        ctx.set_reference_price(float(price))
        LOGGER.info("[%s] start price cached: %s", asset, price)
        return float(price)

    def minutes_left(self, ctx: WindowContext, now: float) -> float:
        return max((ctx.window.end_ts - now) / 60.0, 0.001)

    def should_roll(self, ctx: WindowContext, now: float) -> bool:
        return self.minutes_left(ctx, now) < self._settings.rollover_minutes

    async def roll(self, asset: str) -> None:
        """Suppress decisions, wait out the cooldown, then drop the window state."""
        ctx = self._contexts.get(asset)
        if ctx is None:
            return
        ctx.phase = WindowPhase.ROLLING
        LOGGER.info(
            "[%s] interval over for %s; resetting in %.0fs",
            asset, ctx.identity, self._settings.rollover_cooldown_seconds,
        )
        await self._sleep(self._settings.rollover_cooldown_seconds)
        if self._contexts.get(asset) is ctx:
            del self._contexts[asset]
        LOGGER.info("[%s] window state discarded", asset)

    # ── Helpers ────────────────────────────────────────────────────

    async def _bounded(self, awaitable: Awaitable, what: str, asset: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._settings.fetch_timeout_seconds)
        except asyncio.TimeoutError:
            LOGGER.warning("[%s] %s fetch timed out", asset, what)
        except Exception as exc:
            LOGGER.warning("[%s] %s fetch failed: %s", asset, what, exc)
        return None
