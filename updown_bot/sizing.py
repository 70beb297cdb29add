"""Order sizing for the three trade modes.

Usage::

    sizer = PositionSizer(settings)
    intents = sizer.plan(decision, "BTC")
    for intent in intents:
        ...

``plan`` returns intents in submission order.  For an EXTREME decision
the first intent is the single Kelly-sized order and the rest are the
layered fallback, used only when the big order cannot be placed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from updown_bot.config import EngineSettings
from updown_bot.models import Side, TradeMode
from updown_bot.signal_engine import SignalDecision

LOGGER = logging.getLogger(__name__)

BAND_CORE = "core"
BAND_MEDIUM = "medium"
BAND_RISKY = "risky"


@dataclass(frozen=True)
class OrderIntent:
    """One sized limit order the engine may submit."""

    mode: TradeMode
    side: Side
    price: float
    size: int
    probability: float
    edge: float
    band: str = BAND_MEDIUM
    layer: Optional[int] = None


def _round_price(price: float) -> float:
    return round(price + 1e-9, 2)


class PositionSizer:
    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings

    # ── Primitives ─────────────────────────────────────────────────

    def risk_band(self, probability: float, price: float) -> str:
        cfg = self._settings
        if probability >= cfg.core_min_prob and price >= cfg.core_min_price:
            return BAND_CORE
        if probability <= cfg.risky_max_prob and price <= cfg.risky_max_price:
            return BAND_RISKY
        return BAND_MEDIUM

    def default_min_edge(self, minutes_left: float) -> float:
        cfg = self._settings
        return cfg.min_edge_early if minutes_left > cfg.late_minutes else cfg.min_edge_late

    def _round_lot(self, size: float) -> int:
        lot = self._settings.lot_size
        return int(math.floor(size / lot + 0.5)) * lot

    def time_factor(self, minutes_left: float) -> float:
        cfg = self._settings
        horizon = cfg.late_minutes
        clamped = max(0.0, min(horizon, minutes_left))
        return cfg.time_factor_base + cfg.time_factor_span * (1.0 - clamped / horizon)

    def size_for_trade(
        self,
        edge: float,
        minutes_left: float,
        band: str = BAND_MEDIUM,
        min_edge: Optional[float] = None,
    ) -> int:
        """Heuristic curve size; 0 when ``edge`` does not clear the minimum."""
        cfg = self._settings
        floor_edge = self.default_min_edge(minutes_left) if min_edge is None else min_edge
        if edge <= floor_edge:
            return 0

        curve = cfg.size_bands.get(band) or cfg.size_bands[BAND_MEDIUM]
        effective_max = max(curve.edge_cap, floor_edge + 0.01)
        norm = (min(edge, curve.edge_cap) - floor_edge) / (effective_max - floor_edge)
        norm = max(0.0, min(1.0, norm))

        base = curve.min_size + norm * (curve.max_size - curve.min_size)
        size = self._round_lot(base * self.time_factor(minutes_left))
        if minutes_left > cfg.early_size_minutes:
            size = self._round_lot(size * cfg.early_size_multiplier)
        return max(0, min(size, curve.abs_max))

    def kelly_size(
        self,
        probability: float,
        price: float,
        max_shares: int,
        fraction: float,
        min_edge: float = 0.0,
    ) -> int:
        """Fractional Kelly in whole lots; 0 when the edge is not positive."""
        cfg = self._settings
        if probability - price <= min_edge:
            return 0
        if price >= 0.99 or price <= 0.01:
            return min(cfg.kelly_fallback_size, max_shares)

        kelly = (probability - price) / (1.0 - price)
        raw = kelly * fraction * max_shares
        lots = int(math.floor(raw / cfg.lot_size)) * cfg.lot_size
        return min(max(cfg.lot_size, lots), max_shares)

    # ── Planning ───────────────────────────────────────────────────

    def plan(self, decision: SignalDecision, asset: str) -> List[OrderIntent]:
        if decision.mode is TradeMode.NORMAL:
            intent = self._normal(decision, asset)
            return [intent] if intent is not None else []
        if decision.mode is TradeMode.EXTREME:
            big = self._extreme(decision, asset)
            layers = self.layers(decision, asset)
            return ([big] if big is not None else []) + layers
        return self.layers(decision, asset)

    def _normal(self, decision: SignalDecision, asset: str) -> Optional[OrderIntent]:
        cfg = self._settings
        price = _round_price(decision.ask)
        band = self.risk_band(decision.probability, price)
        if cfg.sizing_mode == "kelly":
            asset_cfg = cfg.asset(asset)
            size = self.kelly_size(
                decision.probability, price,
                asset_cfg.max_shares_per_market, asset_cfg.kelly_fraction,
                min_edge=self.default_min_edge(decision.minutes_left),
            )
        else:
            size = self.size_for_trade(decision.edge, decision.minutes_left, band)
        if size <= 0:
            LOGGER.info(
                "[%s] edge %.4f positive but size=0 (band=%s, %.2f min)",
                asset, decision.edge, band, decision.minutes_left,
            )
            return None
        return OrderIntent(
            mode=TradeMode.NORMAL, side=decision.side, price=price, size=size,
            probability=decision.probability, edge=decision.edge, band=band,
        )

    def _extreme(self, decision: SignalDecision, asset: str) -> Optional[OrderIntent]:
        cfg = self._settings
        asset_cfg = cfg.asset(asset)
        price = _round_price(min(decision.ask, cfg.late_max_price))
        size = self.kelly_size(
            decision.probability, price,
            asset_cfg.max_shares_per_market, asset_cfg.kelly_fraction,
        )
        if size <= 0:
            return None
        return OrderIntent(
            mode=TradeMode.EXTREME, side=decision.side, price=price, size=size,
            probability=decision.probability, edge=decision.probability - price,
            band=self.risk_band(decision.probability, price),
        )

    def layers(self, decision: SignalDecision, asset: str) -> List[OrderIntent]:
        """Late-game ladder of limit prices around the ask."""
        cfg = self._settings
        prob = decision.probability
        ev_scale = cfg.layer_calm_multiplier if decision.regime_scalar < cfg.layer_calm_scalar else 1.0
        penalty = cfg.asset(asset).late_edge_penalty
        if prob < cfg.low_prob_threshold:
            penalty += cfg.layer_low_prob_penalty

        intents: List[OrderIntent] = []
        for i, (offset, min_ev) in enumerate(zip(cfg.layer_offsets, cfg.layer_min_ev)):
            target = max(0.01, min(0.99, decision.ask + offset))
            ev = prob - target
            if ev < min_ev * ev_scale + penalty:
                continue
            price = _round_price(target)
            band = self.risk_band(prob, price)
            size = self.size_for_trade(ev, decision.minutes_left, band, min_edge=0.0)
            if size <= 0:
                continue
            intents.append(OrderIntent(
                mode=TradeMode.LATE_LAYER, side=decision.side, price=price,
                size=size, probability=prob, edge=ev, band=band, layer=i,
            ))
        return intents
