"""Share caps and correlation-adjusted portfolio exposure.

Two independent checks run before every order:

* ``can_place_order`` - per-market share cap.  Going over the cap is
  allowed only for an order that strictly shrinks the absolute net
  position (a hedge).
* ``check_correlation_risk`` - ``sqrt(n' C n)`` over every asset's net
  position, including the proposed order, against three times the
  average of the reference cap table (the full default asset set, so
  trading a subset of assets does not move the limit).

Usage::

    risk = RiskManager(settings)
    cap = risk.can_place_order(ledger, Side.UP, 120, "BTC")
    corr = risk.check_correlation_risk(tracker.net_positions(), "BTC", Side.UP, 120)
    if cap.ok and corr.ok:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping

from updown_bot.config import EngineSettings
from updown_bot.correlation import CorrelationMatrix
from updown_bot.models import Side


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerInvariantError(ValueError):
    """A ledger update that would break its share accounting."""


@dataclass
class PositionLedger:
    """Shares bought in one asset's current window.

    Only grows; ``total_shares_bought == shares_up + shares_down``.
    """

    total_shares_bought: int = 0
    shares_up: int = 0
    shares_down: int = 0

    @property
    def net(self) -> int:
        return self.shares_up - self.shares_down

    def shares(self, side: Side) -> int:
        return self.shares_up if side is Side.UP else self.shares_down

    @property
    def has_position(self) -> bool:
        return self.shares_up > 0 or self.shares_down > 0

    def add(self, side: Side, size: int) -> None:
        if size <= 0:
            raise LedgerInvariantError(f"ledger size must be positive, got {size}")
        if side is Side.UP:
            self.shares_up += size
        else:
            self.shares_down += size
        self.total_shares_bought += size


# ---------------------------------------------------------------------------
# Check results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskCheck:
    """Result of the per-market cap check."""

    ok: bool
    reason: str
    total_before: int
    total_after: int
    net_before: int
    net_after: int


@dataclass(frozen=True)
class CorrelationCheck:
    """Result of the portfolio correlation check."""

    ok: bool
    portfolio_risk: float
    limit: float


# ---------------------------------------------------------------------------
# Risk manager
# ---------------------------------------------------------------------------


class RiskManager:
    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings
        self._correlation = CorrelationMatrix(
            settings.correlations, default=settings.correlation_default,
        )

    @property
    def correlation(self) -> CorrelationMatrix:
        return self._correlation

    def max_shares(self, asset: str) -> int:
        return self._settings.asset(asset).max_shares_per_market

    def can_place_order(
        self,
        ledger: PositionLedger,
        side: Side,
        size: int,
        asset: str,
    ) -> RiskCheck:
        cap = self.max_shares(asset)
        total_before = ledger.total_shares_bought
        net_before = ledger.net
        total_after = total_before + size
        net_after = net_before + side.sign * size

        if total_after <= cap:
            reason, ok = "within_cap", True
        elif abs(net_after) < abs(net_before):
            reason, ok = "hedge_beyond_cap", True
        else:
            reason, ok = "risk_increase_beyond_cap", False

        return RiskCheck(
            ok=ok,
            reason=reason,
            total_before=total_before,
            total_after=total_after,
            net_before=net_before,
            net_after=net_after,
        )

    def correlation_limit(self) -> float:
        caps = list(self._settings.correlation_reference_caps)
        if not caps:
            caps = [self._settings.default_max_shares]
        return self._settings.correlation_limit_multiple * (sum(caps) / len(caps))

    def check_correlation_risk(
        self,
        net_positions: Mapping[str, int],
        asset: str,
        side: Side,
        size: int,
    ) -> CorrelationCheck:
        """Portfolio risk after adding ``size`` shares of ``side`` in ``asset``.

        ``net_positions`` must be a consistent snapshot of every asset's net.
        """
        positions: Dict[str, int] = {a: n for a, n in net_positions.items() if n != 0}
        positions[asset] = positions.get(asset, 0) + side.sign * size

        risk = self._correlation.portfolio_risk(positions)
        limit = self.correlation_limit()
        return CorrelationCheck(ok=risk <= limit, portfolio_risk=risk, limit=limit)
