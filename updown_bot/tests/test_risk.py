"""Tests for the per-market share cap and the correlation exposure cap."""

from __future__ import annotations

import math

import pytest

from updown_bot.config import AssetSettings, EngineSettings
from updown_bot.models import Side
from updown_bot.risk import LedgerInvariantError, PositionLedger, RiskManager


def _ledger(up: int = 0, down: int = 0) -> PositionLedger:
    return PositionLedger(total_shares_bought=up + down, shares_up=up, shares_down=down)


@pytest.fixture
def capped() -> RiskManager:
    return RiskManager(EngineSettings(assets=[AssetSettings(symbol="BTC", max_shares_per_market=500)]))


class TestPositionLedger:
    def test_add_keeps_total_consistent(self) -> None:
        ledger = PositionLedger()
        ledger.add(Side.UP, 30)
        ledger.add(Side.DOWN, 10)
        assert ledger.total_shares_bought == ledger.shares_up + ledger.shares_down == 40
        assert ledger.net == 20
        assert ledger.has_position is True

    def test_rejects_non_positive(self) -> None:
        with pytest.raises(LedgerInvariantError):
            PositionLedger().add(Side.UP, 0)


class TestCanPlaceOrder:
    def test_within_cap(self, capped: RiskManager) -> None:
        check = capped.can_place_order(_ledger(up=400), Side.UP, 100, "BTC")
        assert check.ok is True
        assert check.reason == "within_cap"
        assert check.total_after == 500

    def test_risk_increase_beyond_cap(self, capped: RiskManager) -> None:
        check = capped.can_place_order(_ledger(up=450), Side.UP, 100, "BTC")
        assert check.ok is False
        assert check.reason == "risk_increase_beyond_cap"
        assert (check.net_before, check.net_after) == (450, 550)

    def test_hedge_beyond_cap(self, capped: RiskManager) -> None:
        check = capped.can_place_order(_ledger(up=450), Side.DOWN, 100, "BTC")
        assert check.ok is True
        assert check.reason == "hedge_beyond_cap"
        assert check.total_after == 550
        assert check.net_after == 350

    def test_equal_abs_net_is_not_a_hedge(self, capped: RiskManager) -> None:
        check = capped.can_place_order(_ledger(up=450), Side.DOWN, 900, "BTC")
        assert check.net_after == -450
        assert check.ok is False

    def test_unknown_asset_uses_default_cap(self) -> None:
        risk = RiskManager(EngineSettings())
        assert risk.max_shares("DOGE") == 500
        assert risk.max_shares("BTC") == 600


class TestSide:
    def test_sign_drives_net(self) -> None:
        assert (Side.UP.sign, Side.DOWN.sign) == (1, -1)


class TestCorrelationRisk:
    def test_limit_is_three_times_average_cap(self) -> None:
        risk = RiskManager(EngineSettings())
        assert risk.correlation_limit() == pytest.approx(3 * (600 + 300 + 300 + 200) / 4)

    def test_limit_ignores_traded_subset(self) -> None:
        btc_only = EngineSettings(assets=[EngineSettings().asset("BTC")])
        assert RiskManager(btc_only).correlation_limit() == pytest.approx(1050.0)

    def test_limit_from_reference_caps(self) -> None:
        settings = EngineSettings(correlation_reference_caps=(100, 300))
        assert RiskManager(settings).correlation_limit() == pytest.approx(600.0)

    def test_correlated_longs_blocked(self) -> None:
        risk = RiskManager(EngineSettings())
        check = risk.check_correlation_risk({"BTC": 600}, "ETH", Side.UP, 600)
        assert check.portfolio_risk == pytest.approx(600 * math.sqrt(3.4))
        assert check.ok is False

    def test_offsetting_positions_allowed(self) -> None:
        risk = RiskManager(EngineSettings())
        check = risk.check_correlation_risk({"BTC": 600}, "ETH", Side.DOWN, 600)
        assert check.portfolio_risk == pytest.approx(600 * math.sqrt(0.6))
        assert check.ok is True

    def test_proposed_order_added_to_existing_net(self) -> None:
        risk = RiskManager(EngineSettings())
        check = risk.check_correlation_risk({"BTC": 100, "ETH": 0}, "BTC", Side.UP, 50)
        assert check.portfolio_risk == pytest.approx(150.0)

    def test_at_limit_is_ok(self) -> None:
        risk = RiskManager(EngineSettings())
        check = risk.check_correlation_risk({}, "BTC", Side.UP, 1050)
        assert check.portfolio_risk == pytest.approx(1050.0)
        assert check.ok is True
