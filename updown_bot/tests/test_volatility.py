"""Tests for the rolling volatility estimator and its JSON store."""

from __future__ import annotations

import json
import math

import numpy as np
import pytest

from updown_bot.config import AssetSettings, EngineSettings
from updown_bot.models import PricePoint
from updown_bot.volatility import JsonVolatilityStore, VolatilityEstimator


def _settings(**kw) -> EngineSettings:
    return EngineSettings(**kw)


def _filled(vol: VolatilityEstimator, asset: str, prices, start: float = 1_000_000.0) -> None:
    for i, price in enumerate(prices):
        assert vol.record(asset, price, start + i * 60.0)


class TestRecord:
    def test_records_first_sample(self) -> None:
        vol = VolatilityEstimator(_settings())
        assert vol.record("BTC", 100_000.0, 1000.0) is True
        assert vol.history("BTC") == [PricePoint(1000.0, 100_000.0)]

    def test_identical_sample_not_duplicated(self) -> None:
        vol = VolatilityEstimator(_settings())
        vol.record("BTC", 100_000.0, 1000.0)
        assert vol.record("BTC", 100_000.0, 1000.0) is False
        assert len(vol.history("BTC")) == 1

    def test_spacing_enforced(self) -> None:
        vol = VolatilityEstimator(_settings())
        vol.record("BTC", 100.0, 1000.0)
        assert vol.record("BTC", 101.0, 1057.0) is False
        assert vol.record("BTC", 101.0, 1058.0) is True

    def test_older_timestamp_rejected(self) -> None:
        vol = VolatilityEstimator(_settings())
        vol.record("BTC", 100.0, 1000.0)
        assert vol.record("BTC", 100.0, 500.0) is False

    def test_invalid_price_rejected(self) -> None:
        vol = VolatilityEstimator(_settings())
        assert vol.record("BTC", 0.0, 1000.0) is False
        assert vol.record("BTC", float("nan"), 1000.0) is False
        assert vol.history("BTC") == []

    def test_window_capped_oldest_evicted(self) -> None:
        vol = VolatilityEstimator(_settings(vol_window_size=5))
        _filled(vol, "ETH", [float(100 + i) for i in range(8)])
        history = vol.history("ETH")
        assert len(history) == 5
        assert history[0].price == 103.0
        assert history[-1].price == 107.0


class TestEstimate:
    def test_usd_floor_with_few_samples(self) -> None:
        btc = AssetSettings(symbol="BTC", vol_floor_usd=70.0)
        vol = VolatilityEstimator(_settings(assets=[btc]))
        _filled(vol, "BTC", [100_000.0 + i for i in range(5)])
        assert vol.estimate("BTC", 100_000.0) == 70.0

    def test_bps_floor_without_history(self) -> None:
        vol = VolatilityEstimator(_settings())
        assert vol.estimate("BTC", 100_000.0) == pytest.approx(30.0)
        assert vol.estimate("SOL", 200.0) == pytest.approx(0.16)

    def test_realized_sigma(self) -> None:
        vol = VolatilityEstimator(_settings())
        prices = [100.0, 101.0] * 10
        _filled(vol, "ETH", prices)
        returns = np.diff(np.log(np.array(prices)))
        expected = 100.0 * float(np.std(returns, ddof=1))
        assert vol.estimate("ETH", 100.0) == pytest.approx(expected)

    def test_never_below_floor(self) -> None:
        vol = VolatilityEstimator(_settings())
        _filled(vol, "BTC", [100_000.0] * 20)
        assert vol.estimate("BTC", 100_000.0) == pytest.approx(30.0)


class TestRegimeRatio:
    def test_no_history_is_neutral(self) -> None:
        vol = VolatilityEstimator(_settings())
        assert vol.regime_ratio("BTC", 50.0) == 1.0

    def test_ratio_against_bps_floor(self) -> None:
        vol = VolatilityEstimator(_settings())
        vol.record("BTC", 100_000.0, 1000.0)
        assert vol.regime_ratio("BTC", 60.0) == pytest.approx(2.0)

    def test_ratio_against_usd_floor(self) -> None:
        btc = AssetSettings(symbol="BTC", vol_floor_usd=70.0)
        vol = VolatilityEstimator(_settings(assets=[btc]))
        assert vol.regime_ratio("BTC", 35.0) == pytest.approx(0.5)


class TestDrift:
    def test_too_few_points(self) -> None:
        vol = VolatilityEstimator(_settings())
        _filled(vol, "BTC", [100.0] * 5)
        assert vol.estimate_drift("BTC", now=1_000_000.0 + 4 * 60) == 0.0

    def test_log_linear_trend(self) -> None:
        vol = VolatilityEstimator(_settings())
        prices = [100.0 * math.exp(0.0001 * i) for i in range(20)]
        _filled(vol, "BTC", prices)
        drift = vol.estimate_drift("BTC", now=1_000_000.0 + 19 * 60)
        assert drift == pytest.approx(0.0001 * prices[-1], rel=1e-6)

    def test_clamped(self) -> None:
        vol = VolatilityEstimator(_settings())
        prices = [100.0 * math.exp(0.01 * i) for i in range(20)]
        _filled(vol, "BTC", prices)
        drift = vol.estimate_drift("BTC", now=1_000_000.0 + 19 * 60)
        assert drift == pytest.approx(0.001 * prices[-1])

    def test_cached(self) -> None:
        vol = VolatilityEstimator(_settings())
        prices = [100.0 * math.exp(0.0001 * i) for i in range(20)]
        _filled(vol, "BTC", prices)
        now = 1_000_000.0 + 19 * 60
        first = vol.estimate_drift("BTC", now=now)
        vol.record("BTC", 50.0, now + 60)
        assert vol.estimate_drift("BTC", now=now + 61) == first


class TestBackfill:
    def test_replaces_short_history(self) -> None:
        vol = VolatilityEstimator(_settings())
        vol.record("BTC", 100.0, 1000.0)
        points = [PricePoint(2000.0 + i * 60, 100.0 + i) for i in range(60)]
        assert vol.backfill("BTC", points, now=2000.0 + 60 * 60) is True
        assert len(vol.history("BTC")) == 60

    def test_skips_fresh_history(self) -> None:
        vol = VolatilityEstimator(_settings())
        _filled(vol, "BTC", [100.0 + i for i in range(55)], start=0.0)
        now = 54 * 60 + 30
        assert vol.needs_backfill("BTC", now=now) is False
        assert vol.backfill("BTC", [PricePoint(now, 1.0)], now=now) is False


class TestJsonStore:
    def test_persist_and_reload(self, tmp_path) -> None:
        path = tmp_path / "state" / "vol.json"
        store = JsonVolatilityStore(str(path))
        vol = VolatilityEstimator(_settings(), store)
        _filled(vol, "BTC", [100.0, 101.0, 102.0], start=1000.0)

        raw = json.loads(path.read_text())
        assert raw["BTC"][0] == {"ts": 1_000_000, "price": 100.0}

        reloaded = VolatilityEstimator(_settings(), JsonVolatilityStore(str(path)))
        assert reloaded.load() == 3
        assert [p.price for p in reloaded.history("BTC")] == [100.0, 101.0, 102.0]

    def test_missing_file(self, tmp_path) -> None:
        store = JsonVolatilityStore(str(tmp_path / "absent.json"))
        assert store.load() == {}

    def test_corrupt_file_starts_fresh(self, tmp_path) -> None:
        path = tmp_path / "vol.json"
        path.write_text("{not json")
        assert JsonVolatilityStore(str(path)).load() == {}
