"""Tests for engine configuration."""

from __future__ import annotations

import dataclasses
import os
from unittest import mock

import pytest

from updown_bot.config import EngineSettings, load_settings, with_overrides


class TestEngineSettingsDefaults:
    def test_defaults(self) -> None:
        s = EngineSettings()
        assert s.symbols == ["BTC", "ETH", "SOL", "XRP"]
        assert s.paper_mode is True
        assert s.interval_seconds == 2.0
        assert s.max_rel_diff == 0.05
        assert s.window_key == "15m"
        assert s.sizing_mode == "heuristic"

    def test_frozen(self) -> None:
        s = EngineSettings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            s.paper_mode = False  # type: ignore[misc]

    def test_asset_caps_and_floors(self) -> None:
        s = EngineSettings()
        assert s.asset("BTC").max_shares_per_market == 600
        assert s.asset("XRP").max_shares_per_market == 200
        assert s.asset("BTC").vol_floor_bps == 3.0
        assert s.asset("SOL").vol_floor_bps == 8.0
        assert s.asset("ETH").kelly_fraction == 0.08

    def test_unknown_asset_gets_generic_defaults(self) -> None:
        s = EngineSettings()
        doge = s.asset("DOGE")
        assert doge.max_shares_per_market == 500
        assert doge.vol_floor_bps == 5.0
        assert doge.prefix == "doge"


class TestLoadSettings:
    def test_all_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            s = load_settings()
        assert s.paper_mode is True
        assert s.symbols == ["BTC", "ETH", "SOL", "XRP"]

    def test_live_from_env(self) -> None:
        with mock.patch.dict(os.environ, {"UPDOWN_LIVE": "true"}, clear=True):
            s = load_settings()
        assert s.paper_mode is False

    def test_assets_filter(self) -> None:
        with mock.patch.dict(os.environ, {"UPDOWN_ASSETS": "eth, btc"}, clear=True):
            s = load_settings()
        assert s.symbols == ["BTC", "ETH"]

    def test_assets_filter_adds_unknown(self) -> None:
        with mock.patch.dict(os.environ, {"UPDOWN_ASSETS": "BTC,DOGE"}, clear=True):
            s = load_settings()
        assert s.symbols == ["BTC", "DOGE"]

    def test_numeric_overrides(self) -> None:
        env = {
            "UPDOWN_INTERVAL_SECONDS": "1.5",
            "UPDOWN_VOL_WINDOW_SIZE": "30",
            "UPDOWN_REVERSAL_THRESHOLD": "2.0",
            "UPDOWN_SIZING_MODE": "kelly",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            s = load_settings()
        assert s.interval_seconds == 1.5
        assert s.vol_window_size == 30
        assert s.reversal_threshold == 2.0
        assert s.sizing_mode == "kelly"

    def test_bool_flags(self) -> None:
        env = {"UPDOWN_DRIFT_ENABLED": "0", "UPDOWN_SLAM_WINDOW_ENABLED": "no"}
        with mock.patch.dict(os.environ, env, clear=True):
            s = load_settings()
        assert s.drift_enabled is False
        assert s.slam_window_enabled is False


class TestWithOverrides:
    def test_none_values_ignored(self) -> None:
        s = EngineSettings()
        out = with_overrides(s, interval_seconds=None, sizing_mode="kelly")
        assert out.interval_seconds == 2.0
        assert out.sizing_mode == "kelly"

    def test_no_overrides_returns_same(self) -> None:
        s = EngineSettings()
        assert with_overrides(s, paper_mode=None) is s
