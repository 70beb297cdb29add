"""Configuration for the up/down decision engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class AssetSettings:
    """Per-asset tunables.

    ``vol_floor_usd`` pins the volatility floor to a fixed dollar amount;
    when unset the floor is ``price * vol_floor_bps / 10_000``.
    """

    symbol: str
    slug_prefix: str = ""
    pyth_id: str = ""
    binance_pair: str = ""
    vol_floor_bps: float = 5.0
    vol_floor_usd: float | None = None
    max_shares_per_market: int = 500
    kelly_fraction: float = 0.15
    basis_buffer_bps: float = 10.0
    min_edge_surcharge: float = 0.0
    late_edge_penalty: float = 0.0

    @property
    def prefix(self) -> str:
        return self.slug_prefix or self.symbol.lower()


@dataclass(frozen=True)
class SizeBand:
    """Share range for one risk band of the heuristic sizing curve."""

    min_size: int
    max_size: int
    abs_max: int
    edge_cap: float


def _default_assets() -> List[AssetSettings]:
    return [
        AssetSettings(
            symbol="BTC", slug_prefix="btc", binance_pair="BTCUSDT",
            pyth_id="0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
            vol_floor_bps=3.0, max_shares_per_market=600, kelly_fraction=0.15,
            basis_buffer_bps=5.0,
        ),
        AssetSettings(
            symbol="ETH", slug_prefix="eth", binance_pair="ETHUSDT",
            pyth_id="0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
            vol_floor_bps=5.0, max_shares_per_market=300, kelly_fraction=0.08,
            basis_buffer_bps=7.0,
        ),
        AssetSettings(
            symbol="SOL", slug_prefix="sol", binance_pair="SOLUSDT",
            pyth_id="0xef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
            vol_floor_bps=8.0, max_shares_per_market=300, kelly_fraction=0.15,
            basis_buffer_bps=7.0, min_edge_surcharge=0.02, late_edge_penalty=0.015,
        ),
        AssetSettings(
            symbol="XRP", slug_prefix="xrp", binance_pair="XRPUSDT",
            pyth_id="0xec5d399846a9209f3fe5881d70aae9268c94339ff9817e8d18ff19fa05eea1c8",
            vol_floor_bps=6.0, max_shares_per_market=200, kelly_fraction=0.15,
            basis_buffer_bps=7.0,
        ),
    ]


def _default_correlations() -> Dict[str, float]:
    return {
        "BTC-ETH": 0.70,
        "BTC-SOL": 0.60,
        "BTC-XRP": 0.55,
        "ETH-SOL": 0.65,
        "ETH-XRP": 0.50,
        "SOL-XRP": 0.45,
    }


def _default_size_bands() -> Dict[str, SizeBand]:
    return {
        "core": SizeBand(min_size=60, max_size=180, abs_max=250, edge_cap=0.18),
        "medium": SizeBand(min_size=40, max_size=120, abs_max=160, edge_cap=0.12),
        "risky": SizeBand(min_size=10, max_size=40, abs_max=60, edge_cap=0.08),
    }


@dataclass(frozen=True)
class EngineSettings:
    """Settings for the up/down decision engine.

    All env vars are prefixed with ``UPDOWN_``.
    """

    assets: List[AssetSettings] = field(default_factory=_default_assets)
    paper_mode: bool = True

    # ── Scheduling / IO bounds ─────────────────────────────────────
    interval_seconds: float = 2.0
    fetch_timeout_seconds: float = 5.0
    max_price_age_seconds: float = 30.0
    max_rel_diff: float = 0.05  # reference vs live price sanity ceiling

    # ── Market window ──────────────────────────────────────────────
    window_minutes: int = 15
    too_early_minutes: float = 14.0
    rollover_minutes: float = 0.01
    rollover_cooldown_seconds: float = 30.0
    slam_window_enabled: bool = True
    slam_window_utc: Tuple[int, int] = (14 * 60 + 45, 15 * 60)  # minutes of day

    # ── Volatility ─────────────────────────────────────────────────
    vol_window_size: int = 60
    vol_min_points: int = 10
    vol_min_spacing_seconds: float = 58.0
    vol_history_path: str = "vol_history.json"
    vol_backfill_enabled: bool = True
    vol_backfill_fresh_seconds: float = 120.0
    vol_backfill_min_points: int = 50

    # ── Drift ──────────────────────────────────────────────────────
    drift_enabled: bool = True
    drift_window_minutes: float = 60.0
    drift_min_points: int = 10
    drift_clamp_fraction: float = 0.001  # 0.1% of price per minute
    drift_cache_seconds: float = 300.0

    # ── Signal ─────────────────────────────────────────────────────
    time_decay_enabled: bool = True
    time_decay_window_seconds: float = 30.0
    time_decay_max_boost: float = 0.4
    z_history_seconds: float = 30.0
    regime_scalar_min: float = 0.7
    regime_scalar_max: float = 1.4
    calm_regime_scalar: float = 1.1
    calm_threshold_relief: float = 0.85
    early_trading_enabled: bool = True
    us_hours_gate_enabled: bool = True
    us_hours_utc: Tuple[int, int] = (12 * 60 + 45, 19 * 60 + 45)
    # (minutes-left lower bound, z threshold), checked in order, first match wins
    z_tiers_early: Tuple[Tuple[float, float], ...] = (
        (8.0, 1.9), (5.0, 1.6), (3.0, 1.3), (2.0, 0.9), (0.0, 0.7),
    )
    z_tiers_restricted: Tuple[Tuple[float, float], ...] = (
        (3.0, 1.8), (2.0, 0.9), (0.0, 0.7),
    )
    restricted_max_minutes: float = 5.0
    calm_relief_min_minutes: float = 2.0

    weak_signal_z: float = 0.8
    weak_signal_max_shares: int = 70
    weak_signal_max_consecutive: int = 3
    weak_signal_window: int = 10
    weak_signal_max_ratio_count: int = 6

    decay_min_points: int = 5
    decay_threshold_near: float = 0.25
    decay_threshold_far: float = 0.4
    decay_near_minutes: float = 3.0
    decay_min_position: int = 100

    reversal_min_points: int = 4
    reversal_threshold: float = 1.5

    basis_guard_enabled: bool = True
    basis_early_minutes: float = 5.0
    basis_early_stop_bps: float = 20.0
    basis_danger_minutes: float = 2.0
    basis_with_direction_edge: float = 0.05
    basis_override_z: float = 2.0
    basis_override_edge: float = 0.15

    # ── Edge requirements ──────────────────────────────────────────
    late_minutes: float = 3.0
    min_edge_early: float = 0.05
    min_edge_late: float = 0.03
    calm_edge_multiplier: float = 0.6
    low_prob_threshold: float = 0.90
    low_prob_min_edge: float = 0.05

    # ── Late game ──────────────────────────────────────────────────
    z_max_far: float = 2.5
    z_max_near: float = 1.7
    z_max_far_minutes: float = 6.0
    z_max_near_minutes: float = 3.0
    late_game_minutes: float = 2.0
    late_prob_high: float = 0.90
    late_prob_low: float = 0.85
    late_prob_window_seconds: float = 120.0
    late_z_factor: float = 0.7
    late_min_abs_z: float = 0.3
    late_missing_ask: float = 0.99
    z_huge: float = 2.8
    late_extreme_seconds: float = 8.0
    late_min_ev: float = 0.01
    late_max_price: float = 0.98
    layer_offsets: Tuple[float, ...] = (-0.02, -0.01, 0.0, 0.01)
    layer_min_ev: Tuple[float, ...] = (0.006, 0.004, 0.002, 0.0)
    layer_calm_scalar: float = 1.2
    layer_calm_multiplier: float = 0.6
    layer_low_prob_penalty: float = 0.03

    # ── Sizing ─────────────────────────────────────────────────────
    sizing_mode: str = "heuristic"  # "heuristic" | "kelly"
    size_bands: Dict[str, SizeBand] = field(default_factory=_default_size_bands)
    core_min_prob: float = 0.97
    core_min_price: float = 0.90
    risky_max_prob: float = 0.95
    risky_max_price: float = 0.90
    lot_size: int = 10
    time_factor_base: float = 0.7
    time_factor_span: float = 0.6
    early_size_minutes: float = 5.0
    early_size_multiplier: float = 0.4
    kelly_fallback_size: int = 10

    # ── Risk ───────────────────────────────────────────────────────
    default_max_shares: int = 500
    correlations: Dict[str, float] = field(default_factory=_default_correlations)
    correlation_default: float = 0.5
    correlation_limit_multiple: float = 3.0
    # caps averaged for the portfolio limit; independent of the traded subset
    correlation_reference_caps: Tuple[int, ...] = field(
        default_factory=lambda: tuple(a.max_shares_per_market for a in _default_assets())
    )

    # ── Order lifecycle ────────────────────────────────────────────
    order_poll_interval_seconds: float = 5.0
    order_timeout_seconds: float = 30.0
    order_fill_ratio: float = 0.95
    order_outcome_history: int = 200

    # ── Recording ──────────────────────────────────────────────────
    tick_log_dir: str = ""

    # ── Venue / oracle endpoints ───────────────────────────────────
    gamma_base_url: str = "https://gamma-api.polymarket.com"
    clob_base_url: str = "https://clob.polymarket.com"
    crypto_price_url: str = "https://polymarket.com/api/crypto/crypto-price"
    pyth_base_url: str = "https://hermes.pyth.network"
    binance_base_url: str = "https://api.binance.com"
    chain_id: int = 137
    signature_type: int = 1
    private_key: str = ""
    funder: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    @property
    def symbols(self) -> List[str]:
        return [a.symbol for a in self.assets]

    def asset(self, symbol: str) -> AssetSettings:
        """Settings for *symbol*; unknown symbols get the generic defaults."""
        for a in self.assets:
            if a.symbol == symbol:
                return a
        return AssetSettings(symbol=symbol, max_shares_per_market=self.default_max_shares)

    @property
    def window_key(self) -> str:
        return f"{self.window_minutes}m"


def load_settings() -> EngineSettings:
    """Build ``EngineSettings`` from ``UPDOWN_*`` environment variables."""
    assets = _default_assets()
    wanted = {s.upper() for s in _as_csv(os.getenv("UPDOWN_ASSETS"))}
    if wanted:
        assets = [a for a in assets if a.symbol in wanted]
        known = {a.symbol for a in assets}
        assets.extend(AssetSettings(symbol=s) for s in sorted(wanted - known))

    return EngineSettings(
        assets=assets,
        paper_mode=not _as_bool(os.getenv("UPDOWN_LIVE"), False),
        interval_seconds=_as_float(os.getenv("UPDOWN_INTERVAL_SECONDS"), 2.0),
        fetch_timeout_seconds=_as_float(os.getenv("UPDOWN_FETCH_TIMEOUT_SECONDS"), 5.0),
        max_price_age_seconds=_as_float(os.getenv("UPDOWN_MAX_PRICE_AGE_SECONDS"), 30.0),
        max_rel_diff=_as_float(os.getenv("UPDOWN_MAX_REL_DIFF"), 0.05),
        window_minutes=_as_int(os.getenv("UPDOWN_WINDOW_MINUTES"), 15),
        too_early_minutes=_as_float(os.getenv("UPDOWN_TOO_EARLY_MINUTES"), 14.0),
        rollover_cooldown_seconds=_as_float(os.getenv("UPDOWN_ROLLOVER_COOLDOWN_SECONDS"), 30.0),
        slam_window_enabled=_as_bool(os.getenv("UPDOWN_SLAM_WINDOW_ENABLED"), True),
        vol_window_size=_as_int(os.getenv("UPDOWN_VOL_WINDOW_SIZE"), 60),
        vol_min_points=_as_int(os.getenv("UPDOWN_VOL_MIN_POINTS"), 10),
        vol_history_path=os.getenv("UPDOWN_VOL_HISTORY_PATH", "vol_history.json"),
        vol_backfill_enabled=_as_bool(os.getenv("UPDOWN_VOL_BACKFILL_ENABLED"), True),
        drift_enabled=_as_bool(os.getenv("UPDOWN_DRIFT_ENABLED"), True),
        time_decay_enabled=_as_bool(os.getenv("UPDOWN_TIME_DECAY_ENABLED"), True),
        early_trading_enabled=_as_bool(os.getenv("UPDOWN_EARLY_TRADING_ENABLED"), True),
        us_hours_gate_enabled=_as_bool(os.getenv("UPDOWN_US_HOURS_GATE_ENABLED"), True),
        basis_guard_enabled=_as_bool(os.getenv("UPDOWN_BASIS_GUARD_ENABLED"), True),
        reversal_threshold=_as_float(os.getenv("UPDOWN_REVERSAL_THRESHOLD"), 1.5),
        sizing_mode=os.getenv("UPDOWN_SIZING_MODE", "heuristic"),
        order_timeout_seconds=_as_float(os.getenv("UPDOWN_ORDER_TIMEOUT_SECONDS"), 30.0),
        order_poll_interval_seconds=_as_float(os.getenv("UPDOWN_ORDER_POLL_INTERVAL_SECONDS"), 5.0),
        tick_log_dir=os.getenv("UPDOWN_TICK_LOG_DIR", ""),
        gamma_base_url=os.getenv("UPDOWN_GAMMA_BASE_URL", "https://gamma-api.polymarket.com"),
        clob_base_url=os.getenv("UPDOWN_CLOB_BASE_URL", "https://clob.polymarket.com"),
        crypto_price_url=os.getenv(
            "UPDOWN_CRYPTO_PRICE_URL",
            "https://polymarket.com/api/crypto/crypto-price",
        ),
        pyth_base_url=os.getenv("UPDOWN_PYTH_BASE_URL", "https://hermes.pyth.network"),
        binance_base_url=os.getenv("UPDOWN_BINANCE_BASE_URL", "https://api.binance.com"),
        chain_id=_as_int(os.getenv("UPDOWN_CHAIN_ID"), 137),
        signature_type=_as_int(os.getenv("UPDOWN_SIGNATURE_TYPE"), 1),
        private_key=os.getenv("UPDOWN_PRIVATE_KEY", ""),
        funder=os.getenv("UPDOWN_FUNDER", ""),
        api_key=os.getenv("UPDOWN_API_KEY", ""),
        api_secret=os.getenv("UPDOWN_API_SECRET", ""),
        api_passphrase=os.getenv("UPDOWN_API_PASSPHRASE", ""),
    )


def with_overrides(settings: EngineSettings, **overrides) -> EngineSettings:
    """Copy *settings* replacing every override that is not ``None``."""
    cleaned = {k: v for k, v in overrides.items() if v is not None}
    return replace(settings, **cleaned) if cleaned else settings
