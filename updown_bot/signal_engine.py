"""Directional signal and gating for up/down windows.

The model treats the reference price as a driftless-after-correction
diffusion over the minutes left in the window::

    sigma_t = sigma_per_min * decay_factor * sqrt(minutes_left)
    z       = (current - start - drift * minutes_left) / sigma_t
    p_up    = Phi(z),  p_down = 1 - p_up

``SignalEngine.evaluate`` is a pure function of ``(SignalInputs,
SignalState)``.  It returns the next ``SignalState`` together with
either a ``SignalDecision`` (side, probability, ask, mode) or a
``Rejection`` carrying a machine-readable reason.  Gates run in this
order, the first failing gate wins:

1. weak-signal position limit
2. graduated, regime-scaled ``|z|`` threshold
3. signal decay while holding a position
4. weak-signal persistence (consecutive and ratio counters)
5. z reversal across the trailing window (hard stop)
6. basis-risk guard near the strike
7. late-game selection (entry-reversal veto, then late side / extreme)
8. normal candidate selection against the minimum edge
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

from scipy.stats import norm as _norm

from updown_bot.config import AssetSettings, EngineSettings
from updown_bot.models import Side, TradeMode

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignalState:
    """Per asset+window memory of the signal.

    ``z_history`` holds ``(z, timestamp)`` pairs inside the trailing
    window.  ``entry_z`` is captured once, on the first tick with a
    position, and survives until the window is discarded.
    """

    z_history: Tuple[Tuple[float, float], ...] = ()
    entry_z: Optional[float] = None
    weak_signal_count: int = 0
    weak_signal_history: Tuple[bool, ...] = ()

    @property
    def z_values(self) -> list[float]:
        return [z for z, _ in self.z_history]


@dataclass(frozen=True)
class SignalInputs:
    asset: str
    start_price: float
    current_price: float
    minutes_left: float
    sigma: float            # USD per minute, already floored
    regime_ratio: float
    now: float              # unix seconds
    drift: float = 0.0      # USD per minute
    up_ask: Optional[float] = None
    down_ask: Optional[float] = None
    shares_up: int = 0
    shares_down: int = 0


@dataclass(frozen=True)
class SignalMetrics:
    z: float
    p_up: float
    p_down: float
    sigma_t: float
    raw_regime_scalar: float
    regime_scalar: float
    z_min: Optional[float] = None


@dataclass(frozen=True)
class SignalDecision:
    mode: TradeMode
    side: Side
    probability: float
    ask: float
    edge: float
    minutes_left: float
    metrics: SignalMetrics

    @property
    def z(self) -> float:
        return self.metrics.z

    @property
    def regime_scalar(self) -> float:
        return self.metrics.regime_scalar

    @property
    def extreme(self) -> bool:
        return self.mode is TradeMode.EXTREME


@dataclass(frozen=True)
class Rejection:
    reason: str
    detail: str = ""
    metrics: Optional[SignalMetrics] = None


@dataclass(frozen=True)
class SignalResult:
    outcome: SignalDecision | Rejection
    state: SignalState

    @property
    def decision(self) -> Optional[SignalDecision]:
        return self.outcome if isinstance(self.outcome, SignalDecision) else None

    @property
    def rejection(self) -> Optional[Rejection]:
        return self.outcome if isinstance(self.outcome, Rejection) else None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def normal_cdf(z: float) -> float:
    """Standard normal CDF."""
    return float(_norm.cdf(z))


def _sign(x: float) -> int:
    if x > 0:
        return 1
    if x < 0:
        return -1
    return 0


def compute_z(
    start_price: float,
    current_price: float,
    minutes_left: float,
    sigma_per_min: float,
    drift: float = 0.0,
) -> Tuple[float, float]:
    """Return ``(z, sigma_t)`` for the remaining horizon."""
    sigma_t = sigma_per_min * math.sqrt(max(minutes_left, 0.0))
    if sigma_t <= 0:
        return 0.0, 0.0
    z = (current_price - start_price - drift * minutes_left) / sigma_t
    return z, sigma_t


def time_decay_factor(minutes_left: float, window_seconds: float = 30.0, max_boost: float = 0.4) -> float:
    """Volatility multiplier for the final seconds: 1.0 rising linearly to ``1 + max_boost``."""
    secs_left = minutes_left * 60.0
    if secs_left >= window_seconds or window_seconds <= 0:
        return 1.0
    t = max(0.0, min(1.0, (window_seconds - secs_left) / window_seconds))
    return 1.0 + t * max_boost


def regime_scalar(ratio: float, lower: float = 0.7, upper: float = 1.4) -> Tuple[float, float]:
    """Return ``(raw, clamped)`` where raw is ``sqrt(ratio)``."""
    raw = math.sqrt(max(ratio, 0.0))
    return raw, max(lower, min(upper, raw))


def sign_flip_exceeds(old_z: float, new_z: float, threshold: float) -> bool:
    """True iff the two values have strictly opposite non-zero signs and ``|new - old| > threshold``."""
    old_sign, new_sign = _sign(old_z), _sign(new_z)
    if old_sign == 0 or new_sign == 0 or old_sign == new_sign:
        return False
    return abs(new_z - old_z) > threshold


def detect_reversal(z_values: Sequence[float], min_points: int = 4, threshold: float = 1.5) -> bool:
    """Compare the oldest and newest of the last ``min_points`` samples."""
    if len(z_values) < min_points:
        return False
    recent = z_values[-min_points:]
    return sign_flip_exceeds(recent[0], recent[-1], threshold)


def z_change(z_values: Sequence[float], points: int = 5) -> Optional[float]:
    """``first - last`` over the last ``points`` samples; positive means z fell."""
    if len(z_values) < points:
        return None
    recent = z_values[-points:]
    return recent[0] - recent[-1]


def minute_of_day_utc(now: float) -> int:
    d = datetime.fromtimestamp(now, tz=timezone.utc)
    return d.hour * 60 + d.minute


def in_utc_range(now: float, bounds: Tuple[int, int]) -> bool:
    start, end = bounds
    return start <= minute_of_day_utc(now) < end


def dynamic_z_max(minutes_left: float, settings: EngineSettings) -> float:
    """|z| above which late-game mode is entered; interpolated between far and near."""
    far_m, near_m = settings.z_max_far_minutes, settings.z_max_near_minutes
    if minutes_left >= far_m:
        return settings.z_max_far
    if minutes_left <= near_m:
        return settings.z_max_near
    t = (far_m - minutes_left) / (far_m - near_m)
    return settings.z_max_far - t * (settings.z_max_far - settings.z_max_near)


def required_late_prob(secs_left: float, settings: EngineSettings) -> float:
    """Probability bar for late-game entries, relaxing toward expiry."""
    window = settings.late_prob_window_seconds
    clamped = max(0.0, min(window, secs_left))
    t = (window - clamped) / window
    return settings.late_prob_high + (settings.late_prob_low - settings.late_prob_high) * t


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SignalEngine:
    """Evaluates one tick of one asset's window. Holds no mutable state."""

    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def z_threshold(
        self,
        minutes_left: float,
        scalar: float,
        raw_scalar: float,
        now: float,
    ) -> Optional[float]:
        """Required ``|z|`` for this tick, or None when trading this early is disabled."""
        cfg = self._settings
        us_hours = cfg.us_hours_gate_enabled and in_utc_range(now, cfg.us_hours_utc)
        if cfg.early_trading_enabled and not us_hours:
            tiers = cfg.z_tiers_early
        else:
            if minutes_left > cfg.restricted_max_minutes:
                return None
            tiers = cfg.z_tiers_restricted

        base = tiers[-1][1]
        for lower, threshold in tiers:
            if minutes_left > lower:
                base = threshold
                break
        z_min = base * scalar
        if raw_scalar < cfg.calm_regime_scalar and minutes_left > cfg.calm_relief_min_minutes:
            z_min *= cfg.calm_threshold_relief
        return z_min

    def min_edge(self, minutes_left: float, scalar: float, asset: AssetSettings) -> float:
        cfg = self._settings
        edge = cfg.min_edge_early if minutes_left > cfg.late_minutes else cfg.min_edge_late
        if scalar <= cfg.calm_regime_scalar:
            edge *= cfg.calm_edge_multiplier
        return edge + asset.min_edge_surcharge

    def evaluate(self, inputs: SignalInputs, state: SignalState) -> SignalResult:
        cfg = self._settings
        asset = cfg.asset(inputs.asset)
        mins = inputs.minutes_left

        # 1) z-score with drift and end-of-window vol boost.
        sigma = inputs.sigma
        if cfg.time_decay_enabled:
            sigma *= time_decay_factor(mins, cfg.time_decay_window_seconds, cfg.time_decay_max_boost)
        z, sigma_t = compute_z(inputs.start_price, inputs.current_price, mins, sigma, inputs.drift)
        if sigma_t <= 0:
            return SignalResult(Rejection("invalid_sigma", f"sigma={inputs.sigma}"), state)

        horizon = inputs.now - cfg.z_history_seconds
        history = tuple(h for h in state.z_history if h[1] > horizon) + ((z, inputs.now),)
        state = replace(state, z_history=history)

        if state.entry_z is None and (inputs.shares_up > 0 or inputs.shares_down > 0):
            state = replace(state, entry_z=z)
            LOGGER.info("[%s] entry signal stored z=%.2f", inputs.asset, z)

        p_up = normal_cdf(z)
        p_down = 1.0 - p_up
        raw_scalar, scalar = regime_scalar(inputs.regime_ratio, cfg.regime_scalar_min, cfg.regime_scalar_max)
        metrics = SignalMetrics(
            z=z, p_up=p_up, p_down=p_down, sigma_t=sigma_t,
            raw_regime_scalar=raw_scalar, regime_scalar=scalar,
        )

        def reject(reason: str, detail: str = "") -> SignalResult:
            LOGGER.debug("[%s] reject %s %s", inputs.asset, reason, detail)
            return SignalResult(Rejection(reason, detail, metrics), state)

        if inputs.shares_up > 0 and p_up < 0.5:
            LOGGER.info("[%s] countersignal: holding UP but p_up=%.4f", inputs.asset, p_up)
        if inputs.shares_down > 0 and p_down < 0.5:
            LOGGER.info("[%s] countersignal: holding DOWN but p_down=%.4f", inputs.asset, p_down)

        # 2) Weak-signal position limit.
        weak_z = cfg.weak_signal_z
        if 0 < z < weak_z and inputs.shares_up >= cfg.weak_signal_max_shares:
            return reject("weak_signal_position_limit", f"{inputs.shares_up} UP at z={z:.2f}")
        if -weak_z < z < 0 and inputs.shares_down >= cfg.weak_signal_max_shares:
            return reject("weak_signal_position_limit", f"{inputs.shares_down} DOWN at z={z:.2f}")

        # 3) Graduated threshold.
        z_min = self.z_threshold(mins, scalar, raw_scalar, inputs.now)
        if z_min is None:
            return reject("early_trading_disabled", f"{mins:.1f} min left")
        metrics = replace(metrics, z_min=z_min)
        abs_z = abs(z)
        if abs_z < z_min:
            return reject("z_below_threshold", f"|z|={abs_z:.3f} < {z_min:.2f}")

        # 4) Decay of a held position's favourable z.
        change = z_change(state.z_values, cfg.decay_min_points)
        if change is not None:
            decay_thr = cfg.decay_threshold_near if mins < cfg.decay_near_minutes else cfg.decay_threshold_far
            significant = (
                inputs.shares_up > cfg.decay_min_position
                or inputs.shares_down > cfg.decay_min_position
            )
            if significant and inputs.shares_up > 0 and change > decay_thr:
                return reject("signal_decay_up", f"z fell {change:.2f}")
            if significant and inputs.shares_down > 0 and change < -decay_thr:
                return reject("signal_decay_down", f"z rose {abs(change):.2f}")

        # 5) Weak-signal persistence.
        weak = (
            (inputs.shares_up > 0 and 0 < z < weak_z)
            or (inputs.shares_down > 0 and -weak_z < z < 0)
        )
        count = state.weak_signal_count + 1 if weak else 0
        flags = (state.weak_signal_history + (weak,))[-cfg.weak_signal_window:]
        state = replace(state, weak_signal_count=count, weak_signal_history=flags)
        if count > cfg.weak_signal_max_consecutive:
            return reject("weak_signal_consecutive", f"weak for {count} ticks")
        weak_total = sum(1 for f in flags if f)
        if weak_total >= cfg.weak_signal_max_ratio_count:
            return reject("weak_signal_ratio", f"weak {weak_total}/{len(flags)} ticks")

        # 6) Hard stop on a large sign flip.
        z_values = state.z_values
        if detect_reversal(z_values, cfg.reversal_min_points, cfg.reversal_threshold):
            recent = z_values[-cfg.reversal_min_points:]
            return reject("signal_reversal", f"z {recent[0]:.2f} -> {recent[-1]:.2f}")

        # 7) Basis risk around the strike.
        if cfg.basis_guard_enabled:
            basis = self._basis_rejection(inputs, asset, z, p_up, p_down)
            if basis is not None:
                return reject(*basis)

        # 8) Late game.
        if abs_z > dynamic_z_max(mins, cfg) or mins < cfg.late_game_minutes:
            entry = state.entry_z if state.entry_z else z
            if sign_flip_exceeds(entry, z, cfg.reversal_threshold):
                return reject("late_entry_reversal", f"z {entry:.2f} -> {z:.2f}")

            late = self._late_decision(inputs, z, p_up, p_down, scalar, metrics)
            if late is not None:
                return SignalResult(late, state)

        # 9) Normal entry.
        base_edge = self.min_edge(mins, scalar, asset)
        best: Optional[SignalDecision] = None
        for side, prob, ask, qualifies in (
            (Side.UP, p_up, inputs.up_ask, z >= z_min),
            (Side.DOWN, p_down, inputs.down_ask, z <= -z_min),
        ):
            if not qualifies or not ask:
                continue
            edge = prob - ask
            required = base_edge
            if prob < cfg.low_prob_threshold:
                required = max(required, cfg.low_prob_min_edge)
            if edge <= required:
                continue
            if best is None or edge > best.edge:
                best = SignalDecision(
                    mode=TradeMode.NORMAL, side=side, probability=prob, ask=ask,
                    edge=edge, minutes_left=mins, metrics=metrics,
                )
        if best is None:
            return reject("no_candidates", f"min edge {base_edge:.4f}")
        return SignalResult(best, state)

    # ── Internals ─────────────────────────────────────────────────

    def _late_decision(
        self,
        inputs: SignalInputs,
        z: float,
        p_up: float,
        p_down: float,
        scalar: float,
        metrics: SignalMetrics,
    ) -> Optional[SignalDecision]:
        cfg = self._settings
        secs_left = inputs.minutes_left * 60.0
        p_req = required_late_prob(secs_left, cfg)
        z_floor = max(cfg.late_z_factor * scalar, cfg.late_min_abs_z)

        if p_up >= p_req and z > z_floor:
            side, prob, ask = Side.UP, p_up, inputs.up_ask
        elif p_down >= p_req and z < -z_floor:
            side, prob, ask = Side.DOWN, p_down, inputs.down_ask
        else:
            return None
        ask = ask or cfg.late_missing_ask

        z_huge = min(cfg.z_huge, cfg.z_huge * scalar)
        extreme = (
            abs(z) >= z_huge
            and secs_left <= cfg.late_extreme_seconds
            and ask <= cfg.late_max_price
            and prob - ask >= cfg.late_min_ev
        )
        return SignalDecision(
            mode=TradeMode.EXTREME if extreme else TradeMode.LATE_LAYER,
            side=side, probability=prob, ask=ask, edge=prob - ask,
            minutes_left=inputs.minutes_left, metrics=metrics,
        )

    def _basis_rejection(
        self,
        inputs: SignalInputs,
        asset: AssetSettings,
        z: float,
        p_up: float,
        p_down: float,
    ) -> Optional[Tuple[str, str]]:
        cfg = self._settings
        mins = inputs.minutes_left
        start, current = inputs.start_price, inputs.current_price

        if mins > cfg.basis_early_minutes:
            dist = (current - start) / start * 10_000.0
            if dist < -cfg.basis_early_stop_bps and inputs.shares_up > 0:
                return "basis_early_stop", f"{dist:.1f}bps below strike holding UP"
            if dist > cfg.basis_early_stop_bps and inputs.shares_down > 0:
                return "basis_early_stop", f"{dist:.1f}bps above strike holding DOWN"

        if mins >= cfg.basis_danger_minutes:
            return None

        dist_bps = abs(current - start) / start * 10_000.0
        if dist_bps >= asset.basis_buffer_bps:
            return None

        up_edge = p_up - inputs.up_ask if inputs.up_ask else 0.0
        down_edge = p_down - inputs.down_ask if inputs.down_ask else 0.0
        above = current > start
        with_z, with_edge, against_edge = (z > 0, up_edge, down_edge) if above else (z < 0, down_edge, up_edge)
        against_z = z < 0 if above else z > 0

        if with_z and with_edge > cfg.basis_with_direction_edge:
            return None
        if against_z:
            if abs(z) > cfg.basis_override_z and against_edge > cfg.basis_override_edge:
                return None
            return "basis_risk", f"against strike side at {dist_bps:.1f}bps, z={z:.2f}"
        return None
