"""Rolling realized-volatility estimation per asset.

Keeps roughly one reference price per minute for the last hour, derives a
USD sigma per minute from the sample standard deviation of log returns,
and never lets that sigma drop below a per-asset floor.  A flat market
would otherwise produce a near-zero sigma and blow up the z-score.

The history is persisted on every insert and reloaded on start, so a
restart does not cost an hour of warm-up.

Usage::

    vol = VolatilityEstimator(settings, store=JsonVolatilityStore("vol_history.json"))
    vol.load()
    vol.record("BTC", 97_000.0, time.time())
    sigma = vol.estimate("BTC", 97_000.0)
    ratio = vol.regime_ratio("BTC", sigma)
"""

from __future__ import annotations

import json
import logging
import math
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np

from updown_bot.config import EngineSettings
from updown_bot.models import PricePoint

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class VolatilityStore(ABC):
    """Keyed blob persistence for the rolling price history."""

    @abstractmethod
    def load(self) -> Dict[str, List[PricePoint]]:
        raise NotImplementedError

    @abstractmethod
    def save(self, history: Dict[str, List[PricePoint]]) -> None:
        raise NotImplementedError


class JsonVolatilityStore(VolatilityStore):
    """Stores ``{asset: [{"ts": ms, "price": p}, ...]}`` in a JSON file."""

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Dict[str, List[PricePoint]]:
        if not os.path.exists(self._path):
            return {}
        try:
            with open(self._path) as f:
                raw = json.load(f)
        except (json.JSONDecodeError, IOError) as exc:
            LOGGER.error("VolatilityStore: failed to load %s, starting fresh: %s", self._path, exc)
            return {}

        history: Dict[str, List[PricePoint]] = {}
        for asset, rows in raw.items():
            points = []
            for row in rows:
                try:
                    points.append(PricePoint(timestamp=float(row["ts"]) / 1000.0, price=float(row["price"])))
                except (KeyError, TypeError, ValueError):
                    continue
            history[asset] = points
        return history

    def save(self, history: Dict[str, List[PricePoint]]) -> None:
        payload = {
            asset: [{"ts": int(p.timestamp * 1000), "price": p.price} for p in points]
            for asset, points in history.items()
        }
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._path, "w") as f:
                json.dump(payload, f)
        except IOError as exc:
            LOGGER.error("VolatilityStore: failed to save %s: %s", self._path, exc)


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------


class VolatilityEstimator:
    """Per-asset rolling price history, realized sigma, regime ratio and drift."""

    def __init__(
        self,
        settings: EngineSettings,
        store: VolatilityStore | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._history: Dict[str, List[PricePoint]] = {}
        self._drift_cache: Dict[str, Tuple[float, float]] = {}  # asset -> (drift, computed_at)

    def load(self) -> int:
        """Restore history from the store. Returns the number of samples loaded."""
        if self._store is None:
            return 0
        loaded = self._store.load()
        cap = self._settings.vol_window_size
        self._history = {
            asset: sorted(points, key=lambda p: p.timestamp)[-cap:]
            for asset, points in loaded.items()
        }
        count = sum(len(p) for p in self._history.values())
        LOGGER.info("VolatilityEstimator: loaded %d samples for %s", count, sorted(self._history))
        return count

    def history(self, asset: str) -> List[PricePoint]:
        return list(self._history.get(asset, []))

    def record(self, asset: str, price: float, timestamp: float | None = None) -> bool:
        """Append a sample if the minimum spacing has elapsed.

        Returns True when a sample was stored.
        """
        if price <= 0 or not math.isfinite(price):
            return False
        ts = time.time() if timestamp is None else timestamp
        points = self._history.setdefault(asset, [])
        if points and ts - points[-1].timestamp < self._settings.vol_min_spacing_seconds:
            return False

        points.append(PricePoint(timestamp=ts, price=price))
        overflow = len(points) - self._settings.vol_window_size
        if overflow > 0:
            del points[:overflow]
        self._persist()
        return True

    def backfill(self, asset: str, points: List[PricePoint], now: float | None = None) -> bool:
        """Replace a short or stale history with externally fetched closes."""
        now = time.time() if now is None else now
        if not self.needs_backfill(asset, now):
            LOGGER.info("VolatilityEstimator: %s history is fresh, skipping backfill", asset)
            return False
        if not points:
            return False
        ordered = sorted(points, key=lambda p: p.timestamp)
        self._history[asset] = ordered[-self._settings.vol_window_size:]
        self._drift_cache.pop(asset, None)
        self._persist()
        LOGGER.info("VolatilityEstimator: backfilled %s with %d samples", asset, len(self._history[asset]))
        return True

    def needs_backfill(self, asset: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        points = self._history.get(asset, [])
        if len(points) > self._settings.vol_backfill_min_points:
            if now - points[-1].timestamp < self._settings.vol_backfill_fresh_seconds:
                return False
        return True

    def floor(self, asset: str, price: float) -> float:
        """Per-asset minimum sigma in USD per minute."""
        cfg = self._settings.asset(asset)
        if cfg.vol_floor_usd is not None:
            return cfg.vol_floor_usd
        return price * cfg.vol_floor_bps / 10_000.0

    def estimate(self, asset: str, current_price: float) -> float:
        """Realized sigma in USD per sample interval, never below the floor."""
        floor = self.floor(asset, current_price)
        points = self._history.get(asset, [])
        if len(points) < self._settings.vol_min_points:
            return floor

        prices = np.array([p.price for p in points], dtype=np.float64)
        returns = np.diff(np.log(prices))
        std = float(np.std(returns, ddof=1))
        if not math.isfinite(std):
            return floor
        return max(current_price * std, floor)

    def regime_ratio(self, asset: str, sigma_usd: float) -> float:
        """``sigma / floor``; 1.0 when no floor can be defined."""
        cfg = self._settings.asset(asset)
        if cfg.vol_floor_usd is not None:
            floor = cfg.vol_floor_usd
        else:
            points = self._history.get(asset, [])
            if not points:
                return 1.0
            floor = self.floor(asset, points[-1].price)
        if floor <= 0:
            return 1.0
        return sigma_usd / floor

    def estimate_drift(self, asset: str, now: float | None = None) -> float:
        """Clamped least-squares slope of log price, in USD per minute."""
        now = time.time() if now is None else now
        cached = self._drift_cache.get(asset)
        if cached is not None and now - cached[1] < self._settings.drift_cache_seconds:
            return cached[0]

        cutoff = now - self._settings.drift_window_minutes * 60.0
        points = [p for p in self._history.get(asset, []) if p.timestamp >= cutoff]
        if len(points) < self._settings.drift_min_points:
            return 0.0

        x = np.array([(p.timestamp - points[0].timestamp) / 60.0 for p in points])
        y = np.log(np.array([p.price for p in points]))
        n = len(points)
        denom = n * float(np.sum(x * x)) - float(np.sum(x)) ** 2
        if abs(denom) < 1e-10:
            return 0.0
        slope = (n * float(np.sum(x * y)) - float(np.sum(x)) * float(np.sum(y))) / denom

        last_price = points[-1].price
        limit = last_price * self._settings.drift_clamp_fraction
        drift = max(-limit, min(limit, slope * last_price))
        self._drift_cache[asset] = (drift, now)
        return drift

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._history)
