"""Static pairwise correlation between assets.

Pairs are keyed ``"A-B"`` with the symbols sorted, so lookups are
symmetric.  Unlisted pairs fall back to a default coefficient and every
asset is perfectly correlated with itself.
"""

from __future__ import annotations

import math
from typing import Dict, Mapping


def pair_key(left: str, right: str) -> str:
    return "-".join(sorted((left, right)))


class CorrelationMatrix:
    """Read-only symmetric correlation lookup."""

    def __init__(self, pairs: Mapping[str, float] | None = None, default: float = 0.5) -> None:
        self._pairs: Dict[str, float] = {}
        for key, value in (pairs or {}).items():
            left, _, right = key.partition("-")
            if not left or not right:
                raise ValueError(f"bad correlation key {key!r}")
            if not -1.0 <= value <= 1.0:
                raise ValueError(f"correlation {key}={value} outside [-1, 1]")
            self._pairs[pair_key(left, right)] = float(value)
        if not -1.0 <= default <= 1.0:
            raise ValueError(f"default correlation {default} outside [-1, 1]")
        self._default = float(default)

    def get(self, left: str, right: str) -> float:
        if left == right:
            return 1.0
        return self._pairs.get(pair_key(left, right), self._default)

    def portfolio_risk(self, net_positions: Mapping[str, float]) -> float:
        """``sqrt(sum_i sum_j n_i * n_j * rho_ij)``, floored at zero under the root."""
        symbols = list(net_positions)
        total = 0.0
        for a in symbols:
            for b in symbols:
                total += net_positions[a] * net_positions[b] * self.get(a, b)
        return math.sqrt(max(0.0, total))
