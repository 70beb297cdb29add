from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Side(str, Enum):
    UP = "UP"
    DOWN = "DOWN"

    @property
    def sign(self) -> int:
        return 1 if self is Side.UP else -1


class OrderState(str, Enum):
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class TradeMode(str, Enum):
    NORMAL = "NORMAL"
    LATE_LAYER = "LATE_LAYER"
    EXTREME = "EXTREME"


@dataclass(frozen=True)
class PricePoint:
    """One recorded reference price sample (unix seconds)."""

    timestamp: float
    price: float


@dataclass(frozen=True)
class PriceQuote:
    """Latest oracle price for an asset with its publish time."""

    asset: str
    price: float
    timestamp: float


@dataclass(frozen=True)
class TokenPair:
    up: str
    down: str

    def for_side(self, side: Side) -> str:
        return self.up if side is Side.UP else self.down


@dataclass(frozen=True)
class WindowMetadata:
    """Venue metadata for one market window."""

    market_id: str
    end_ts: float
    tokens: TokenPair
    question: str = ""
    reference_start_price: Optional[float] = None


@dataclass(frozen=True)
class MarketWindow:
    """A single up/down market window for one asset."""

    window_key: str
    asset: str
    slug: str
    start_ts: float
    end_ts: float
    market_id: str = ""
    tokens: Optional[TokenPair] = None
    reference_start_price: Optional[float] = None


@dataclass(frozen=True)
class OrderRequest:
    """A BUY limit order handed to the executor."""

    asset: str
    token_id: str
    side: Side
    price: float
    size: int
    expiration: int  # absolute unix seconds
    mode: TradeMode = TradeMode.NORMAL


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    order_id: Optional[str] = None
    error: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderStatus:
    order_id: str
    state: OrderState
    filled_size: float = 0.0
    size: float = 0.0
