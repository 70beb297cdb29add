from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable

from updown_bot.models import MarketWindow, OrderRequest, OrderStatus, PriceQuote, SubmitResult, WindowMetadata


class PriceSource(ABC):
    """Oracle / spot reference price per asset."""

    @abstractmethod
    async def get_price(self, asset: str) -> PriceQuote | None:
        raise NotImplementedError

    async def get_prices(self, assets: Iterable[str]) -> Dict[str, PriceQuote]:
        """Batch read. Assets without a price are omitted."""
        out: Dict[str, PriceQuote] = {}
        for asset in assets:
            quote = await self.get_price(asset)
            if quote is not None:
                out[asset] = quote
        return out

    async def aclose(self) -> None:
        return None


class MarketMetadataProvider(ABC):
    @abstractmethod
    async def get_window_metadata(self, window: MarketWindow) -> WindowMetadata | None:
        raise NotImplementedError

    async def get_reference_price(self, window: MarketWindow) -> float | None:
        """Staked start price of the window when the metadata lacks it."""
        return None

    async def aclose(self) -> None:
        return None


class OrderBookProvider(ABC):
    @abstractmethod
    async def get_best_ask(self, token_id: str) -> float | None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OrderExecutor(ABC):
    @abstractmethod
    async def submit(self, request: OrderRequest) -> SubmitResult:
        raise NotImplementedError

    async def get_status(self, order_id: str) -> OrderStatus | None:
        """Current status of an order. None when the order is unknown."""
        return None

    async def cancel(self, order_id: str) -> bool:
        """Cancel an open order. Returns True if cancelled successfully."""
        return False

    async def aclose(self) -> None:
        return None
