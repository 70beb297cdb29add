from .base import MarketMetadataProvider, OrderBookProvider, OrderExecutor, PriceSource
from .binance import BinanceKlineSource
from .paper import PaperExecutor
from .polymarket import PolymarketLiveExecutor, PolymarketMarketData
from .pyth import PythPriceSource

__all__ = [
    "BinanceKlineSource",
    "MarketMetadataProvider",
    "OrderBookProvider",
    "OrderExecutor",
    "PaperExecutor",
    "PolymarketLiveExecutor",
    "PolymarketMarketData",
    "PriceSource",
    "PythPriceSource",
]
