from __future__ import annotations

import logging
from typing import List

import httpx

from updown_bot.config import EngineSettings
from updown_bot.models import PricePoint

LOGGER = logging.getLogger(__name__)


class BinanceKlineSource:
    """1-minute kline closes used to seed the volatility history at startup."""

    def __init__(
        self,
        settings: EngineSettings,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.binance_base_url.rstrip("/"),
            timeout=timeout_seconds or settings.fetch_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_closes(self, asset: str, limit: int | None = None) -> List[PricePoint]:
        """Closes keyed by kline close time (unix seconds); empty on failure."""
        pair = self._settings.asset(asset).binance_pair
        if not pair:
            return []
        try:
            response = await self._client.get(
                "/api/v3/klines",
                params={
                    "symbol": pair,
                    "interval": "1m",
                    "limit": limit or self._settings.vol_window_size,
                },
            )
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("binance klines failed for %s: %s", pair, exc)
            return []

        points: List[PricePoint] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                points.append(PricePoint(timestamp=float(row[6]) / 1000.0, price=float(row[4])))
            except (IndexError, TypeError, ValueError):
                continue
        return points
