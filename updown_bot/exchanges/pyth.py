from __future__ import annotations

import logging
from typing import Dict, Iterable

import httpx

from updown_bot.config import EngineSettings
from updown_bot.models import PriceQuote

from .base import PriceSource

LOGGER = logging.getLogger(__name__)


def _normalize_id(feed_id: str) -> str:
    feed_id = feed_id.lower()
    return feed_id if feed_id.startswith("0x") else "0x" + feed_id


class PythPriceSource(PriceSource):
    """Batch reads of Pyth Hermes ``latest_price_feeds``.

    One request covers every asset; the price is ``price * 10**expo`` and
    the timestamp is the feed's ``publish_time``.
    """

    def __init__(
        self,
        settings: EngineSettings,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.pyth_base_url.rstrip("/"),
            timeout=timeout_seconds or settings.fetch_timeout_seconds,
            transport=transport,
        )
        self._asset_by_id = {
            _normalize_id(a.pyth_id): a.symbol for a in settings.assets if a.pyth_id
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_price(self, asset: str) -> PriceQuote | None:
        return (await self.get_prices([asset])).get(asset)

    async def get_prices(self, assets: Iterable[str]) -> Dict[str, PriceQuote]:
        wanted = set(assets)
        ids = sorted({fid for fid, sym in self._asset_by_id.items() if sym in wanted})
        if not ids:
            return {}

        try:
            response = await self._client.get(
                "/api/latest_price_feeds", params=[("ids[]", fid) for fid in ids],
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("pyth batch failed: %s", exc)
            return {}

        quotes: Dict[str, PriceQuote] = {}
        for item in data if isinstance(data, list) else []:
            price_obj = item.get("price") if isinstance(item, dict) else None
            if not price_obj:
                continue
            asset = self._asset_by_id.get(_normalize_id(str(item.get("id", ""))))
            if asset is None:
                continue
            try:
                price = float(price_obj["price"]) * 10 ** int(price_obj["expo"])
                publish_time = float(price_obj.get("publish_time", 0))
            except (KeyError, TypeError, ValueError):
                continue
            if price <= 0:
                continue
            quotes[asset] = PriceQuote(asset=asset, price=price, timestamp=publish_time)
        return quotes
