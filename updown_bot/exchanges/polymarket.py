from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from updown_bot.config import EngineSettings
from updown_bot.models import (
    MarketWindow,
    OrderRequest,
    OrderState,
    OrderStatus,
    SubmitResult,
    TokenPair,
    WindowMetadata,
)

from .base import MarketMetadataProvider, OrderBookProvider, OrderExecutor

LOGGER = logging.getLogger(__name__)

_CRYPTO_PRICE_VARIANTS = {15: "fifteen"}

_STATE_MAP = {
    "live": OrderState.OPEN,
    "matched": OrderState.FILLED,
    "canceled": OrderState.CANCELLED,
    "cancelled": OrderState.CANCELLED,
    "expired": OrderState.EXPIRED,
    "failed": OrderState.FAILED,
}


def _iso_no_ms(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_iso(value: Any) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _parse_token_ids(raw: Any) -> list[str]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [str(t) for t in raw]


class PolymarketMarketData(MarketMetadataProvider, OrderBookProvider):
    """Gamma metadata, crypto-price reference prices and CLOB best asks."""

    def __init__(
        self,
        settings: EngineSettings,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        timeout = timeout_seconds or settings.fetch_timeout_seconds
        self._gamma = httpx.AsyncClient(
            base_url=settings.gamma_base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )
        self._clob = httpx.AsyncClient(
            base_url=settings.clob_base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )
        self._web = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._gamma.aclose()
        await self._clob.aclose()
        await self._web.aclose()

    async def get_window_metadata(self, window: MarketWindow) -> WindowMetadata | None:
        try:
            response = await self._gamma.get(f"/markets/slug/{window.slug}")
            response.raise_for_status()
            market = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("gamma lookup failed for %s: %s", window.slug, exc)
            return None

        if not isinstance(market, dict):
            return None
        token_ids = _parse_token_ids(market.get("clobTokenIds"))
        if len(token_ids) < 2:
            LOGGER.warning("gamma market %s missing token ids", window.slug)
            return None

        return WindowMetadata(
            market_id=str(market.get("id", "")),
            end_ts=_parse_iso(market.get("endDate")) or window.end_ts,
            tokens=TokenPair(up=token_ids[0], down=token_ids[1]),
            question=str(market.get("question") or ""),
        )

    async def get_reference_price(self, window: MarketWindow) -> float | None:
        minutes = int(round((window.end_ts - window.start_ts) / 60.0))
        params = {
            "symbol": window.asset,
            "eventStartTime": _iso_no_ms(window.start_ts),
            "variant": _CRYPTO_PRICE_VARIANTS.get(minutes, "fifteen"),
            "endDate": _iso_no_ms(window.end_ts),
        }
        try:
            response = await self._web.get(self._settings.crypto_price_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("crypto-price lookup failed for %s: %s", window.slug, exc)
            return None

        if not isinstance(payload, dict):
            return None
        try:
            price = float(payload.get("openPrice") or 0)
        except (TypeError, ValueError):
            return None
        if price <= 0:
            LOGGER.error("invalid openPrice for %s: %r", window.slug, payload.get("openPrice"))
            return None
        return price

    async def get_best_ask(self, token_id: str) -> float | None:
        try:
            response = await self._clob.get("/book", params={"token_id": token_id})
            response.raise_for_status()
            book = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("polymarket book failed for %s: %s", token_id, exc)
            return None

        best: float | None = None
        for level in (book or {}).get("asks") or []:
            try:
                price = float(level.get("price"))
            except (TypeError, ValueError, AttributeError):
                continue
            if best is None or price < best:
                best = price
        return best


class PolymarketLiveExecutor(OrderExecutor):
    """Signs and posts GTD BUY limit orders through ``py_clob_client``.

    The client library is only needed for live trading and is loaded at
    construction; ``live_error`` explains why ``ready`` is False.
    """

    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings
        self._live_client: Any = None
        self._order_args_cls: Any = None
        self._order_type_cls: Any = None
        self._options_cls: Any = None
        self._buy_constant: Any = "BUY"
        self._live_error: str | None = None

        self._initialize_live_client()

    @property
    def ready(self) -> bool:
        return self._live_client is not None

    @property
    def live_error(self) -> str | None:
        return self._live_error

    async def submit(self, request: OrderRequest) -> SubmitResult:
        if self._live_client is None:
            return SubmitResult(success=False, error=self._live_error or "live client unavailable")
        try:
            result = await asyncio.to_thread(self._submit_buy_order, request)
        except Exception as exc:
            LOGGER.warning("polymarket submit failed for %s: %s", request.token_id, exc)
            return SubmitResult(success=False, error=str(exc))

        if not isinstance(result, dict):
            return SubmitResult(success=False, error=f"unexpected response {result!r}")
        order_id = result.get("orderID") or result.get("orderId") or result.get("id")
        success = bool(result.get("success", order_id is not None)) and order_id is not None
        return SubmitResult(
            success=success,
            order_id=str(order_id) if order_id else None,
            error="" if success else str(result.get("errorMsg") or result.get("error") or "rejected"),
            raw=result,
        )

    async def cancel(self, order_id: str) -> bool:
        if self._live_client is None:
            return False
        try:
            result = await asyncio.to_thread(self._live_client.cancel, order_id)
            if isinstance(result, dict):
                return not result.get("not_canceled")
            return True
        except Exception as exc:
            LOGGER.warning("polymarket cancel failed for %s: %s", order_id, exc)
            return False

    async def get_status(self, order_id: str) -> OrderStatus | None:
        if self._live_client is None:
            return None
        result = await asyncio.to_thread(self._live_client.get_order, order_id)
        if not isinstance(result, dict) or not result:
            return None

        status_str = str(result.get("status", "")).lower()
        try:
            filled = float(result.get("size_matched", 0) or 0)
            size = float(result.get("original_size", 0) or result.get("size", 0) or 0)
        except (TypeError, ValueError):
            filled, size = 0.0, 0.0

        state = _STATE_MAP.get(status_str, OrderState.UNKNOWN)
        if 0 < filled < size and state is OrderState.OPEN:
            state = OrderState.PARTIALLY_FILLED
        return OrderStatus(order_id=order_id, state=state, filled_size=filled, size=size)

    def _submit_buy_order(self, request: OrderRequest) -> Any:
        assert self._live_client is not None
        assert self._order_args_cls is not None

        args = self._order_args_cls(
            token_id=request.token_id,
            price=round(float(request.price), 2),
            size=float(request.size),
            side=self._buy_constant,
            expiration=int(request.expiration),
        )
        if self._options_cls is not None:
            signed = self._live_client.create_order(
                args, self._options_cls(tick_size="0.01", neg_risk=False),
            )
        else:
            signed = self._live_client.create_order(args)

        if self._order_type_cls is not None and hasattr(self._order_type_cls, "GTD"):
            return self._live_client.post_order(signed, self._order_type_cls.GTD)
        return self._live_client.post_order(signed)

    def _initialize_live_client(self) -> None:
        if not self._settings.private_key:
            self._live_error = "UPDOWN_PRIVATE_KEY missing"
            return

        try:
            client_mod = importlib.import_module("py_clob_client.client")
            types_mod = importlib.import_module("py_clob_client.clob_types")
            constants_mod = importlib.import_module("py_clob_client.order_builder.constants")

            clob_client_cls = getattr(client_mod, "ClobClient")
            self._order_args_cls = getattr(types_mod, "OrderArgs")
            self._order_type_cls = getattr(types_mod, "OrderType", None)
            self._options_cls = getattr(types_mod, "PartialCreateOrderOptions", None)
            self._buy_constant = getattr(constants_mod, "BUY", "BUY")

            kwargs: dict[str, Any] = {
                "key": self._settings.private_key,
                "chain_id": self._settings.chain_id,
            }
            signature = inspect.signature(clob_client_cls)
            if "host" in signature.parameters:
                kwargs["host"] = self._settings.clob_base_url
            if self._settings.funder:
                kwargs["funder"] = self._settings.funder
                if "signature_type" in signature.parameters:
                    kwargs["signature_type"] = self._settings.signature_type

            self._live_client = clob_client_cls(**kwargs)

            if self._settings.api_key and self._settings.api_secret and self._settings.api_passphrase:
                creds_cls = getattr(types_mod, "ApiCreds")
                self._live_client.set_api_creds(creds_cls(
                    api_key=self._settings.api_key,
                    api_secret=self._settings.api_secret,
                    api_passphrase=self._settings.api_passphrase,
                ))
            else:
                self._live_client.set_api_creds(self._live_client.create_or_derive_api_creds())
        except Exception as exc:
            self._live_client = None
            self._live_error = str(exc)
