from __future__ import annotations

import itertools
import logging
from typing import Dict

from updown_bot.models import OrderRequest, OrderState, OrderStatus, SubmitResult

from .base import OrderExecutor

LOGGER = logging.getLogger(__name__)


class PaperExecutor(OrderExecutor):
    """Simulated executor: every order fills in full at its limit price."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._orders: Dict[str, OrderRequest] = {}

    @property
    def orders(self) -> Dict[str, OrderRequest]:
        return dict(self._orders)

    async def submit(self, request: OrderRequest) -> SubmitResult:
        order_id = f"paper-{next(self._ids)}"
        self._orders[order_id] = request
        LOGGER.info(
            "paper fill %s %s %d @ %.2f (%s)",
            request.asset, request.side.value, request.size, request.price, order_id,
        )
        return SubmitResult(success=True, order_id=order_id)

    async def get_status(self, order_id: str) -> OrderStatus | None:
        request = self._orders.get(order_id)
        if request is None:
            return None
        return OrderStatus(
            order_id=order_id,
            state=OrderState.FILLED,
            filled_size=float(request.size),
            size=float(request.size),
        )

    async def cancel(self, order_id: str) -> bool:
        return False
