"""Post-submission order status polling.

After placing an order, poll ``get_status()`` until the order is filled
(at least ``fill_ratio`` of its size), reaches a terminal state, cannot
be found, or the timeout elapses.  On timeout the order is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from updown_bot.exchanges.base import OrderExecutor
from updown_bot.models import OrderState, OrderStatus

LOGGER = logging.getLogger(__name__)


class OrderOutcome(str, Enum):
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


_STATE_OUTCOMES = {
    OrderState.CANCELLED: OrderOutcome.CANCELLED,
    OrderState.EXPIRED: OrderOutcome.CANCELLED,
    OrderState.FAILED: OrderOutcome.FAILED,
}


@dataclass(frozen=True)
class PollResult:
    """Outcome of polling an order."""
    order_id: str
    outcome: OrderOutcome
    final_status: Optional[OrderStatus] = None
    cancelled_on_timeout: bool = False

    @property
    def timed_out(self) -> bool:
        return self.outcome is OrderOutcome.TIMEOUT


def is_filled(status: OrderStatus, size: float, fill_ratio: float) -> bool:
    if status.state is OrderState.FILLED:
        return True
    target = size or status.size
    return target > 0 and status.filled_size >= fill_ratio * target


async def poll_order_until_terminal(
    executor: OrderExecutor,
    order_id: str,
    size: float,
    *,
    poll_interval: float = 5.0,
    timeout: float = 30.0,
    fill_ratio: float = 0.95,
    cancel_on_timeout: bool = True,
) -> PollResult:
    """Poll an order's status until it resolves or the timeout elapses.

    Parameters
    ----------
    executor:
        The executor that placed the order.
    order_id:
        The order ID returned from ``submit``.
    size:
        Submitted size, used for the fill-ratio test.
    poll_interval:
        Seconds between status checks; the first check happens after one
        interval.
    timeout:
        Maximum seconds to wait before cancelling.
    """
    deadline = time.monotonic() + timeout
    last_status: Optional[OrderStatus] = None

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(poll_interval, remaining))

        try:
            status = await executor.get_status(order_id)
        except Exception as exc:
            LOGGER.warning("poll_order error for %s: %s", order_id, exc)
            continue

        if status is None:
            LOGGER.warning("Order %s not found", order_id)
            return PollResult(order_id=order_id, outcome=OrderOutcome.NOT_FOUND)

        last_status = status
        if is_filled(status, size, fill_ratio):
            return PollResult(order_id=order_id, outcome=OrderOutcome.FILLED, final_status=status)
        if status.state in _STATE_OUTCOMES:
            return PollResult(
                order_id=order_id, outcome=_STATE_OUTCOMES[status.state], final_status=status,
            )

    LOGGER.warning("Order %s polling timed out after %.1fs", order_id, timeout)

    cancelled = False
    if cancel_on_timeout:
        try:
            cancelled = await executor.cancel(order_id)
            if cancelled:
                LOGGER.info("Order %s cancelled on poll timeout", order_id)
        except Exception as exc:
            LOGGER.warning("Failed to cancel order %s on timeout: %s", order_id, exc)

    return PollResult(
        order_id=order_id,
        outcome=OrderOutcome.TIMEOUT,
        final_status=last_status,
        cancelled_on_timeout=cancelled,
    )
