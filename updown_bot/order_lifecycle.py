"""Submission and background fill monitoring of BUY limit orders."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from updown_bot.config import EngineSettings
from updown_bot.exchanges.base import OrderExecutor
from updown_bot.models import OrderRequest, Side, SubmitResult
from updown_bot.order_poller import OrderOutcome, poll_order_until_terminal
from updown_bot.sizing import OrderIntent

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingOrder:
    order_id: str
    asset: str
    side: Side
    size: int
    price: float
    timestamp: float


@dataclass(frozen=True)
class OrderRecord:
    """Final outcome of a monitored order."""

    order: PendingOrder
    outcome: OrderOutcome
    filled_size: float = 0.0
    resolved_at: float = 0.0


class OrderLifecycleManager:
    """Places orders and tracks each one until it resolves.

    Every submitted order with an id gets one monitor task.  The pending
    entry is removed whatever the outcome and the outcome is appended to
    a bounded log.
    """

    def __init__(self, settings: EngineSettings, executor: OrderExecutor) -> None:
        self._settings = settings
        self._executor = executor
        self._pending: Dict[str, PendingOrder] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._outcomes: Deque[OrderRecord] = deque(maxlen=settings.order_outcome_history)

    @property
    def pending(self) -> Dict[str, PendingOrder]:
        return dict(self._pending)

    @property
    def outcomes(self) -> List[OrderRecord]:
        return list(self._outcomes)

    async def submit(
        self,
        asset: str,
        intent: OrderIntent,
        token_id: str,
        expiration: int,
    ) -> SubmitResult:
        request = OrderRequest(
            asset=asset,
            token_id=token_id,
            side=intent.side,
            price=intent.price,
            size=intent.size,
            expiration=int(expiration),
            mode=intent.mode,
        )
        try:
            result = await self._executor.submit(request)
        except Exception as exc:
            LOGGER.error("[%s] order submit raised: %s", asset, exc)
            return SubmitResult(success=False, error=str(exc))

        if not result.success:
            LOGGER.warning(
                "[%s] order rejected %s %d @ %.2f: %s",
                asset, intent.side.value, intent.size, intent.price, result.error,
            )
            return result

        LOGGER.info(
            "[%s] order placed %s %d @ %.2f id=%s (%s)",
            asset, intent.side.value, intent.size, intent.price, result.order_id, intent.mode.value,
        )
        if result.order_id:
            pending = PendingOrder(
                order_id=result.order_id,
                asset=asset,
                side=intent.side,
                size=intent.size,
                price=intent.price,
                timestamp=time.time(),
            )
            self._pending[pending.order_id] = pending
            self._tasks[pending.order_id] = asyncio.create_task(self._monitor(pending))
        return result

    async def _monitor(self, order: PendingOrder) -> None:
        cfg = self._settings
        outcome = OrderOutcome.ERROR
        filled = 0.0
        try:
            result = await poll_order_until_terminal(
                self._executor,
                order.order_id,
                order.size,
                poll_interval=cfg.order_poll_interval_seconds,
                timeout=cfg.order_timeout_seconds,
                fill_ratio=cfg.order_fill_ratio,
            )
            outcome = result.outcome
            if result.final_status is not None:
                filled = result.final_status.filled_size
        except asyncio.CancelledError:
            LOGGER.info("[%s] monitor for %s cancelled", order.asset, order.order_id)
            raise
        except Exception as exc:
            LOGGER.error("[%s] monitor for %s failed: %s", order.asset, order.order_id, exc)
        finally:
            self._pending.pop(order.order_id, None)
            self._tasks.pop(order.order_id, None)

        self._outcomes.append(OrderRecord(
            order=order, outcome=outcome, filled_size=filled, resolved_at=time.time(),
        ))
        LOGGER.info(
            "[%s] order %s %s (filled %.0f/%d)",
            order.asset, order.order_id, outcome.value, filled, order.size,
        )

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for all running monitors to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._pending.clear()
