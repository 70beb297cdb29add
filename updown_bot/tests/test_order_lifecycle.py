"""Tests for order submission and background fill monitoring."""

from __future__ import annotations

import asyncio

from updown_bot.config import EngineSettings
from updown_bot.exchanges.base import OrderExecutor
from updown_bot.exchanges.paper import PaperExecutor
from updown_bot.models import OrderRequest, OrderState, OrderStatus, Side, SubmitResult, TradeMode
from updown_bot.order_lifecycle import OrderLifecycleManager
from updown_bot.order_poller import OrderOutcome
from updown_bot.sizing import OrderIntent

FAST = dict(order_poll_interval_seconds=0.01, order_timeout_seconds=0.2)


def _intent(size: int = 50, price: float = 0.9) -> OrderIntent:
    return OrderIntent(
        mode=TradeMode.NORMAL, side=Side.UP, price=price, size=size,
        probability=0.95, edge=0.05,
    )


class StuckExecutor(OrderExecutor):
    """Accepts orders that never fill."""

    def __init__(self) -> None:
        self.requests: list[OrderRequest] = []
        self.cancelled: list[str] = []

    async def submit(self, request: OrderRequest) -> SubmitResult:
        self.requests.append(request)
        return SubmitResult(success=True, order_id=f"o-{len(self.requests)}")

    async def get_status(self, order_id: str) -> OrderStatus | None:
        return OrderStatus(order_id=order_id, state=OrderState.OPEN, size=50.0)

    async def cancel(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return True


class RejectingExecutor(OrderExecutor):
    async def submit(self, request: OrderRequest) -> SubmitResult:
        return SubmitResult(success=False, error="insufficient balance")


class RaisingExecutor(OrderExecutor):
    async def submit(self, request: OrderRequest) -> SubmitResult:
        raise ConnectionError("down")


class TestSubmit:
    def test_filled_order_resolves(self) -> None:
        executor = PaperExecutor()
        manager = OrderLifecycleManager(EngineSettings(**FAST), executor)

        async def run():
            result = await manager.submit("BTC", _intent(), "tok-up", 1_700_000_100)
            pending = manager.pending
            await manager.wait_idle(timeout=1.0)
            return result, pending

        result, pending = asyncio.run(run())
        assert result.success is True
        assert list(pending) == [result.order_id]
        assert manager.pending == {}
        [record] = manager.outcomes
        assert record.outcome is OrderOutcome.FILLED
        assert record.filled_size == 50
        request = executor.orders[result.order_id]
        assert request.token_id == "tok-up"
        assert request.expiration == 1_700_000_100

    def test_timeout_cancels(self) -> None:
        executor = StuckExecutor()
        manager = OrderLifecycleManager(EngineSettings(**FAST), executor)

        async def run():
            await manager.submit("ETH", _intent(), "tok", 0)
            await manager.wait_idle(timeout=2.0)

        asyncio.run(run())
        assert manager.outcomes[0].outcome is OrderOutcome.TIMEOUT
        assert executor.cancelled == ["o-1"]

    def test_rejected_submission_not_tracked(self) -> None:
        manager = OrderLifecycleManager(EngineSettings(**FAST), RejectingExecutor())
        result = asyncio.run(manager.submit("BTC", _intent(), "tok", 0))
        assert result.success is False
        assert result.error == "insufficient balance"
        assert manager.pending == {}

    def test_executor_exception_becomes_failure(self) -> None:
        manager = OrderLifecycleManager(EngineSettings(**FAST), RaisingExecutor())
        result = asyncio.run(manager.submit("BTC", _intent(), "tok", 0))
        assert result.success is False
        assert "down" in result.error


class TestOutcomeLog:
    def test_bounded(self) -> None:
        manager = OrderLifecycleManager(
            EngineSettings(order_outcome_history=2, **FAST), PaperExecutor(),
        )

        async def run():
            for _ in range(3):
                await manager.submit("BTC", _intent(), "tok", 0)
            await manager.wait_idle(timeout=1.0)

        asyncio.run(run())
        assert len(manager.outcomes) == 2


class TestAclose:
    def test_cancels_outstanding_monitors(self) -> None:
        executor = StuckExecutor()
        settings = EngineSettings(order_poll_interval_seconds=0.01, order_timeout_seconds=60.0)
        manager = OrderLifecycleManager(settings, executor)

        async def run():
            await manager.submit("BTC", _intent(), "tok", 0)
            await asyncio.sleep(0.05)
            await manager.aclose()

        asyncio.run(run())
        assert manager.pending == {}
        assert manager.outcomes == []
        assert executor.cancelled == []
