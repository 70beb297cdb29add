"""Tests for per-asset window state, caching and rollover."""

from __future__ import annotations

import asyncio

from updown_bot.config import EngineSettings
from updown_bot.exchanges.base import MarketMetadataProvider
from updown_bot.models import MarketWindow, Side, TokenPair, WindowMetadata
from updown_bot.window_tracker import WindowPhase, WindowStateTracker

NOW = 1_700_000_000.0
WINDOW_START = 1_699_999_200


class FakeMetadata(MarketMetadataProvider):
    def __init__(self, reference: float | None = 100_000.0) -> None:
        self.meta_calls = 0
        self.ref_calls = 0
        self.reference = reference
        self.fail = False
        self.raise_error = False
        self.delay = 0.0

    async def get_window_metadata(self, window: MarketWindow) -> WindowMetadata | None:
        self.meta_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_error:
            raise RuntimeError("boom")
        if self.fail:
            return None
        return WindowMetadata(
            market_id=f"m-{window.slug}",
            end_ts=window.end_ts,
            tokens=TokenPair(up="tok-up", down="tok-down"),
        )

    async def get_reference_price(self, window: MarketWindow) -> float | None:
        self.ref_calls += 1
        return self.reference


def _tracker(meta: FakeMetadata, **kw) -> WindowStateTracker:
    return WindowStateTracker(EngineSettings(**kw), meta)


class TestIdentity:
    def test_bounds(self) -> None:
        tracker = _tracker(FakeMetadata())
        assert tracker.window_bounds(NOW) == (WINDOW_START, WINDOW_START + 900)

    def test_identity(self) -> None:
        tracker = _tracker(FakeMetadata())
        assert tracker.window_identity("BTC", NOW) == f"btc-updown-15m-{WINDOW_START}"
        assert tracker.window_identity("BTC", WINDOW_START + 899) == f"btc-updown-15m-{WINDOW_START}"
        assert tracker.window_identity("BTC", WINDOW_START + 900) == f"btc-updown-15m-{WINDOW_START + 900}"


class TestEnsureWindow:
    def test_fetches_and_caches(self) -> None:
        meta = FakeMetadata()
        tracker = _tracker(meta)

        async def run():
            first = await tracker.ensure_window("BTC", NOW)
            second = await tracker.ensure_window("BTC", NOW + 30)
            return first, second

        first, second = asyncio.run(run())
        assert first is second
        assert meta.meta_calls == 1
        assert first.window.market_id == f"m-btc-updown-15m-{WINDOW_START}"
        assert first.window.tokens.for_side(Side.DOWN) == "tok-down"
        assert tracker.phase("BTC") is WindowPhase.ACTIVE

    def test_expired_window_kept_until_rolled(self) -> None:
        meta = FakeMetadata()

        async def no_sleep(seconds: float) -> None:
            return None

        tracker = WindowStateTracker(EngineSettings(), meta, sleep=no_sleep)

        async def run():
            first = await tracker.ensure_window("BTC", NOW)
            first.ledger.add(Side.UP, 50)
            stale = await tracker.ensure_window("BTC", WINDOW_START + 900.5)
            await tracker.roll("BTC")
            second = await tracker.ensure_window("BTC", WINDOW_START + 931)
            return first, stale, second

        first, stale, second = asyncio.run(run())
        assert stale is first
        assert second is not first
        assert second.identity == f"btc-updown-15m-{WINDOW_START + 900}"
        assert second.ledger.total_shares_bought == 0
        assert meta.meta_calls == 2

    def test_failure_leaves_table_untouched(self) -> None:
        meta = FakeMetadata()
        meta.fail = True
        tracker = _tracker(meta)
        assert asyncio.run(tracker.ensure_window("BTC", NOW)) is None
        assert tracker.context("BTC") is None
        assert tracker.phase("BTC") is WindowPhase.UNINITIALIZED

    def test_exception_is_contained(self) -> None:
        meta = FakeMetadata()
        meta.raise_error = True
        tracker = _tracker(meta)
        assert asyncio.run(tracker.ensure_window("BTC", NOW)) is None

    def test_timeout(self) -> None:
        meta = FakeMetadata()
        meta.delay = 1.0
        tracker = _tracker(meta, fetch_timeout_seconds=0.01)
        assert asyncio.run(tracker.ensure_window("BTC", NOW)) is None
        assert tracker.context("BTC") is None


class TestReferencePrice:
    def test_fetched_once(self) -> None:
        meta = FakeMetadata(reference=97_000.0)
        tracker = _tracker(meta)

        async def run():
            ctx = await tracker.ensure_window("BTC", NOW)
            a = await tracker.ensure_reference_price(ctx)
            b = await tracker.ensure_reference_price(ctx)
            return a, b

        assert asyncio.run(run()) == (97_000.0, 97_000.0)
        assert meta.ref_calls == 1

    def test_invalid_reference_rejected(self) -> None:
        meta = FakeMetadata(reference=0.0)
        tracker = _tracker(meta)

        async def run():
            ctx = await tracker.ensure_window("BTC", NOW)
            return await tracker.ensure_reference_price(ctx), ctx

        price, ctx = asyncio.run(run())
        assert price is None
        assert ctx.reference_price is None

    def test_missing_reference(self) -> None:
        tracker = _tracker(FakeMetadata(reference=None))

        async def run():
            ctx = await tracker.ensure_window("BTC", NOW)
            return await tracker.ensure_reference_price(ctx)

        assert asyncio.run(run()) is None


class TestRollover:
    def test_minutes_left_and_should_roll(self) -> None:
        tracker = _tracker(FakeMetadata())
        ctx = asyncio.run(tracker.ensure_window("BTC", NOW))
        end = WINDOW_START + 900
        assert tracker.minutes_left(ctx, end - 180) == 3.0
        assert tracker.minutes_left(ctx, end + 10) == 0.001
        assert tracker.should_roll(ctx, end - 180) is False
        assert tracker.should_roll(ctx, end) is True

    def test_roll_suppresses_then_discards(self) -> None:
        meta = FakeMetadata()
        released = None
        slept = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)
            await released.wait()

        async def run():
            nonlocal released
            released = asyncio.Event()
            tracker = WindowStateTracker(EngineSettings(), meta, sleep=fake_sleep)
            await tracker.ensure_window("BTC", NOW)
            task = asyncio.create_task(tracker.roll("BTC"))
            await asyncio.sleep(0)
            rolling = tracker.is_rolling("BTC")
            during = await tracker.ensure_window("BTC", WINDOW_START + 900)
            released.set()
            await task
            return tracker, rolling, during

        tracker, rolling, during = asyncio.run(run())
        assert rolling is True
        assert during.phase is WindowPhase.ROLLING
        assert slept == [30.0]
        assert tracker.context("BTC") is None
        assert meta.meta_calls == 1


class TestNetPositions:
    def test_snapshot(self) -> None:
        tracker = _tracker(FakeMetadata())

        async def run():
            btc = await tracker.ensure_window("BTC", NOW)
            eth = await tracker.ensure_window("ETH", NOW)
            btc.ledger.add(Side.UP, 100)
            eth.ledger.add(Side.DOWN, 40)

        asyncio.run(run())
        assert tracker.net_positions() == {"BTC": 100, "ETH": -40}
