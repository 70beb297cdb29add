"""Tests for the JSONL tick and order logs."""

from __future__ import annotations

import json

from updown_bot.tick_recorder import OrderLogEntry, TickRecorder, TickSnapshot

# 2023-11-14 22:13:20 UTC
TS = 1_700_000_000.0


def _snap(ts: float = TS, asset: str = "BTC") -> TickSnapshot:
    return TickSnapshot(
        timestamp=ts, asset=asset, slug="btc-updown-15m-1699999200", minutes_left=3.0,
        start_price=100_000.0, current_price=100_150.0, sigma=70.0, drift=0.0,
        z=1.237, p_up=0.892, p_down=0.108, up_ask=0.8, down_ask=None,
        shares_up=0, shares_down=0, outcome="submitted", reason="NORMAL",
    )


class TestTickRecorder:
    def test_disabled_without_directory(self, tmp_path) -> None:
        recorder = TickRecorder("")
        recorder.record_tick(_snap())
        assert recorder.enabled is False
        assert list(tmp_path.iterdir()) == []

    def test_tick_file_per_day(self, tmp_path) -> None:
        recorder = TickRecorder(str(tmp_path))
        recorder.record_tick(_snap())
        recorder.record_tick(_snap(asset="ETH"))
        recorder.record_tick(_snap(ts=TS + 86_400))
        recorder.close()

        day1 = (tmp_path / "ticks-20231114.jsonl").read_text().splitlines()
        day2 = (tmp_path / "ticks-20231115.jsonl").read_text().splitlines()
        assert len(day1) == 2
        assert len(day2) == 1
        row = json.loads(day1[0])
        assert row["asset"] == "BTC"
        assert row["z"] == 1.237
        assert row["down_ask"] is None
        assert json.loads(day1[1])["asset"] == "ETH"

    def test_order_log(self, tmp_path) -> None:
        recorder = TickRecorder(str(tmp_path / "logs"))
        recorder.record_order(OrderLogEntry(
            timestamp=TS, asset="BTC", order_id="o-1", side="UP",
            price=0.93, size=40, order_type="LATE_LAYER_0",
        ))
        recorder.close()

        [line] = (tmp_path / "logs" / "orders-2023-11-14.jsonl").read_text().splitlines()
        row = json.loads(line)
        assert row["order_id"] == "o-1"
        assert row["size"] == 40
        assert row["order_type"] == "LATE_LAYER_0"

    def test_appends_across_instances(self, tmp_path) -> None:
        for _ in range(2):
            recorder = TickRecorder(str(tmp_path))
            recorder.record_tick(_snap())
            recorder.close()
        assert len((tmp_path / "ticks-20231114.jsonl").read_text().splitlines()) == 2
