"""Append-only JSONL logs of tick snapshots and placed orders.

One file per UTC day per stream::

    <dir>/ticks-YYYYMMDD.jsonl
    <dir>/orders-YYYY-MM-DD.jsonl

A recorder built with an empty directory is a no-op.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional, TextIO

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickSnapshot:
    timestamp: float
    asset: str
    slug: str
    minutes_left: float
    start_price: float
    current_price: float
    sigma: float
    drift: float
    z: float
    p_up: float
    p_down: float
    up_ask: Optional[float]
    down_ask: Optional[float]
    shares_up: int
    shares_down: int
    outcome: str = ""
    reason: str = ""


@dataclass(frozen=True)
class OrderLogEntry:
    timestamp: float
    asset: str
    order_id: str
    side: str
    price: float
    size: int
    order_type: str


class _DailyJsonl:
    """Keeps one handle open and reopens it when the UTC day changes."""

    def __init__(self, directory: str, name_format: str) -> None:
        self._directory = directory
        self._name_format = name_format
        self._path: Optional[str] = None
        self._file: Optional[TextIO] = None

    def path_for(self, ts: float) -> str:
        day = datetime.fromtimestamp(ts, tz=timezone.utc)
        return os.path.join(self._directory, day.strftime(self._name_format))

    def write(self, ts: float, record: dict) -> None:
        path = self.path_for(ts)
        if path != self._path:
            self.close()
            os.makedirs(self._directory, exist_ok=True)
            self._file = open(path, "a", encoding="utf-8")
            self._path = path
        assert self._file is not None
        self._file.write(json.dumps(record, separators=(",", ":")) + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._path = None


class TickRecorder:
    def __init__(self, directory: str = "") -> None:
        self._enabled = bool(directory)
        self._ticks = _DailyJsonl(directory, "ticks-%Y%m%d.jsonl")
        self._orders = _DailyJsonl(directory, "orders-%Y-%m-%d.jsonl")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def record_tick(self, snap: TickSnapshot) -> None:
        if not self._enabled:
            return
        try:
            self._ticks.write(snap.timestamp, asdict(snap))
        except OSError as exc:
            LOGGER.warning("tick log write failed: %s", exc)

    def record_order(self, entry: OrderLogEntry) -> None:
        if not self._enabled:
            return
        try:
            self._orders.write(entry.timestamp or time.time(), asdict(entry))
        except OSError as exc:
            LOGGER.warning("order log write failed: %s", exc)

    def close(self) -> None:
        self._ticks.close()
        self._orders.close()
