"""
Replay Feeds
------------
In-memory PriceFeed and LedgerEventSource implementations, used to backfill
a freshly started monitor and to replay recorded ticks.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pytz

from pms.clock import ReplayClock
from pms.events import LedgerEvent, PriceTick
from pms.fixed_point import parse_price
from pms.interfaces import LedgerEventSource, PriceFeed


class ReplayPriceFeed(PriceFeed):
    """
    Yields recorded ticks in order, stepping a ReplayClock to each tick's time.
    """

    def __init__(self, ticks: Iterable[PriceTick], clock: Optional[ReplayClock] = None):
        self.ticks: List[PriceTick] = list(ticks)
        self.clock = clock

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]], clock: Optional[ReplayClock] = None):
        """
        Builds a feed from dicts like
        {"symbol": "BTC-USD", "price": "50000.5", "timestamp": "2025-01-01T09:15:00"}.
        """
        ticks = []
        for record in records:
            timestamp = record["timestamp"]
            if isinstance(timestamp, str):
                timestamp = datetime.fromisoformat(timestamp)
            if timestamp.tzinfo is None:
                timestamp = pytz.utc.localize(timestamp)
            ticks.append(PriceTick(
                symbol=record["symbol"],
                price=parse_price(record["price"]),
                timestamp=timestamp,
            ))
        return cls(ticks, clock)

    async def stream(self):
        for tick in self.ticks:
            if self.clock is not None:
                self.clock.set_time(tick.timestamp)
            yield tick
            await asyncio.sleep(0)


class ReplayEventSource(LedgerEventSource):
    def __init__(self, events: Iterable[LedgerEvent]):
        self.events: List[LedgerEvent] = sorted(events, key=lambda e: e.slot)

    @classmethod
    def from_ledger(cls, ledger, since_slot: int = 0):
        """Replays a ledger's event log from `since_slot` (exclusive)."""
        return cls(ledger.events_since(since_slot))

    async def stream(self):
        for event in self.events:
            yield event
            await asyncio.sleep(0)
