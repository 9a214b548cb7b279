"""
Risk Monitor
------------
Off-ledger view of open positions, re-derived from the ledger's ordered
event stream and a live price feed.

Processing is partitioned by symbol: one queue and one worker task per
symbol, so parallelism is across symbols and never within one. The monitor
holds no reference to ledger state and never mutates it; liquidations are
only ever raised as alerts on the push feed.

Two ways to drive it:
    - synchronously, with process_event() / process_price()
    - as a service: start(), then submit_event() / submit_price() or
      consume_events() / consume_prices(), and stop()
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from config.settings import ALERT_THRESHOLD_PCT, PARTITION_QUEUE_SIZE, SUBSCRIBER_QUEUE_SIZE
from pms.clock import Clock, RealTimeClock, as_utc
from pms.events import (
    LedgerEvent,
    LiquidationAlert,
    PositionUpdate,
    PriceTick,
    PriceUpdate,
    RiskLevel,
)
from pms.fixed_point import PRICE_DECIMALS, RATIO_DECIMALS, SIZE_DECIMALS, from_fixed, parse_ratio
from pms.interfaces import LedgerEventSource, PriceFeed
from pms.ledger.identity import AccountKey
from pms.monitor.broadcaster import UpdateBroadcaster
from pms.monitor.partition import RiskView, SymbolPartition

logger = logging.getLogger(__name__)

RISK_FRAME_COLUMNS = [
    "position", "owner", "index", "symbol", "side", "size", "entry_price", "mark_price",
    "unrealized_pnl", "margin_ratio", "liquidation_price", "distance_to_liquidation",
    "risk_level", "slot",
]


@dataclass
class MonitorConfig:
    """Configuration for the risk monitor."""
    alert_threshold_pct: int = parse_ratio(ALERT_THRESHOLD_PCT)
    subscriber_queue_size: int = SUBSCRIBER_QUEUE_SIZE
    partition_queue_size: int = PARTITION_QUEUE_SIZE


@dataclass
class MonitorStatistics:
    total_positions: int = 0
    open_positions: int = 0
    symbols_monitored: int = 0
    total_unrealized_pnl: int = 0
    events_applied: int = 0
    stale_events_discarded: int = 0
    ticks_applied: int = 0
    stale_ticks_discarded: int = 0
    malformed_ticks: int = 0
    alerts_emitted: int = 0
    dropped_messages: int = 0


class RiskMonitor:
    def __init__(self, broadcaster: Optional[UpdateBroadcaster] = None,
                 clock: Optional[Clock] = None, config: Optional[MonitorConfig] = None):
        self.config = config or MonitorConfig()
        self.clock = clock or RealTimeClock()
        self.broadcaster = broadcaster or UpdateBroadcaster(self.config.subscriber_queue_size)

        self._partitions: Dict[str, SymbolPartition] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

        self.malformed_ticks = 0
        self.alerts_emitted = 0
        self.failures: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Synchronous processing
    # ------------------------------------------------------------------

    def process_event(self, event: LedgerEvent) -> bool:
        """
        Applies one ledger event. Returns False when it was discarded as stale.
        """
        partition = self._partition(event.symbol)
        view = partition.apply_event(event)
        if view is None:
            return False

        timestamp = self.clock.now()
        if view.position.is_closed:
            self._publish_position(view, timestamp)
            return True

        mark = partition.last_price if partition.last_price is not None else view.position.mark_price
        level = view.recompute(mark, self.config.alert_threshold_pct)
        self._publish_position(view, timestamp)
        if level is not None:
            self._raise_alert(view, level, timestamp)
        return True

    def process_price(self, tick: PriceTick) -> bool:
        """
        Re-derives risk for every open position on the tick's symbol.
        Malformed or out-of-order ticks are logged and discarded.
        """
        if not self._valid_tick(tick):
            self.malformed_ticks += 1
            logger.warning(f"Discarding malformed price tick {tick!r}")
            return False

        tick = replace(tick, timestamp=as_utc(tick.timestamp))
        partition = self._partition(tick.symbol)
        if not partition.accept_tick(tick):
            return False

        self.broadcaster.publish(PriceUpdate(symbol=tick.symbol, price=tick.price, timestamp=tick.timestamp))
        for view in partition.open_views():
            level = view.recompute(tick.price, self.config.alert_threshold_pct)
            self._publish_position(view, tick.timestamp)
            if level is not None:
                self._raise_alert(view, level, tick.timestamp)
        return True

    # ------------------------------------------------------------------
    # Service mode
    # ------------------------------------------------------------------

    async def start(self):
        """Binds to the running loop and starts a worker per known symbol."""
        self._loop = asyncio.get_running_loop()
        self._running = True
        for partition in self._partitions.values():
            self._start_worker(partition)
        logger.info(f"Risk monitor started with {len(self._partitions)} partitions")

    async def stop(self):
        self._running = False
        tasks = [p.task for p in self._partitions.values() if p.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for partition in self._partitions.values():
            partition.task = None
        self._loop = None
        logger.info("Risk monitor stopped")

    async def submit_event(self, event: LedgerEvent):
        partition = self._partition(event.symbol)
        await partition.queue.put(event)

    async def submit_price(self, tick: PriceTick):
        symbol = getattr(tick, "symbol", None)
        if not isinstance(symbol, str) or not symbol:
            self.malformed_ticks += 1
            logger.warning(f"Discarding price tick without symbol {tick!r}")
            return
        partition = self._partition(symbol)
        await partition.queue.put(tick)

    async def run_until_idle(self):
        """Waits until every partition queue has been fully processed."""
        await asyncio.gather(*(p.queue.join() for p in list(self._partitions.values())))

    async def consume_prices(self, feed: PriceFeed):
        async for tick in feed.stream():
            await self.submit_price(tick)

    async def consume_events(self, source: LedgerEventSource):
        async for event in source.stream():
            await self.submit_event(event)

    def on_ledger_event(self, event: LedgerEvent):
        """
        Ledger listener. Hands the event to the partition worker when the
        monitor is running, otherwise applies it inline.
        """
        if self._running and self._loop is not None:
            asyncio.run_coroutine_threadsafe(self.submit_event(event), self._loop)
        else:
            self.process_event(event)

    def attach(self, ledger, backfill: bool = True):
        """Subscribes to a ledger, replaying its event log first when asked."""
        ledger.subscribe(self.on_ledger_event)
        if backfill:
            for event in ledger.events_since(0):
                self.on_ledger_event(event)

    async def _worker(self, partition: SymbolPartition):
        while True:
            item = await partition.queue.get()
            try:
                if isinstance(item, LedgerEvent):
                    self.process_event(item)
                else:
                    self.process_price(item)
            except Exception:
                # A failure on one symbol never halts the others
                self.failures[partition.symbol] = self.failures.get(partition.symbol, 0) + 1
                logger.exception(f"Risk monitor failed processing {partition.symbol}")
            finally:
                partition.queue.task_done()

    def _start_worker(self, partition: SymbolPartition):
        if partition.task is not None and not partition.task.done():
            return
        if partition.queue.empty():
            partition.queue = asyncio.Queue(maxsize=self.config.partition_queue_size)
        partition.task = self._loop.create_task(self._worker(partition))

    def _partition(self, symbol: str) -> SymbolPartition:
        partition = self._partitions.get(symbol)
        if partition is None:
            partition = SymbolPartition(symbol, self.config.partition_queue_size)
            self._partitions[symbol] = partition
            logger.info(f"Monitoring new symbol {symbol}")
            if self._running and self._loop is not None:
                self._start_worker(partition)
        return partition

    @staticmethod
    def _valid_tick(tick) -> bool:
        if not isinstance(tick, PriceTick):
            return False
        if not isinstance(tick.symbol, str) or not tick.symbol:
            return False
        if isinstance(tick.price, bool) or not isinstance(tick.price, int) or tick.price <= 0:
            return False
        return isinstance(tick.timestamp, datetime)

    # ------------------------------------------------------------------
    # Push feed
    # ------------------------------------------------------------------

    def _publish_position(self, view: RiskView, timestamp):
        p = view.position
        self.broadcaster.publish(PositionUpdate(
            position_key=p.key,
            symbol=p.symbol,
            side=p.side,
            size=p.size,
            entry_price=p.entry_price,
            mark_price=view.mark_price,
            unrealized_pnl=view.unrealized_pnl,
            margin_ratio=view.margin_ratio,
            liquidation_price=p.liquidation_price,
            slot=p.slot,
            timestamp=timestamp,
        ))

    def _raise_alert(self, view: RiskView, level: RiskLevel, timestamp):
        p = view.position
        alert = LiquidationAlert(
            position_key=p.key,
            symbol=p.symbol,
            side=p.side,
            liquidation_price=p.liquidation_price,
            current_price=view.mark_price,
            margin_ratio=view.margin_ratio,
            maintenance_margin_ratio=p.maintenance_margin_ratio,
            risk_level=level,
            slot=p.slot,
            timestamp=timestamp,
        )
        self.alerts_emitted += 1
        logger.warning(f"{level.value} alert for {p.key} {p.symbol} at {view.mark_price}")
        self.broadcaster.publish(alert)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, position_key: AccountKey) -> Optional[RiskView]:
        address = position_key.address
        for partition in self._partitions.values():
            view = partition.views.get(address)
            if view is not None:
                return view
        return None

    def get_user_positions(self, owner: bytes) -> List[RiskView]:
        views = [v for v in self._all_views() if v.position.owner == owner]
        return sorted(views, key=lambda v: v.position.index)

    def get_positions_by_symbol(self, symbol: str) -> List[RiskView]:
        partition = self._partitions.get(symbol)
        return partition.open_views() if partition else []

    def get_cached_price(self, symbol: str) -> Optional[int]:
        partition = self._partitions.get(symbol)
        return partition.last_price if partition else None

    def monitored_symbols(self) -> List[str]:
        return sorted(self._partitions)

    def last_applied_slot(self, position_key: AccountKey) -> Optional[int]:
        partition_slots = (p.applied_slots.get(position_key.address) for p in self._partitions.values())
        return next((s for s in partition_slots if s is not None), None)

    def get_statistics(self) -> MonitorStatistics:
        partitions = list(self._partitions.values())
        return MonitorStatistics(
            total_positions=sum(len(p.applied_slots) for p in partitions),
            open_positions=sum(len(p.views) for p in partitions),
            symbols_monitored=len(partitions),
            total_unrealized_pnl=sum(p.total_unrealized_pnl for p in partitions),
            events_applied=sum(p.events_applied for p in partitions),
            stale_events_discarded=sum(p.stale_events for p in partitions),
            ticks_applied=sum(p.ticks_applied for p in partitions),
            stale_ticks_discarded=sum(p.stale_ticks for p in partitions),
            malformed_ticks=self.malformed_ticks,
            alerts_emitted=self.alerts_emitted,
            dropped_messages=self.broadcaster.dropped_total,
        )

    def risk_frame(self) -> pd.DataFrame:
        """Current risk views, most at-risk (lowest margin ratio) first."""
        rows = []
        for view in self._all_views():
            p = view.position
            rows.append({
                "position": p.key.hex,
                "owner": p.owner.hex(),
                "index": p.index,
                "symbol": p.symbol,
                "side": p.side.value,
                "size": float(from_fixed(p.size, SIZE_DECIMALS)),
                "entry_price": float(from_fixed(p.entry_price, PRICE_DECIMALS)),
                "mark_price": float(from_fixed(view.mark_price, PRICE_DECIMALS)),
                "unrealized_pnl": float(from_fixed(view.unrealized_pnl, PRICE_DECIMALS)),
                "margin_ratio": float(from_fixed(view.margin_ratio, RATIO_DECIMALS)),
                "liquidation_price": float(from_fixed(p.liquidation_price, PRICE_DECIMALS)),
                "distance_to_liquidation": float(from_fixed(view.distance_to_liquidation, RATIO_DECIMALS)),
                "risk_level": view.risk_level.value if view.risk_level else None,
                "slot": p.slot,
            })
        df = pd.DataFrame(rows, columns=RISK_FRAME_COLUMNS)
        if df.empty:
            return df
        return df.sort_values(["margin_ratio", "position"]).reset_index(drop=True)

    def _all_views(self) -> List[RiskView]:
        return [v for p in self._partitions.values() for v in p.views.values()]
