"""
Symbol Partition
----------------
Risk view of every open position on one symbol, plus the ordering state
(last applied slot per position, last tick time) that makes replay safe.

A partition is only ever touched by its own worker, so it holds no locks.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from pms.events import TERMINAL_EVENTS, LedgerEvent, PriceTick, RiskLevel
from pms.ledger.models import Position
from pms.margin import calculator

logger = logging.getLogger(__name__)


@dataclass
class RiskView:
    """Derived, off-ledger risk state of one open position."""
    position: Position
    mark_price: int
    unrealized_pnl: int = 0
    margin_ratio: int = 0
    distance_to_liquidation: int = 0
    risk_level: Optional[RiskLevel] = None
    # Highest level already alerted; cleared as risk recedes
    alerted_level: Optional[RiskLevel] = None

    @property
    def slot(self) -> int:
        return self.position.slot

    def recompute(self, mark_price: int, alert_threshold: int) -> Optional[RiskLevel]:
        """
        Re-derive PnL and margin ratio at `mark_price`.
        Returns the risk level to alert on, or None when nothing new crossed.
        """
        p = self.position
        self.mark_price = mark_price
        self.unrealized_pnl = calculator.unrealized_pnl(p.side, p.size, p.entry_price, mark_price)
        self.margin_ratio = calculator.margin_ratio(
            p.margin, p.size, mark_price, self.unrealized_pnl + p.funding_accrued
        )
        self.distance_to_liquidation = calculator.distance_to_liquidation(
            p.side, mark_price, p.liquidation_price
        )

        if calculator.should_liquidate(self.margin_ratio, p.maintenance_margin_ratio):
            level = RiskLevel.LIQUIDATION
        elif self.distance_to_liquidation <= alert_threshold:
            level = RiskLevel.WARNING
        else:
            level = None
        self.risk_level = level

        if level is None:
            self.alerted_level = None
            return None
        if self.alerted_level is not None and self.alerted_level.rank >= level.rank:
            self.alerted_level = level
            return None
        self.alerted_level = level
        return level


class SymbolPartition:
    def __init__(self, symbol: str, queue_size: int = 0):
        self.symbol = symbol
        self.views: Dict[bytes, RiskView] = {}
        # Survives close so late replays of a closed position stay discarded
        self.applied_slots: Dict[bytes, int] = {}
        self.last_price: Optional[int] = None
        self.last_tick_time: Optional[datetime] = None

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None

        self.events_applied = 0
        self.stale_events = 0
        self.ticks_applied = 0
        self.stale_ticks = 0

    def apply_event(self, event: LedgerEvent) -> Optional[RiskView]:
        """
        Applies a ledger event if it is newer than anything seen for its
        position. Returns the affected view, or None when the event was stale.
        Terminal events remove the view and return its final state.
        """
        address = event.position_key.address
        last_slot = self.applied_slots.get(address)
        if last_slot is not None and event.slot <= last_slot:
            self.stale_events += 1
            logger.debug(f"StaleEventDiscarded {event.position_key} slot {event.slot} <= {last_slot}")
            return None
        self.applied_slots[address] = event.slot
        self.events_applied += 1

        snapshot = event.snapshot
        if event.event_type in TERMINAL_EVENTS or snapshot.is_closed:
            view = self.views.pop(address, None)
            if view is None:
                view = RiskView(position=snapshot, mark_price=snapshot.mark_price)
            view.position = snapshot
            view.mark_price = snapshot.mark_price
            view.unrealized_pnl = 0
            view.margin_ratio = 0
            view.risk_level = None
            return view

        view = self.views.get(address)
        if view is None:
            view = RiskView(position=snapshot, mark_price=snapshot.mark_price)
            self.views[address] = view
        else:
            view.position = snapshot
        return view

    def accept_tick(self, tick: PriceTick) -> bool:
        """Records a tick unless it is older than the last one applied."""
        if self.last_tick_time is not None and tick.timestamp < self.last_tick_time:
            self.stale_ticks += 1
            logger.debug(f"Stale tick for {self.symbol} at {tick.timestamp} < {self.last_tick_time}")
            return False
        self.last_tick_time = tick.timestamp
        self.last_price = tick.price
        self.ticks_applied += 1
        return True

    def open_views(self) -> List[RiskView]:
        return list(self.views.values())

    @property
    def total_unrealized_pnl(self) -> int:
        return sum(v.unrealized_pnl for v in self.views.values())
