"""
Standardized Event Contracts
---------------------------
Frozen dataclasses for communication between the ledger, the risk monitor
and push-feed subscribers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any

from pms.fixed_point import PRICE_DECIMALS, RATIO_DECIMALS, SIZE_DECIMALS, format_fixed
from pms.ledger.identity import AccountKey
from pms.ledger.models import Position, Side


class EventType(Enum):
    OPENED = "OPENED"
    MODIFIED = "MODIFIED"
    CLOSED = "CLOSED"
    LIQUIDATED = "LIQUIDATED"
    PNL_UPDATE = "PNL_UPDATE"


TERMINAL_EVENTS = frozenset({EventType.CLOSED, EventType.LIQUIDATED})


class RiskLevel(Enum):
    WARNING = "WARNING"          # mark within alert threshold of liquidation price
    LIQUIDATION = "LIQUIDATION"  # margin ratio at or below maintenance

    @property
    def rank(self) -> int:
        return 2 if self is RiskLevel.LIQUIDATION else 1


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: int
    timestamp: datetime


@dataclass(frozen=True)
class LedgerEvent:
    """One committed ledger write, ordered by slot."""
    position_key: AccountKey
    slot: int
    block_time: int
    snapshot: Position
    event_type: EventType

    @property
    def symbol(self) -> str:
        return self.snapshot.symbol


@dataclass(frozen=True)
class PriceUpdate:
    symbol: str
    price: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "price_update",
            "symbol": self.symbol,
            "price": format_fixed(self.price, PRICE_DECIMALS),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PositionUpdate:
    position_key: AccountKey
    symbol: str
    side: Side
    size: int
    entry_price: int
    mark_price: int
    unrealized_pnl: int
    margin_ratio: int
    liquidation_price: int
    slot: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "position_update",
            "position": self.position_key.hex,
            "owner": self.position_key.owner.hex(),
            "symbol": self.symbol,
            "side": self.side.value,
            "size": format_fixed(self.size, SIZE_DECIMALS),
            "entry_price": format_fixed(self.entry_price, PRICE_DECIMALS),
            "mark_price": format_fixed(self.mark_price, PRICE_DECIMALS),
            "unrealized_pnl": format_fixed(self.unrealized_pnl, PRICE_DECIMALS),
            "margin_ratio": format_fixed(self.margin_ratio, RATIO_DECIMALS),
            "liquidation_price": format_fixed(self.liquidation_price, PRICE_DECIMALS),
            "slot": self.slot,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class LiquidationAlert:
    position_key: AccountKey
    symbol: str
    side: Side
    liquidation_price: int
    current_price: int
    margin_ratio: int
    maintenance_margin_ratio: int
    risk_level: RiskLevel
    slot: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "liquidation_alert",
            "position": self.position_key.hex,
            "owner": self.position_key.owner.hex(),
            "symbol": self.symbol,
            "side": self.side.value,
            "liquidation_price": format_fixed(self.liquidation_price, PRICE_DECIMALS),
            "current_price": format_fixed(self.current_price, PRICE_DECIMALS),
            "margin_ratio": format_fixed(self.margin_ratio, RATIO_DECIMALS),
            "maintenance_margin_ratio": format_fixed(self.maintenance_margin_ratio, RATIO_DECIMALS),
            "risk_level": self.risk_level.value,
            "slot": self.slot,
            "timestamp": self.timestamp.isoformat(),
        }
