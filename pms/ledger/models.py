"""
Ledger Models
-------------
Account and position records as stored by the ledger.

All monetary fields are scaled integers (see pms.fixed_point). Records are
frozen; the ledger commits a transaction by swapping in replaced copies.
"""
from dataclasses import dataclass
from enum import Enum

from pms.ledger.identity import AccountKey


class Side(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def multiplier(self) -> int:
        return 1 if self is Side.LONG else -1


class PositionStatus(Enum):
    OPENING = "OPENING"
    OPEN = "OPEN"
    MODIFYING = "MODIFYING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    LIQUIDATING = "LIQUIDATING"


@dataclass(frozen=True)
class UserAccount:
    owner: bytes
    total_collateral: int = 0
    locked_collateral: int = 0
    total_pnl: int = 0
    position_count: int = 0
    position_count_total: int = 0
    slot: int = 0

    @property
    def key(self) -> AccountKey:
        return AccountKey.user(self.owner)

    @property
    def address(self) -> bytes:
        return self.key.address

    @property
    def available_collateral(self) -> int:
        return self.total_collateral - self.locked_collateral

    @property
    def next_position_index(self) -> int:
        """Index the next opened position will receive."""
        return self.position_count_total


@dataclass(frozen=True)
class Position:
    owner: bytes
    index: int
    symbol: str
    side: Side
    size: int
    entry_price: int
    mark_price: int
    margin: int
    leverage: int
    liquidation_price: int
    maintenance_margin_ratio: int
    unrealized_pnl: int = 0
    realized_pnl: int = 0
    funding_accrued: int = 0
    status: PositionStatus = PositionStatus.OPENING
    opened_at: int = 0
    last_update: int = 0
    slot: int = 0

    @property
    def key(self) -> AccountKey:
        return AccountKey.position(self.owner, self.index)

    @property
    def address(self) -> bytes:
        return self.key.address

    @property
    def is_open(self) -> bool:
        return self.status in (PositionStatus.OPEN, PositionStatus.MODIFYING)

    @property
    def is_closed(self) -> bool:
        return self.status is PositionStatus.CLOSED
