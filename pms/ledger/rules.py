"""
Ledger Invariants
-----------------
Hard gates checked inside every ledger transaction before it commits.
A LedgerRuleError means the engine itself is wrong, not the request.
"""
from typing import Optional

from pms.errors import (
    ConcurrentModificationConflict,
    InsufficientCollateral,
    InvalidSymbol,
    PositionManagementError,
)
from pms.fixed_point import U32_MAX, check_i64, check_u64
from pms.ledger.models import Position, PositionStatus, UserAccount


class LedgerRuleError(PositionManagementError):
    """Raised when a committed state would violate a ledger invariant."""
    pass


def enforce_symbol(symbol: str, max_length: int):
    if not isinstance(symbol, str) or not symbol.strip():
        raise InvalidSymbol(f"Symbol must be a non-empty string, got {symbol!r}")
    if len(symbol.encode("utf-8")) > max_length:
        raise InvalidSymbol(f"Symbol {symbol!r} exceeds {max_length} bytes")


def enforce_expected_slot(current_slot: int, expected_slot: Optional[int], what: str):
    """Rejects a write that was prepared against an older version of the record."""
    if expected_slot is not None and expected_slot != current_slot:
        raise ConcurrentModificationConflict(
            f"{what} was modified at slot {current_slot}; request was based on slot {expected_slot}"
        )


def enforce_available_collateral(account: UserAccount, amount: int):
    available = account.total_collateral - account.locked_collateral
    if available < amount:
        raise InsufficientCollateral(f"Requires {amount} collateral, {available} available")


def enforce_account_invariants(account: UserAccount):
    check_u64(account.total_collateral, "total_collateral")
    check_u64(account.locked_collateral, "locked_collateral")
    check_i64(account.total_pnl, "total_pnl")
    if account.locked_collateral > account.total_collateral:
        raise LedgerRuleError(
            f"Locked collateral {account.locked_collateral} exceeds total {account.total_collateral}"
        )
    if not 0 <= account.position_count <= account.position_count_total <= U32_MAX:
        raise LedgerRuleError(
            f"Position counters out of order: {account.position_count}/{account.position_count_total}"
        )


def enforce_position_invariants(position: Position):
    if position.status not in (PositionStatus.OPEN, PositionStatus.CLOSED):
        raise LedgerRuleError(f"Transient status {position.status.value} cannot be committed")
    if position.status is PositionStatus.OPEN and position.margin <= 0:
        raise LedgerRuleError(f"Open position {position.key} has no margin")
    for name in ("size", "entry_price", "mark_price", "margin", "liquidation_price"):
        check_u64(getattr(position, name), name)
    for name in ("unrealized_pnl", "realized_pnl", "funding_accrued"):
        check_i64(getattr(position, name), name)
    if position.last_update < position.opened_at:
        raise LedgerRuleError(f"Position {position.key} last_update precedes opened_at")
