"""
Ledger
------
Authoritative, slot-ordered store of user accounts and positions.

Each command runs as one atomic transaction under the owner's lock: all
checks run against immutable copies, and the new records are swapped in
only after every invariant holds. A failed command leaves the ledger
exactly as it was. Every committed write consumes the next slot; position
writes are appended to the event log and pushed to listeners in slot order.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from config.settings import MAINTENANCE_MARGIN_RATIO
from pms.clock import Clock, RealTimeClock
from pms.errors import (
    AccountAlreadyInitialized,
    AccountNotFound,
    CannotRemoveMargin,
    InsufficientCollateral,
    InvalidIdentifier,
    InvalidPositionSize,
    NoOpRequest,
    PositionAlreadyClosed,
    PositionNotFound,
    PositionNotLiquidatable,
    ValidationError,
)
from pms.events import EventType, LedgerEvent
from pms.fixed_point import (
    RATIO_DECIMALS,
    check_i64,
    check_u32,
    checked_add_u64,
    checked_sub_u64,
    format_fixed,
    parse_ratio,
    require_int,
)
from pms.ledger import rules
from pms.ledger.identity import AccountKey, AccountKind, derive_user_address, validate_owner
from pms.ledger.models import Position, PositionStatus, Side, UserAccount
from pms.ledger.state_machine import transition
from pms.margin import calculator

logger = logging.getLogger(__name__)

LedgerListener = Callable[[LedgerEvent], None]


@dataclass
class LedgerConfig:
    """Configuration for the ledger."""
    default_maintenance_margin_ratio: int = parse_ratio(MAINTENANCE_MARGIN_RATIO)
    max_leverage: int = calculator.MAX_LEVERAGE
    leverage_tiers: Tuple[calculator.LeverageTier, ...] = calculator.LEVERAGE_TIERS
    max_symbol_length: int = 32


@dataclass
class LedgerStatistics:
    accounts: int = 0
    total_positions: int = 0
    open_positions: int = 0
    closed_positions: int = 0
    liquidated_positions: int = 0
    total_collateral: int = 0
    locked_collateral: int = 0
    last_slot: int = 0


class Ledger:
    """
    In-process ledger with serializable isolation per account.
    """

    def __init__(self, clock: Optional[Clock] = None, config: Optional[LedgerConfig] = None):
        self.clock = clock or RealTimeClock()
        self.config = config or LedgerConfig()

        self._accounts: Dict[bytes, UserAccount] = {}
        # Arena keyed by derived address; indices only ever grow per owner
        self._positions: Dict[bytes, Position] = {}
        self._owner_positions: Dict[bytes, List[bytes]] = {}
        self._liquidated: set = set()

        self._event_log: List[LedgerEvent] = []
        self._listeners: List[LedgerListener] = []

        self._slot = 0
        self._slot_lock = threading.Lock()
        self._owner_locks: Dict[bytes, threading.Lock] = {}
        self._owner_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: LedgerListener):
        """Registers a non-blocking callback for committed position writes."""
        with self._slot_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: LedgerListener):
        with self._slot_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_slot(self) -> int:
        return self._slot

    def get_user_account(self, owner: bytes) -> UserAccount:
        owner = validate_owner(owner)
        account = self._accounts.get(derive_user_address(owner))
        if account is None:
            raise AccountNotFound(f"No account for owner {owner.hex()}")
        return account

    def get_position(self, position_key: AccountKey) -> Position:
        position = self._positions.get(self._position_address(position_key))
        if position is None:
            raise PositionNotFound(f"Position {position_key} does not exist")
        return position

    def list_positions(self, owner: bytes) -> List[Position]:
        """All positions ever opened by `owner`, in index order."""
        account = self.get_user_account(owner)
        addresses = self._owner_positions.get(account.owner, [])
        return [self._positions[address] for address in addresses]

    def get_open_positions(self, owner: bytes) -> List[Position]:
        return [p for p in self.list_positions(owner) if p.is_open]

    def all_open_positions(self) -> List[Position]:
        """Open positions across every owner, ordered by slot."""
        with self._slot_lock:
            positions = [p for p in self._positions.values() if p.is_open]
        return sorted(positions, key=lambda p: p.slot)

    def events_since(self, slot: int = 0) -> List[LedgerEvent]:
        """Committed position events with a slot strictly greater than `slot`."""
        with self._slot_lock:
            return [event for event in self._event_log if event.slot > slot]

    def get_statistics(self) -> LedgerStatistics:
        with self._slot_lock:
            accounts = list(self._accounts.values())
            positions = list(self._positions.values())
            stats = LedgerStatistics(last_slot=self._slot)
        stats.accounts = len(accounts)
        stats.total_positions = len(positions)
        stats.open_positions = sum(1 for p in positions if p.is_open)
        stats.closed_positions = sum(1 for p in positions if p.is_closed)
        stats.liquidated_positions = len(self._liquidated)
        stats.total_collateral = sum(a.total_collateral for a in accounts)
        stats.locked_collateral = sum(a.locked_collateral for a in accounts)
        return stats

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def initialize_user(self, owner: bytes) -> UserAccount:
        owner = validate_owner(owner)
        with self._owner_lock(owner):
            if derive_user_address(owner) in self._accounts:
                raise AccountAlreadyInitialized(f"Account for owner {owner.hex()} already exists")
            account, _ = self._commit("initialize_user", account=UserAccount(owner=owner))
        return account

    def add_collateral(self, owner: bytes, amount: int, expected_slot: Optional[int] = None) -> UserAccount:
        require_int(amount, "amount")
        if amount <= 0:
            raise ValidationError(f"Collateral amount must be positive, got {amount}")
        owner = validate_owner(owner)
        with self._owner_lock(owner):
            account = self.get_user_account(owner)
            rules.enforce_expected_slot(account.slot, expected_slot, f"Account {account.key}")
            account = replace(
                account,
                total_collateral=checked_add_u64(account.total_collateral, amount, "total_collateral"),
            )
            account, _ = self._commit("add_collateral", account=account)
        return account

    def open_position(self, owner: bytes, symbol: str, side: Union[Side, str], size: int, leverage: int,
                      entry_price: int, maintenance_margin_ratio: Optional[int] = None) -> Position:
        owner = validate_owner(owner)
        side = self._parse_side(side)
        rules.enforce_symbol(symbol, self.config.max_symbol_length)
        require_int(size, "size")
        if size <= 0:
            raise InvalidPositionSize(f"Size must be positive, got {size}")
        calculator.validate_leverage(leverage, self.config.max_leverage)
        self._require_price(entry_price, "entry_price")
        if maintenance_margin_ratio is None:
            maintenance_margin_ratio = self.config.default_maintenance_margin_ratio
        require_int(maintenance_margin_ratio, "maintenance_margin_ratio")
        calculator.validate_maintenance_margin(leverage, maintenance_margin_ratio)
        calculator.leverage_tier(leverage, size, entry_price, self.config.leverage_tiers)

        margin = calculator.required_margin(size, entry_price, leverage)
        liq_price = calculator.liquidation_price(side, entry_price, leverage, maintenance_margin_ratio)

        with self._owner_lock(owner):
            account = self.get_user_account(owner)
            rules.enforce_available_collateral(account, margin)

            # increment-then-assign: the new index is the prior total
            index = account.position_count_total
            account = replace(
                account,
                locked_collateral=checked_add_u64(account.locked_collateral, margin, "locked_collateral"),
                position_count=check_u32(account.position_count + 1, "position_count"),
                position_count_total=check_u32(index + 1, "position_count_total"),
            )
            now = self.clock.unix_time()
            position = Position(
                owner=owner,
                index=index,
                symbol=symbol,
                side=side,
                size=size,
                entry_price=entry_price,
                mark_price=entry_price,
                margin=margin,
                leverage=leverage,
                liquidation_price=liq_price,
                maintenance_margin_ratio=maintenance_margin_ratio,
                status=PositionStatus.OPENING,
                opened_at=now,
                last_update=now,
            )
            position = transition(position, PositionStatus.OPEN)
            _, position = self._commit("open_position", account=account, position=position,
                                       event_type=EventType.OPENED)
        return position

    def modify_position(self, position_key: AccountKey, new_size: Optional[int] = None,
                        margin_delta: Optional[int] = None, expected_slot: Optional[int] = None) -> Position:
        """
        Resize a position and/or move margin in or out of it.

        A size change re-prices the margin requirement at the existing entry
        price. A margin delta moves collateral between the account's free
        balance and the position, one-for-one.
        """
        if new_size is None and not margin_delta:
            raise NoOpRequest("modify_position requires new_size or a non-zero margin_delta")
        if new_size is not None:
            require_int(new_size, "new_size")
            if new_size <= 0:
                raise InvalidPositionSize(f"Size must be positive, got {new_size}")
        if margin_delta is not None:
            require_int(margin_delta, "margin_delta")

        owner = self._position_owner(position_key)
        with self._owner_lock(owner):
            position = self.get_position(position_key)
            if position.is_closed:
                raise PositionAlreadyClosed(f"Position {position_key} is already closed")
            rules.enforce_expected_slot(position.slot, expected_slot, f"Position {position_key}")
            position = transition(position, PositionStatus.MODIFYING)
            account = self.get_user_account(owner)

            size = position.size
            margin = position.margin
            locked = account.locked_collateral
            liq_price = position.liquidation_price

            if new_size is not None:
                calculator.leverage_tier(position.leverage, new_size, position.entry_price,
                                         self.config.leverage_tiers)
                new_margin = calculator.required_margin(new_size, position.entry_price, position.leverage)
                if new_margin > margin:
                    additional = new_margin - margin
                    rules.enforce_available_collateral(replace(account, locked_collateral=locked), additional)
                    locked = checked_add_u64(locked, additional, "locked_collateral")
                else:
                    freed = margin - new_margin
                    if freed > locked:
                        raise InsufficientCollateral(f"Cannot release {freed}; only {locked} is locked")
                    locked -= freed
                size, margin = new_size, new_margin
                liq_price = calculator.liquidation_price(
                    position.side, position.entry_price, position.leverage, position.maintenance_margin_ratio
                )

            if margin_delta:
                if margin_delta > 0:
                    rules.enforce_available_collateral(replace(account, locked_collateral=locked), margin_delta)
                    margin = checked_add_u64(margin, margin_delta, "margin")
                    locked = checked_add_u64(locked, margin_delta, "locked_collateral")
                else:
                    removal = -margin_delta
                    floor = calculator.required_margin(size, position.entry_price, position.leverage)
                    if removal >= margin or margin - removal < floor:
                        raise CannotRemoveMargin(
                            f"Removing {removal} would leave margin below the {floor} requirement"
                        )
                    margin -= removal
                    locked = checked_sub_u64(locked, removal, "locked_collateral")
                liq_price = calculator.liquidation_price_for_margin(
                    position.side, size, position.entry_price, margin, position.maintenance_margin_ratio
                )

            position = replace(
                position,
                size=size,
                margin=margin,
                liquidation_price=liq_price,
                unrealized_pnl=calculator.unrealized_pnl(position.side, size, position.entry_price,
                                                         position.mark_price),
                last_update=max(position.last_update, self.clock.unix_time()),
            )
            position = transition(position, PositionStatus.OPEN)
            account = replace(account, locked_collateral=locked)
            _, position = self._commit("modify_position", account=account, position=position,
                                       event_type=EventType.MODIFIED)
        return position

    def close_position(self, position_key: AccountKey, final_price: int,
                       expected_slot: Optional[int] = None) -> Position:
        self._require_price(final_price, "final_price")
        owner = self._position_owner(position_key)
        with self._owner_lock(owner):
            position = self.get_position(position_key)
            if position.is_closed:
                raise PositionAlreadyClosed(f"Position {position_key} is already closed")
            rules.enforce_expected_slot(position.slot, expected_slot, f"Position {position_key}")
            position = transition(position, PositionStatus.CLOSING)
            account, position = self._settle(self.get_user_account(owner), position, final_price)
            _, position = self._commit("close_position", account=account, position=position,
                                       event_type=EventType.CLOSED)
        return position

    def liquidate_position(self, position_key: AccountKey, mark_price: int,
                           expected_slot: Optional[int] = None) -> Position:
        """
        Close a position at `mark_price` once its margin ratio has reached
        the maintenance threshold.
        """
        self._require_price(mark_price, "mark_price")
        owner = self._position_owner(position_key)
        with self._owner_lock(owner):
            position = self.get_position(position_key)
            if position.is_closed:
                raise PositionAlreadyClosed(f"Position {position_key} is already closed")
            rules.enforce_expected_slot(position.slot, expected_slot, f"Position {position_key}")

            pnl = calculator.unrealized_pnl(position.side, position.size, position.entry_price, mark_price)
            ratio = calculator.margin_ratio(position.margin, position.size, mark_price,
                                            pnl + position.funding_accrued)
            if not calculator.should_liquidate(ratio, position.maintenance_margin_ratio):
                raise PositionNotLiquidatable(
                    f"Position {position_key} margin ratio {format_fixed(ratio, RATIO_DECIMALS)} is above "
                    f"maintenance {format_fixed(position.maintenance_margin_ratio, RATIO_DECIMALS)}"
                )

            position = transition(position, PositionStatus.LIQUIDATING)
            account, position = self._settle(self.get_user_account(owner), position, mark_price)
            _, position = self._commit("liquidate_position", account=account, position=position,
                                       event_type=EventType.LIQUIDATED)
            self._liquidated.add(position.address)
        return position

    def accrue_funding(self, position_key: AccountKey, amount: int,
                       expected_slot: Optional[int] = None) -> Position:
        """Adds an externally computed, signed funding amount to an open position."""
        require_int(amount, "amount")
        if amount == 0:
            raise NoOpRequest("Funding amount must be non-zero")
        owner = self._position_owner(position_key)
        with self._owner_lock(owner):
            position = self.get_position(position_key)
            if position.is_closed:
                raise PositionAlreadyClosed(f"Position {position_key} is already closed")
            rules.enforce_expected_slot(position.slot, expected_slot, f"Position {position_key}")
            position = replace(
                position,
                funding_accrued=check_i64(position.funding_accrued + amount, "funding_accrued"),
                last_update=max(position.last_update, self.clock.unix_time()),
            )
            _, position = self._commit("accrue_funding", position=position, event_type=EventType.PNL_UPDATE)
        return position

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle(self, account: UserAccount, position: Position, final_price: int):
        """Realize PnL and release margin; shared by close and liquidate."""
        pnl = calculator.realized_pnl(position.side, position.size, position.entry_price, final_price)
        pnl = check_i64(pnl + position.funding_accrued, "realized_pnl")

        locked = checked_sub_u64(account.locked_collateral, position.margin, "locked_collateral")
        # Losses are charged up to the collateral not backing other positions
        max_loss = account.total_collateral - locked
        settled = max(pnl, -max_loss)
        if settled != pnl:
            logger.warning(f"Position {position.key} loss {pnl} exceeds free collateral; "
                           f"{settled - pnl} left uncovered")

        if settled >= 0:
            total = checked_add_u64(account.total_collateral, settled, "total_collateral")
        else:
            total = checked_sub_u64(account.total_collateral, -settled, "total_collateral")
        account = replace(
            account,
            total_collateral=total,
            locked_collateral=locked,
            total_pnl=check_i64(account.total_pnl + settled, "total_pnl"),
            position_count=check_u32(account.position_count - 1, "position_count"),
        )
        position = replace(
            position,
            mark_price=final_price,
            unrealized_pnl=0,
            realized_pnl=settled,
            last_update=max(position.last_update, self.clock.unix_time()),
        )
        return account, transition(position, PositionStatus.CLOSED)

    def _commit(self, operation: str, account: Optional[UserAccount] = None,
                position: Optional[Position] = None, event_type: Optional[EventType] = None):
        with self._slot_lock:
            slot = self._slot + 1
            if account is not None:
                account = replace(account, slot=slot)
                rules.enforce_account_invariants(account)
            if position is not None:
                position = replace(position, slot=slot)
                rules.enforce_position_invariants(position)

            self._slot = slot
            if account is not None:
                self._accounts[account.address] = account
            if position is not None:
                address = position.address
                if address not in self._positions:
                    self._owner_positions.setdefault(position.owner, []).append(address)
                self._positions[address] = position

            if position is not None and event_type is not None:
                event = LedgerEvent(
                    position_key=position.key,
                    slot=slot,
                    block_time=self.clock.unix_time(),
                    snapshot=position,
                    event_type=event_type,
                )
                self._event_log.append(event)
                self._notify(event)

        target = position.key if position is not None else account.key
        logger.info(f"{operation} committed for {target} at slot {slot}")
        return account, position

    def _notify(self, event: LedgerEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # The write is already committed; a faulty listener cannot undo it
                logger.exception(f"Ledger listener failed on slot {event.slot}")

    @contextmanager
    def _owner_lock(self, owner: bytes) -> Iterator[None]:
        with self._owner_locks_guard:
            lock = self._owner_locks.setdefault(owner, threading.Lock())
        with lock:
            yield

    @staticmethod
    def _position_address(position_key: AccountKey) -> bytes:
        if not isinstance(position_key, AccountKey) or position_key.kind is not AccountKind.POSITION:
            raise InvalidIdentifier(f"Not a position identity: {position_key!r}")
        return position_key.address

    def _position_owner(self, position_key: AccountKey) -> bytes:
        self._position_address(position_key)
        return position_key.owner

    @staticmethod
    def _parse_side(side: Union[Side, str]) -> Side:
        if isinstance(side, Side):
            return side
        try:
            return Side(str(side).upper())
        except ValueError:
            raise ValidationError(f"Unknown side {side!r}")

    @staticmethod
    def _require_price(price: int, name: str):
        require_int(price, name)
        if price <= 0:
            raise ValidationError(f"{name} must be positive, got {price}")
