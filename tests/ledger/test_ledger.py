"""
Test Ledger Commands
"""
import pytest
from unittest.mock import MagicMock

from pms.errors import (
    AccountAlreadyInitialized,
    AccountNotFound,
    ArithmeticOverflow,
    CannotRemoveMargin,
    InsufficientCollateral,
    InvalidIdentifier,
    InvalidLeverage,
    InvalidMaintenanceMargin,
    InvalidPositionSize,
    InvalidSymbol,
    LeverageExceeded,
    NoOpRequest,
    PositionAlreadyClosed,
    PositionNotFound,
    PositionNotLiquidatable,
    ValidationError,
)
from pms.events import EventType
from pms.fixed_point import U64_MAX, parse_amount, parse_price, parse_ratio, parse_size
from pms.ledger.identity import AccountKey
from pms.ledger.models import PositionStatus, Side
from pms.margin import calculator

SIZE = parse_size("0.1")
ENTRY = parse_price("50000")


def open_btc_long(ledger, owner, leverage=10):
    return ledger.open_position(owner, "BTC-USD", Side.LONG, SIZE, leverage, ENTRY)


def test_initialize_user_twice_fails(ledger, owner):
    account = ledger.initialize_user(owner)
    assert account.total_collateral == 0
    assert account.slot == 1

    with pytest.raises(AccountAlreadyInitialized):
        ledger.initialize_user(owner)
    assert ledger.current_slot == 1


def test_add_collateral(ledger, owner):
    with pytest.raises(AccountNotFound):
        ledger.add_collateral(owner, parse_amount("1"))

    ledger.initialize_user(owner)
    account = ledger.add_collateral(owner, parse_amount("250.5"))
    assert account.total_collateral == 250_500_000

    with pytest.raises(ValidationError):
        ledger.add_collateral(owner, 0)


def test_malformed_owner_rejected(ledger):
    with pytest.raises(InvalidIdentifier):
        ledger.initialize_user(b"short")


def test_open_long_scenario(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)

    assert position.status == PositionStatus.OPEN
    assert position.index == 0
    assert position.margin == parse_amount("500")
    assert position.liquidation_price == parse_price("46250")
    assert position.mark_price == ENTRY

    account = ledger.get_user_account(funded_owner)
    assert account.locked_collateral == parse_amount("500")
    assert account.position_count == 1
    assert account.position_count_total == 1
    assert account.next_position_index == 1
    assert account.slot == position.slot


def test_open_assigns_increasing_indices(ledger, funded_owner):
    first = open_btc_long(ledger, funded_owner)
    second = ledger.open_position(funded_owner, "ETH-USD", "short", parse_size("1"), 5, parse_price("3000"))

    assert (first.index, second.index) == (0, 1)
    assert first.address != second.address
    assert [p.index for p in ledger.list_positions(funded_owner)] == [0, 1]

    ledger.close_position(first.key, ENTRY)
    third = open_btc_long(ledger, funded_owner)
    # Closed indices are never reused
    assert third.index == 2
    assert ledger.get_user_account(funded_owner).position_count == 2


def test_open_insufficient_collateral_leaves_state(ledger, funded_owner):
    before = ledger.get_user_account(funded_owner)
    slot = ledger.current_slot

    with pytest.raises(InsufficientCollateral):
        ledger.open_position(funded_owner, "BTC-USD", Side.LONG, parse_size("10"), 1, ENTRY)

    assert ledger.get_user_account(funded_owner) == before
    assert ledger.current_slot == slot
    assert ledger.list_positions(funded_owner) == []


def test_overflow_leaves_state(ledger, funded_owner):
    before = ledger.get_user_account(funded_owner)
    slot = ledger.current_slot

    with pytest.raises(ArithmeticOverflow):
        ledger.add_collateral(funded_owner, U64_MAX)
    with pytest.raises(ArithmeticOverflow):
        ledger.open_position(funded_owner, "BTC-USD", Side.LONG, U64_MAX, 10, ENTRY)

    assert ledger.get_user_account(funded_owner) == before
    assert ledger.current_slot == slot
    assert ledger.list_positions(funded_owner) == []
    assert ledger.events_since(0) == []


def test_open_enforces_leverage_tiers(ledger, funded_owner):
    slot = ledger.current_slot
    # 30x is capped at 100k notional, 60x at 50k
    with pytest.raises(LeverageExceeded):
        ledger.open_position(funded_owner, "BTC-USD", Side.LONG, parse_size("3"), 30, ENTRY)
    with pytest.raises(LeverageExceeded):
        ledger.open_position(funded_owner, "BTC-USD", Side.LONG, parse_size("1.2"), 60, ENTRY,
                             parse_ratio("0.005"))
    assert ledger.current_slot == slot

    at_cap = ledger.open_position(funded_owner, "BTC-USD", Side.LONG, parse_size("2"), 30, ENTRY)
    assert calculator.notional(at_cap.size, at_cap.entry_price) == parse_amount("100000")
    # Up to 20x has no notional cap
    ledger.open_position(funded_owner, "BTC-USD", Side.LONG, parse_size("2.5"), 20, ENTRY)


@pytest.mark.parametrize("leverage", [0, 101, -5])
def test_open_rejects_bad_leverage(ledger, funded_owner, leverage):
    with pytest.raises(InvalidLeverage):
        open_btc_long(ledger, funded_owner, leverage=leverage)


def test_open_rejects_bad_inputs(ledger, funded_owner):
    with pytest.raises(InvalidPositionSize):
        ledger.open_position(funded_owner, "BTC-USD", Side.LONG, 0, 10, ENTRY)
    with pytest.raises(InvalidSymbol):
        ledger.open_position(funded_owner, "", Side.LONG, SIZE, 10, ENTRY)
    with pytest.raises(InvalidSymbol):
        ledger.open_position(funded_owner, "X" * 33, Side.LONG, SIZE, 10, ENTRY)
    with pytest.raises(ValidationError):
        ledger.open_position(funded_owner, "BTC-USD", "sideways", SIZE, 10, ENTRY)
    with pytest.raises(ValidationError):
        ledger.open_position(funded_owner, "BTC-USD", Side.LONG, SIZE, 10, 0)


def test_open_rejects_maintenance_margin_at_or_above_inverse_leverage(ledger, funded_owner):
    # 0.025 * 50 > 1
    with pytest.raises(InvalidMaintenanceMargin):
        ledger.open_position(funded_owner, "ETH-USD", Side.SHORT, SIZE, 50, parse_price("3000"),
                             parse_ratio("0.025"))
    with pytest.raises(InvalidMaintenanceMargin):
        ledger.open_position(funded_owner, "ETH-USD", Side.SHORT, SIZE, 10, parse_price("3000"), 0)


def test_close_with_profit(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)

    closed = ledger.close_position(position.key, parse_price("55000"))

    assert closed.status == PositionStatus.CLOSED
    assert closed.realized_pnl == parse_amount("500")
    assert closed.unrealized_pnl == 0
    assert closed.mark_price == parse_price("55000")

    account = ledger.get_user_account(funded_owner)
    assert account.total_collateral == parse_amount("10500")
    assert account.total_pnl == parse_amount("500")
    assert account.locked_collateral == 0
    assert account.position_count == 0
    assert account.position_count_total == 1


def test_close_at_entry_round_trip(ledger, funded_owner):
    before = ledger.get_user_account(funded_owner)
    position = ledger.open_position(funded_owner, "ETH-USD", Side.SHORT, parse_size("2.5"), 20,
                                    parse_price("3000"))
    closed = ledger.close_position(position.key, parse_price("3000"))

    after = ledger.get_user_account(funded_owner)
    assert closed.realized_pnl == 0
    assert after.total_collateral == before.total_collateral
    assert after.locked_collateral == before.locked_collateral


def test_reclose_fails(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)
    ledger.close_position(position.key, ENTRY)
    slot = ledger.current_slot

    with pytest.raises(PositionAlreadyClosed):
        ledger.close_position(position.key, ENTRY)
    with pytest.raises(PositionAlreadyClosed):
        ledger.modify_position(position.key, new_size=SIZE * 2)
    assert ledger.current_slot == slot


def test_loss_is_capped_at_free_collateral(ledger, owner):
    ledger.initialize_user(owner)
    ledger.add_collateral(owner, parse_amount("1000"))
    first = open_btc_long(ledger, owner)
    open_btc_long(ledger, owner)

    closed = ledger.close_position(first.key, parse_price("1"))

    account = ledger.get_user_account(owner)
    assert closed.realized_pnl == -parse_amount("500")
    assert account.total_collateral == parse_amount("500")
    assert account.locked_collateral == parse_amount("500")
    assert account.locked_collateral <= account.total_collateral


def test_modify_requires_a_change(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)
    with pytest.raises(NoOpRequest):
        ledger.modify_position(position.key)
    with pytest.raises(NoOpRequest):
        ledger.modify_position(position.key, margin_delta=0)


def test_modify_size_reprices_margin(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)

    bigger = ledger.modify_position(position.key, new_size=parse_size("0.2"))
    assert bigger.margin == parse_amount("1000")
    assert bigger.liquidation_price == parse_price("46250")
    assert ledger.get_user_account(funded_owner).locked_collateral == parse_amount("1000")

    smaller = ledger.modify_position(position.key, new_size=parse_size("0.05"))
    assert smaller.margin == parse_amount("250")
    assert smaller.status == PositionStatus.OPEN
    assert ledger.get_user_account(funded_owner).locked_collateral == parse_amount("250")


def test_modify_size_beyond_collateral_fails(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)
    with pytest.raises(InsufficientCollateral):
        ledger.modify_position(position.key, new_size=parse_size("5"))
    assert ledger.get_position(position.key) == position


def test_modify_size_enforces_leverage_tier(ledger, funded_owner):
    position = ledger.open_position(funded_owner, "BTC-USD", Side.LONG, parse_size("1"), 30, ENTRY)
    slot = ledger.current_slot

    with pytest.raises(LeverageExceeded):
        ledger.modify_position(position.key, new_size=parse_size("2.5"))
    assert ledger.get_position(position.key) == position
    assert ledger.current_slot == slot

    resized = ledger.modify_position(position.key, new_size=parse_size("2"))
    assert resized.size == parse_size("2")


def test_margin_delta_moves_liquidation_price(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)

    topped_up = ledger.modify_position(position.key, margin_delta=parse_amount("100"))

    assert topped_up.margin == parse_amount("600")
    assert topped_up.leverage == 10
    assert topped_up.liquidation_price == parse_price("45250")
    assert ledger.get_user_account(funded_owner).locked_collateral == parse_amount("600")

    reduced = ledger.modify_position(position.key, margin_delta=-parse_amount("100"))
    assert reduced.margin == parse_amount("500")
    assert reduced.liquidation_price == parse_price("46250")


def test_margin_removal_below_requirement_fails(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)
    with pytest.raises(CannotRemoveMargin):
        ledger.modify_position(position.key, margin_delta=-1)
    with pytest.raises(InsufficientCollateral):
        ledger.modify_position(position.key, margin_delta=parse_amount("20000"))


def test_unknown_position_and_bad_identity(ledger, funded_owner):
    with pytest.raises(PositionNotFound):
        ledger.get_position(AccountKey.position(funded_owner, 9))
    with pytest.raises(InvalidIdentifier):
        ledger.get_position(AccountKey.user(funded_owner))


def test_funding_is_realized_on_close(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)

    funded = ledger.accrue_funding(position.key, -parse_amount("50"))
    assert funded.funding_accrued == -parse_amount("50")

    with pytest.raises(NoOpRequest):
        ledger.accrue_funding(position.key, 0)

    closed = ledger.close_position(position.key, ENTRY)
    assert closed.realized_pnl == -parse_amount("50")
    assert ledger.get_user_account(funded_owner).total_collateral == parse_amount("9950")


def test_liquidation_requires_maintenance_breach(ledger, funded_owner):
    position = open_btc_long(ledger, funded_owner)

    with pytest.raises(PositionNotLiquidatable):
        ledger.liquidate_position(position.key, ENTRY)

    liquidated = ledger.liquidate_position(position.key, parse_price("46000"))

    assert liquidated.status == PositionStatus.CLOSED
    assert liquidated.realized_pnl == -parse_amount("400")
    account = ledger.get_user_account(funded_owner)
    assert account.total_collateral == parse_amount("9600")
    assert account.locked_collateral == 0
    assert ledger.events_since(0)[-1].event_type == EventType.LIQUIDATED
    assert ledger.get_statistics().liquidated_positions == 1


def test_listeners_receive_events_in_slot_order(ledger, funded_owner):
    listener = MagicMock()
    ledger.subscribe(listener)

    position = open_btc_long(ledger, funded_owner)
    ledger.modify_position(position.key, new_size=parse_size("0.2"))
    ledger.close_position(position.key, ENTRY)

    events = [c.args[0] for c in listener.call_args_list]
    assert [e.event_type for e in events] == [EventType.OPENED, EventType.MODIFIED, EventType.CLOSED]
    assert [e.slot for e in events] == sorted(e.slot for e in events)
    assert events[0].snapshot.slot == events[0].slot
    assert events[-1].snapshot.is_closed

    ledger.unsubscribe(listener)
    open_btc_long(ledger, funded_owner)
    assert listener.call_count == 3


def test_faulty_listener_does_not_roll_back(ledger, funded_owner):
    ledger.subscribe(MagicMock(side_effect=RuntimeError("boom")))
    position = open_btc_long(ledger, funded_owner)
    assert ledger.get_position(position.key) == position


def test_events_since(ledger, funded_owner):
    first = open_btc_long(ledger, funded_owner)
    second = open_btc_long(ledger, funded_owner)

    assert [e.slot for e in ledger.events_since(0)] == [first.slot, second.slot]
    assert [e.slot for e in ledger.events_since(first.slot)] == [second.slot]


def test_statistics_and_invariants(ledger, funded_owner, other_owner):
    ledger.initialize_user(other_owner)
    ledger.add_collateral(other_owner, parse_amount("100"))
    a = open_btc_long(ledger, funded_owner)
    open_btc_long(ledger, funded_owner)
    ledger.close_position(a.key, parse_price("49000"))

    stats = ledger.get_statistics()
    assert stats.accounts == 2
    assert stats.total_positions == 2
    assert stats.open_positions == 1
    assert stats.closed_positions == 1
    assert stats.total_collateral == parse_amount("10100") - parse_amount("100")
    assert stats.locked_collateral == parse_amount("500")
    assert stats.last_slot == ledger.current_slot

    for owner in (funded_owner, other_owner):
        account = ledger.get_user_account(owner)
        assert account.locked_collateral <= account.total_collateral
        assert account.position_count <= account.position_count_total
    assert len(ledger.all_open_positions()) == 1


def test_required_margin_matches_calculator(ledger, funded_owner):
    position = ledger.open_position(funded_owner, "SOL-USD", Side.LONG, parse_size("3.33333333"), 7,
                                    parse_price("101.123457"))
    assert position.margin == calculator.required_margin(position.size, position.entry_price, 7)
