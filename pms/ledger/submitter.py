"""
Ledger Submitter
----------------
Instruction contracts and an in-process TransactionSubmitter that applies
them to a Ledger.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from pms.errors import PositionManagementError, ValidationError
from pms.interfaces import TransactionSubmitter
from pms.ledger.identity import AccountKey
from pms.ledger.ledger import Ledger
from pms.ledger.models import Side

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitializeUser:
    owner: bytes


@dataclass(frozen=True)
class AddCollateral:
    owner: bytes
    amount: int


@dataclass(frozen=True)
class OpenPosition:
    owner: bytes
    symbol: str
    side: Side
    size: int
    leverage: int
    entry_price: int
    maintenance_margin_ratio: Optional[int] = None


@dataclass(frozen=True)
class ModifyPosition:
    position_key: AccountKey
    new_size: Optional[int] = None
    margin_delta: Optional[int] = None
    expected_slot: Optional[int] = None


@dataclass(frozen=True)
class ClosePosition:
    position_key: AccountKey
    final_price: int
    expected_slot: Optional[int] = None


@dataclass(frozen=True)
class LiquidatePosition:
    position_key: AccountKey
    mark_price: int


@dataclass(frozen=True)
class AccrueFunding:
    position_key: AccountKey
    amount: int


class LocalLedgerSubmitter(TransactionSubmitter):
    """
    Applies instructions directly to an in-process ledger.
    The signature is derived from the committing slot and the instruction.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self.history: List[Tuple[str, object]] = []

    def submit(self, instruction) -> str:
        try:
            record = self._apply(instruction)
        except PositionManagementError as e:
            logger.warning(f"{type(instruction).__name__} rejected: {type(e).__name__}: {e}")
            raise

        signature = hashlib.sha256(
            f"{record.slot}:{instruction!r}".encode("utf-8")
        ).hexdigest()
        self.history.append((signature, instruction))
        return signature

    def _apply(self, instruction):
        ledger = self.ledger
        if isinstance(instruction, InitializeUser):
            return ledger.initialize_user(instruction.owner)
        if isinstance(instruction, AddCollateral):
            return ledger.add_collateral(instruction.owner, instruction.amount)
        if isinstance(instruction, OpenPosition):
            return ledger.open_position(
                instruction.owner, instruction.symbol, instruction.side, instruction.size,
                instruction.leverage, instruction.entry_price, instruction.maintenance_margin_ratio,
            )
        if isinstance(instruction, ModifyPosition):
            return ledger.modify_position(
                instruction.position_key, instruction.new_size, instruction.margin_delta,
                expected_slot=instruction.expected_slot,
            )
        if isinstance(instruction, ClosePosition):
            return ledger.close_position(instruction.position_key, instruction.final_price,
                                         expected_slot=instruction.expected_slot)
        if isinstance(instruction, LiquidatePosition):
            return ledger.liquidate_position(instruction.position_key, instruction.mark_price)
        if isinstance(instruction, AccrueFunding):
            return ledger.accrue_funding(instruction.position_key, instruction.amount)
        raise ValidationError(f"Unsupported instruction {instruction!r}")
