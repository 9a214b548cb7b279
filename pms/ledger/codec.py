"""
Account Codec
-------------
Binary layout of ledger records, so a raw blob can be recognised as a
UserAccount or a Position from its first 8 bytes alone.

All integers are little-endian. Strings are a u32 byte length followed by
UTF-8 bytes. Enums are a single ordinal byte.
"""
import struct
from typing import Union

from pms.errors import AccountDecodeError, ArithmeticOverflow
from pms.ledger.identity import AccountKind, OWNER_KEY_LENGTH, account_discriminator
from pms.ledger.models import Position, PositionStatus, Side, UserAccount

USER_ACCOUNT_DISCRIMINATOR = account_discriminator(AccountKind.USER.value)
POSITION_DISCRIMINATOR = account_discriminator(AccountKind.POSITION.value)

# total_collateral, locked_collateral, total_pnl, position_count, position_count_total, slot
_USER_BODY = struct.Struct("<QQqIIQ")
# side, size, entry, mark, margin, leverage, upnl, rpnl, funding, liq, mmr,
# opened_at, last_update, status, index, slot
_POSITION_BODY = struct.Struct("<BQQQQHqqqQQqqBIQ")

_SIDES = list(Side)
_STATUSES = list(PositionStatus)


def encode_user_account(account: UserAccount) -> bytes:
    try:
        body = _USER_BODY.pack(
            account.total_collateral,
            account.locked_collateral,
            account.total_pnl,
            account.position_count,
            account.position_count_total,
            account.slot,
        )
    except struct.error as e:
        raise ArithmeticOverflow(f"UserAccount field out of range: {e}")
    return USER_ACCOUNT_DISCRIMINATOR + account.owner + body


def decode_user_account(blob: bytes) -> UserAccount:
    _expect_discriminator(blob, USER_ACCOUNT_DISCRIMINATOR, AccountKind.USER)
    owner, offset = _read_owner(blob, 8)
    try:
        fields = _USER_BODY.unpack_from(blob, offset)
    except struct.error as e:
        raise AccountDecodeError(f"Truncated UserAccount: {e}")
    total, locked, pnl, count, count_total, slot = fields
    return UserAccount(
        owner=owner,
        total_collateral=total,
        locked_collateral=locked,
        total_pnl=pnl,
        position_count=count,
        position_count_total=count_total,
        slot=slot,
    )


def encode_position(position: Position) -> bytes:
    symbol = position.symbol.encode("utf-8")
    try:
        body = _POSITION_BODY.pack(
            _SIDES.index(position.side),
            position.size,
            position.entry_price,
            position.mark_price,
            position.margin,
            position.leverage,
            position.unrealized_pnl,
            position.realized_pnl,
            position.funding_accrued,
            position.liquidation_price,
            position.maintenance_margin_ratio,
            position.opened_at,
            position.last_update,
            _STATUSES.index(position.status),
            position.index,
            position.slot,
        )
    except struct.error as e:
        raise ArithmeticOverflow(f"Position field out of range: {e}")
    return POSITION_DISCRIMINATOR + position.owner + struct.pack("<I", len(symbol)) + symbol + body


def decode_position(blob: bytes) -> Position:
    _expect_discriminator(blob, POSITION_DISCRIMINATOR, AccountKind.POSITION)
    owner, offset = _read_owner(blob, 8)
    try:
        (length,) = struct.unpack_from("<I", blob, offset)
        offset += 4
        symbol = blob[offset:offset + length].decode("utf-8")
        if len(symbol.encode("utf-8")) != length:
            raise AccountDecodeError("Truncated Position symbol")
        offset += length
        fields = _POSITION_BODY.unpack_from(blob, offset)
    except (struct.error, UnicodeDecodeError) as e:
        raise AccountDecodeError(f"Malformed Position: {e}")

    (side, size, entry, mark, margin, leverage, upnl, rpnl, funding, liq, mmr,
     opened_at, last_update, status, index, slot) = fields
    try:
        side, status = _SIDES[side], _STATUSES[status]
    except IndexError:
        raise AccountDecodeError(f"Unknown side/status ordinal {side}/{status}")
    return Position(
        owner=owner,
        index=index,
        symbol=symbol,
        side=side,
        size=size,
        entry_price=entry,
        mark_price=mark,
        margin=margin,
        leverage=leverage,
        liquidation_price=liq,
        maintenance_margin_ratio=mmr,
        unrealized_pnl=upnl,
        realized_pnl=rpnl,
        funding_accrued=funding,
        status=status,
        opened_at=opened_at,
        last_update=last_update,
        slot=slot,
    )


def identify_account(blob: bytes) -> AccountKind:
    prefix = bytes(blob[:8])
    if prefix == USER_ACCOUNT_DISCRIMINATOR:
        return AccountKind.USER
    if prefix == POSITION_DISCRIMINATOR:
        return AccountKind.POSITION
    raise AccountDecodeError(f"Unknown account discriminator {prefix.hex()}")


def decode_account(blob: bytes) -> Union[UserAccount, Position]:
    if identify_account(blob) is AccountKind.USER:
        return decode_user_account(blob)
    return decode_position(blob)


def _expect_discriminator(blob: bytes, expected: bytes, kind: AccountKind):
    if bytes(blob[:8]) != expected:
        raise AccountDecodeError(f"Blob is not a {kind.value} record")


def _read_owner(blob: bytes, offset: int):
    owner = bytes(blob[offset:offset + OWNER_KEY_LENGTH])
    if len(owner) != OWNER_KEY_LENGTH:
        raise AccountDecodeError("Truncated owner key")
    return owner, offset + OWNER_KEY_LENGTH
