"""
Account Identity
----------------
Deterministic, content-addressed identities for ledger records.

    user address     = sha256(b"user" || owner)
    position address = sha256(b"position" || owner || u32_le(index))
    discriminator    = sha256(b"account:<TypeName>")[:8]

Identities are never reused: a position index is only ever handed out once
per owner.
"""
import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pms.errors import InvalidIdentifier
from pms.fixed_point import U32_MAX

OWNER_KEY_LENGTH = 32
USER_SEED = b"user"
POSITION_SEED = b"position"


class AccountKind(Enum):
    USER = "UserAccount"
    POSITION = "Position"


def validate_owner(owner) -> bytes:
    if not isinstance(owner, (bytes, bytearray)) or len(owner) != OWNER_KEY_LENGTH:
        raise InvalidIdentifier(f"Owner key must be {OWNER_KEY_LENGTH} bytes, got {owner!r}")
    return bytes(owner)


def owner_from_hex(value: str) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise InvalidIdentifier(f"Owner key is not hex: {value!r}")
    return validate_owner(raw)


def derive_user_address(owner: bytes) -> bytes:
    return hashlib.sha256(USER_SEED + validate_owner(owner)).digest()


def derive_position_address(owner: bytes, index: int) -> bytes:
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index <= U32_MAX:
        raise InvalidIdentifier(f"Position index must be a u32, got {index!r}")
    return hashlib.sha256(
        POSITION_SEED + validate_owner(owner) + index.to_bytes(4, "little")
    ).digest()


def account_discriminator(type_name: str) -> bytes:
    return hashlib.sha256(f"account:{type_name}".encode("utf-8")).digest()[:8]


@dataclass(frozen=True)
class AccountKey:
    """Typed storage key: kind tag + owner (+ index for positions)."""
    kind: AccountKind
    owner: bytes
    index: Optional[int] = None

    @classmethod
    def user(cls, owner: bytes) -> "AccountKey":
        return cls(AccountKind.USER, validate_owner(owner))

    @classmethod
    def position(cls, owner: bytes, index: int) -> "AccountKey":
        derive_position_address(owner, index)  # validates both parts
        return cls(AccountKind.POSITION, bytes(owner), index)

    @property
    def address(self) -> bytes:
        if self.kind is AccountKind.USER:
            return derive_user_address(self.owner)
        return derive_position_address(self.owner, self.index)

    @property
    def hex(self) -> str:
        return self.address.hex()

    def __str__(self) -> str:
        if self.kind is AccountKind.USER:
            return f"user:{self.owner.hex()[:8]}"
        return f"position:{self.owner.hex()[:8]}:{self.index}"
