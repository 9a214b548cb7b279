"""
Error Taxonomy
--------------
Every failure surfaced by the ledger or the calculators derives from
PositionManagementError. Ledger-mutating failures leave state untouched.
"""


class PositionManagementError(Exception):
    """Base class for all position management failures."""
    retryable = False


class ValidationError(PositionManagementError):
    """Request rejected before any state was read or written."""
    pass


class InvalidLeverage(ValidationError):
    pass


class LeverageExceeded(ValidationError):
    """Position notional is above the cap of every tier allowing its leverage."""
    pass


class InvalidPositionSize(ValidationError):
    pass


class InvalidSymbol(ValidationError):
    pass


class InvalidIdentifier(ValidationError):
    """Malformed owner key or position identity."""
    pass


class InvalidMaintenanceMargin(ValidationError):
    pass


class NoOpRequest(ValidationError):
    """Modify request carried neither a size nor a margin delta."""
    pass


class CannotRemoveMargin(ValidationError):
    pass


class PositionNotLiquidatable(ValidationError):
    pass


class InsufficientCollateral(PositionManagementError):
    pass


class ConcurrentModificationConflict(PositionManagementError):
    """The caller acted on a stale slot; refetch and resubmit."""
    retryable = True


class PositionAlreadyClosed(PositionManagementError):
    pass


class PositionNotFound(PositionManagementError):
    pass


class AccountNotFound(PositionManagementError):
    pass


class AccountAlreadyInitialized(PositionManagementError):
    pass


class InvalidStateTransition(PositionManagementError):
    pass


class ArithmeticOverflow(PositionManagementError):
    """Amount does not fit the fixed-point representation."""
    pass


class AccountDecodeError(PositionManagementError):
    pass
