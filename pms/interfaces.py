from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from pms.events import LedgerEvent, PriceTick


class PriceFeed(ABC):
    """
    Abstract source of live prices.
    The monitor consumes ticks; it never sources them itself.
    """

    @abstractmethod
    def stream(self) -> AsyncIterator[PriceTick]:
        """
        Yields PriceTick objects, ordered by timestamp per symbol.
        """
        pass


class LedgerEventSource(ABC):
    """
    Abstract ordered stream of committed ledger writes.
    """

    @abstractmethod
    def stream(self) -> AsyncIterator[LedgerEvent]:
        """
        Yields LedgerEvent objects in slot order for each position.
        """
        pass


class TransactionSubmitter(ABC):
    """
    Abstract transaction submission service.
    """

    @abstractmethod
    def submit(self, instruction: Any) -> str:
        """
        Submits an instruction to the ledger.
        Returns the transaction signature; raises PositionManagementError on failure.
        """
        pass
