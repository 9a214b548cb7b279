"""
Liquidation Executor
--------------------
Consumes liquidation alerts from the push feed and submits liquidation
instructions. Keeps the monitor itself read-only with respect to the ledger.
"""
import logging
from typing import Dict, List, Optional

from pms.alerts.alerter import Alerter
from pms.errors import (
    ConcurrentModificationConflict,
    PositionAlreadyClosed,
    PositionManagementError,
    PositionNotLiquidatable,
)
from pms.events import LiquidationAlert, RiskLevel
from pms.interfaces import TransactionSubmitter
from pms.ledger.submitter import LiquidatePosition
from pms.monitor.broadcaster import Subscriber, UpdateBroadcaster

logger = logging.getLogger(__name__)


class LiquidationExecutor:
    def __init__(self, submitter: TransactionSubmitter, broadcaster: UpdateBroadcaster,
                 alerter: Optional[Alerter] = None, name: str = "liquidator"):
        self.submitter = submitter
        self.alerter = alerter
        self.subscriber: Subscriber = broadcaster.subscribe(name, message_types=[LiquidationAlert])
        self._broadcaster = broadcaster

        # position address -> signature
        self.executed: Dict[bytes, str] = {}
        self.rejected: List[LiquidationAlert] = []

    def handle(self, alert: LiquidationAlert) -> Optional[str]:
        """
        Forwards the alert to operators and, at LIQUIDATION level, submits a
        liquidation at the alert's price. Returns the signature when submitted.
        """
        if self.alerter is not None:
            self.alerter.liquidation(alert)

        if alert.risk_level is not RiskLevel.LIQUIDATION:
            return None
        address = alert.position_key.address
        if address in self.executed:
            return None

        try:
            signature = self.submitter.submit(LiquidatePosition(alert.position_key, alert.current_price))
        except (PositionNotLiquidatable, PositionAlreadyClosed) as e:
            # Ledger moved on inside the staleness window
            logger.info(f"Liquidation of {alert.position_key} skipped: {e}")
            self.rejected.append(alert)
            return None
        except ConcurrentModificationConflict as e:
            logger.warning(f"Liquidation of {alert.position_key} conflicted, awaiting next alert: {e}")
            self.rejected.append(alert)
            return None
        except PositionManagementError as e:
            logger.error(f"Liquidation of {alert.position_key} failed: {e}")
            self.rejected.append(alert)
            return None

        self.executed[address] = signature
        logger.warning(f"Liquidated {alert.position_key} at {alert.current_price} (sig {signature[:16]})")
        return signature

    def process_pending(self) -> List[str]:
        """Handles everything buffered so far, synchronously."""
        signatures = []
        for alert in self.subscriber.drain():
            signature = self.handle(alert)
            if signature:
                signatures.append(signature)
        return signatures

    async def run(self):
        async for alert in self.subscriber:
            self.handle(alert)

    def close(self):
        self._broadcaster.unsubscribe(self.subscriber)
