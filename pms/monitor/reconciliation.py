"""
Reconciliation Engine
---------------------
Compares the monitor's risk view with authoritative ledger snapshots to
detect drift. SLOT_MISMATCH is expected inside the staleness window;
anything persisting across runs points at a lost event.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from pms.alerts.alerter import Alerter
from pms.ledger.models import Position
from pms.monitor.risk_monitor import RiskMonitor

logger = logging.getLogger(__name__)

MISSING_IN_MONITOR = "MISSING_IN_MONITOR"
ORPHANED_MONITOR_POSITION = "ORPHANED_MONITOR_POSITION"
SLOT_MISMATCH = "SLOT_MISMATCH"


@dataclass
class ReconciliationAlert:
    position: str
    symbol: str
    issue: str
    monitor_value: Any
    ledger_value: Any
    timestamp: float


class ReconciliationEngine:
    def __init__(self, monitor: RiskMonitor, alerter: Optional[Alerter] = None):
        self.monitor = monitor
        self.alerter = alerter

    def reconcile(self, ledger_positions: Iterable[Position]) -> List[ReconciliationAlert]:
        """
        Compare monitored positions against ledger snapshots.

        Args:
            ledger_positions: every position the ledger currently holds open
                              (e.g. Ledger.all_open_positions()). Closed
                              snapshots are ignored.
        """
        alerts = []
        now = time.time()

        ledger_map = {p.address: p for p in ledger_positions if p.is_open}

        for address, snapshot in ledger_map.items():
            view = self.monitor.get_position(snapshot.key)
            if view is None:
                alerts.append(ReconciliationAlert(
                    position=str(snapshot.key),
                    symbol=snapshot.symbol,
                    issue=MISSING_IN_MONITOR,
                    monitor_value=None,
                    ledger_value=snapshot.slot,
                    timestamp=now,
                ))
            elif view.slot != snapshot.slot:
                alerts.append(ReconciliationAlert(
                    position=str(snapshot.key),
                    symbol=snapshot.symbol,
                    issue=SLOT_MISMATCH,
                    monitor_value=view.slot,
                    ledger_value=snapshot.slot,
                    timestamp=now,
                ))

        # Positions the monitor still tracks that the ledger no longer holds open
        for symbol in self.monitor.monitored_symbols():
            for view in self.monitor.get_positions_by_symbol(symbol):
                if view.position.address not in ledger_map:
                    alerts.append(ReconciliationAlert(
                        position=str(view.position.key),
                        symbol=symbol,
                        issue=ORPHANED_MONITOR_POSITION,
                        monitor_value=view.slot,
                        ledger_value=None,
                        timestamp=now,
                    ))

        for alert in alerts:
            message = f"Reconciliation {alert.issue} for {alert.position} ({alert.symbol}): " \
                      f"monitor={alert.monitor_value} ledger={alert.ledger_value}"
            if self.alerter is not None:
                self.alerter.warning(message)
            else:
                logger.warning(message)
        return alerts
