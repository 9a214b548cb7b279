"""
Alerter - Operator Alerting
---------------------------
Routes liquidation and reconciliation alerts to the log and, when
configured, to Telegram.
"""
import logging
from typing import Optional

from pms.alerts.telegram_notifier import TelegramNotifier
from pms.events import LiquidationAlert, RiskLevel
from pms.fixed_point import PRICE_DECIMALS, RATIO_DECIMALS, format_fixed


class Alerter:
    """
    Central dispatcher for operator alerts.
    """

    def __init__(self, telegram: Optional[TelegramNotifier] = None):
        self.logger = logging.getLogger("Alerter")
        self.telegram = telegram or TelegramNotifier()

    def info(self, message: str):
        self.logger.info(message)
        self.telegram.send_message(f"ℹ️ *INFO*: {message}", silent=True)

    def warning(self, message: str):
        self.logger.warning(message)
        self.telegram.send_message(f"⚠️ *WARNING*: {message}")

    def critical(self, message: str):
        self.logger.error(message)
        self.telegram.send_message(f"🔴 *CRITICAL*: {message}")

    def liquidation(self, alert: LiquidationAlert):
        message = (
            f"{alert.risk_level.value} {alert.symbol} {alert.side.value} {alert.position_key} "
            f"mark={format_fixed(alert.current_price, PRICE_DECIMALS)} "
            f"liq={format_fixed(alert.liquidation_price, PRICE_DECIMALS)} "
            f"ratio={format_fixed(alert.margin_ratio, RATIO_DECIMALS)}"
        )
        if alert.risk_level is RiskLevel.LIQUIDATION:
            self.critical(message)
        else:
            self.warning(message)
