"""
Telegram Notifier
-----------------
Fire-and-forget delivery of risk and reconciliation alerts to an operator
chat. Sending never blocks the caller.
"""
import logging
import os
from threading import Thread
from typing import Optional

import requests

logger = logging.getLogger(__name__)

API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotifier:
    """
    Posts operator alerts from a daemon thread over a shared HTTP session.
    """

    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None, timeout: float = 10.0):
        self.token = token or os.environ.get("TELEGRAM_TOKEN")
        self.chat_id = chat_id or os.environ.get("TELEGRAM_CHAT_ID")
        self.timeout = timeout
        self.url = API_URL.format(token=self.token) if self.token else None
        self.session = requests.Session()
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.chat_id)

    def send_message(self, text: str, silent: bool = False):
        """Queues delivery on a background thread; a no-op when not configured."""
        if not self.enabled:
            logger.debug("Telegram not configured, alert kept in log only")
            return
        Thread(target=self._dispatch, args=(text, silent), daemon=True).start()

    def _dispatch(self, text: str, silent: bool = False) -> bool:
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_notification": silent,
        }
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.failures += 1
            logger.error(f"Telegram delivery failed ({self.failures} so far): {e}")
            return False
        return True
