"""
Operator notifications.

Messages go to a single Telegram chat as ``"<host> - <SEVERITY>: <message>"``.
Delivery is best effort: a bounded number of attempts with exponential
backoff, after which the failure is logged and dropped.
"""

import time
import logging
from enum import Enum

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org/bot{token}/sendMessage'

# Telegram rejects longer messages
MAX_MESSAGE_LENGTH = 4096


class Severity(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'


LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class NotificationDeliveryError(Exception):
    """Raised by a transport when a single delivery attempt fails."""
    pass


class Notifier:
    """
    Base notifier: formatting, local logging and retries.

    Subclasses implement send() for one delivery attempt.
    """

    def __init__(self, hostname: str, max_attempts: int = 3, backoff: float = 2.0):
        self.hostname = hostname
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff

    def format_message(self, severity: Severity, message: str) -> str:
        text = f"{self.hostname} - {severity.value.upper()}: {message}"
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH - 3] + '...'
        return text

    def notify(self, severity: Severity, message: str) -> bool:
        """
        Deliver a notification, never raising on delivery failure.

        Returns:
            True if the message was delivered
        """
        text = self.format_message(severity, message)
        logger.log(LOG_LEVELS[severity], f"Notification: {text}")

        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.send(text)
                return True
            except NotificationDeliveryError as e:
                logger.warning(f"Notification attempt {attempt}/{self.max_attempts} failed: {e}")
            except Exception as e:
                logger.warning(f"Notification attempt {attempt}/{self.max_attempts} failed unexpectedly: {e}")

            if attempt < self.max_attempts:
                time.sleep(delay)
                delay *= 2

        logger.error(f"Giving up on notification after {self.max_attempts} attempts")
        return False

    def send(self, text: str):
        raise NotImplementedError


class TelegramNotifier(Notifier):
    """Posts notifications to a Telegram chat through the Bot API."""

    def __init__(self, bot_token: str, chat_id: str, hostname: str,
                 max_attempts: int = 3, backoff: float = 2.0, timeout: int = 10):
        super().__init__(hostname, max_attempts=max_attempts, backoff=backoff)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    def send(self, text: str):
        url = TELEGRAM_API_URL.format(token=self.bot_token)
        try:
            response = requests.post(
                url,
                data={'chat_id': self.chat_id, 'text': text},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            # The exception text contains the URL, and with it the bot token
            raise NotificationDeliveryError(str(e).replace(self.bot_token, '***'))


def create_notifier(settings: dict) -> TelegramNotifier:
    """Build the notifier from validated settings."""
    return TelegramNotifier(
        bot_token=settings['BOT_TOKEN'],
        chat_id=settings['GROUP_ID'],
        hostname=settings['HOSTNAME'],
        max_attempts=settings.get('NOTIFY_ATTEMPTS', 3),
        backoff=settings.get('NOTIFY_BACKOFF', 2.0),
    )
