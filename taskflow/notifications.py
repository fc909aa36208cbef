"""Default Notifier: writes completion, failure and SLA alerts to the log."""

import logging

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that logs every message. Replace with an email or chat sink in production."""

    async def notify(self, target: str, subject: str, body: str) -> None:
        logger.info("notify -> %s: %s\n%s", target, subject, body)
