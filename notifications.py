import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingChannel:
    """Default channel: records every event in the application log."""

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.info(f"notify: event={event} payload={payload}")

