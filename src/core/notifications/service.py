"""Notification collaborator.

The core only needs ``notify(user_id, title, message)``. Delivery is
fire-and-forget: ``send_notification`` logs failures and never raises, so a
broken mail relay cannot roll back the state change that triggered it.
"""

from typing import Protocol

from src.core.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, user_id: int, title: str, message: str) -> None: ...


class LogNotifier:
    """Default notifier: records the notification as a structured log event."""

    async def notify(self, user_id: int, title: str, message: str) -> None:
        logger.info("notification_sent", user_id=user_id, title=title, message=message)


async def send_notification(notifier: Notifier, user_id: int, title: str, message: str) -> bool:
    """Deliver a notification, swallowing and logging delivery failures."""
    try:
        await notifier.notify(user_id, title, message)
    except Exception:
        logger.exception("notification_failed", user_id=user_id, title=title)
        return False
    return True
