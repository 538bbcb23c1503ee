from src.core.notifications.service import LogNotifier, Notifier, send_notification

__all__ = ["LogNotifier", "Notifier", "send_notification"]
