"""Alert notifications."""

from ladder_mm.notifications.slack import SlackNotifier, format_message, get_notifier

__all__ = [
    "SlackNotifier",
    "format_message",
    "get_notifier",
]
