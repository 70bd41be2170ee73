"""Owner notifications for execution outcomes."""

from dcaspine.notifications.notifier import (
    EmailEndpointNotifier,
    EventKind,
    ExecutionEvent,
    LogNotifier,
    Notifier,
)

__all__ = [
    "EmailEndpointNotifier",
    "EventKind",
    "ExecutionEvent",
    "LogNotifier",
    "Notifier",
]
