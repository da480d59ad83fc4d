"""Incident notification queueing and dispatch."""

from incidentdesk.services.notifications.queue import (
    TASK_TYPE,
    IncidentNotification,
    decode_notification_task,
    enqueue_notification,
)

__all__ = [
    "TASK_TYPE",
    "IncidentNotification",
    "decode_notification_task",
    "enqueue_notification",
]
