"""Dispatch handler for queued incident notifications."""

from __future__ import annotations

from incidentdesk.core.logging import get_logger
from incidentdesk.services.notifications.queue import (
    IncidentNotification,
    decode_notification_task,
    requeue_if_failed,
)
from incidentdesk.services.queue import QueuedTask

logger = get_logger(__name__)


def _dispatch(notification: IncidentNotification) -> None:
    # Delivery channels (email, webhook) hook in here; for now the event is logged.
    logger.info(
        "notification.dispatch",
        extra={
            "event_type": notification.event_type,
            "organization_id": str(notification.organization_id),
            "incident_id": str(notification.incident_id),
            "payload_keys": sorted(notification.payload.keys()),
        },
    )


async def process_notification_task(task: QueuedTask) -> None:
    """Decode and dispatch one notification task."""
    _dispatch(decode_notification_task(task))


def requeue_notification_task(task: QueuedTask, *, delay_seconds: float = 0) -> bool:
    return requeue_if_failed(decode_notification_task(task), delay_seconds=delay_seconds)
