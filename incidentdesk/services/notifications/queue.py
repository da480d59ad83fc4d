"""Encode incident events as queued tasks and push them to Redis."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import redis

from incidentdesk.core.config import settings
from incidentdesk.core.logging import get_logger
from incidentdesk.services.queue import QueuedTask, enqueue_task
from incidentdesk.services.queue import requeue_if_failed as generic_requeue_if_failed

logger = get_logger(__name__)
TASK_TYPE = "incident_notification"


@dataclass(frozen=True)
class IncidentNotification:
    """Event emitted after a committed incident mutation."""

    event_type: str  # incident.{status,visibility,impact,notes}_changed
    organization_id: UUID
    incident_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


def _task_from_notification(notification: IncidentNotification) -> QueuedTask:
    return QueuedTask(
        task_type=TASK_TYPE,
        payload={
            "event_type": notification.event_type,
            "organization_id": str(notification.organization_id),
            "incident_id": str(notification.incident_id),
            "payload": notification.payload,
        },
        created_at=notification.created_at,
        attempts=notification.attempts,
    )


def decode_notification_task(task: QueuedTask) -> IncidentNotification:
    """Decode a QueuedTask back into an IncidentNotification."""
    if task.task_type != TASK_TYPE:
        raise ValueError(f"Unexpected task_type={task.task_type!r}; expected {TASK_TYPE!r}")

    data: dict[str, Any] = task.payload
    return IncidentNotification(
        event_type=str(data["event_type"]),
        organization_id=UUID(data["organization_id"]),
        incident_id=UUID(data["incident_id"]),
        payload=dict(data.get("payload") or {}),
        created_at=task.created_at,
        attempts=task.attempts,
    )


def enqueue_notification(notification: IncidentNotification) -> bool:
    """Push a notification onto the configured queue; never raises."""
    try:
        queued = _task_from_notification(notification)
        pushed = enqueue_task(queued, settings.rq_queue_name, redis_url=settings.rq_redis_url)
    except (redis.RedisError, TypeError, ValueError) as exc:
        pushed = False
        logger.warning(
            "notification.enqueue_failed",
            extra={
                "event_type": notification.event_type,
                "incident_id": str(notification.incident_id),
                "error": str(exc),
            },
        )
    if pushed:
        logger.info(
            "notification.enqueued",
            extra={
                "event_type": notification.event_type,
                "organization_id": str(notification.organization_id),
                "incident_id": str(notification.incident_id),
            },
        )
    return pushed


def requeue_if_failed(
    notification: IncidentNotification,
    *,
    delay_seconds: float = 0,
) -> bool:
    """Requeue a failed notification with capped retries."""
    try:
        return generic_requeue_if_failed(
            _task_from_notification(notification),
            settings.rq_queue_name,
            max_retries=settings.rq_dispatch_max_retries,
            redis_url=settings.rq_redis_url,
            delay_seconds=delay_seconds,
        )
    except redis.RedisError as exc:
        logger.warning(
            "notification.requeue_failed",
            extra={"event_type": notification.event_type, "error": str(exc)},
        )
        return False
