"""Recurring rq-scheduler job that drains the notification queue."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from redis import Redis
from rq_scheduler import Scheduler  # type: ignore[import-untyped]

from incidentdesk.core.config import settings
from incidentdesk.core.logging import get_logger
from incidentdesk.services import queue_worker

logger = get_logger(__name__)


def bootstrap_notification_dispatch_schedule(interval_seconds: int | None = None) -> None:
    """Register the periodic flush job, replacing any earlier registration."""
    connection = Redis.from_url(settings.rq_redis_url)
    scheduler = Scheduler(queue_name=settings.rq_queue_name, connection=connection)

    for job in scheduler.get_jobs():
        if job.id == settings.rq_dispatch_schedule_id:
            scheduler.cancel(job)

    interval = (
        settings.rq_dispatch_schedule_interval_seconds
        if interval_seconds is None
        else interval_seconds
    )
    scheduler.schedule(
        datetime.now(tz=UTC) + timedelta(seconds=5),
        func=queue_worker.run_flush_queue,
        interval=interval,
        repeat=None,
        id=settings.rq_dispatch_schedule_id,
        queue_name=settings.rq_queue_name,
    )
    logger.info(
        "notification.schedule.registered",
        extra={"schedule_id": settings.rq_dispatch_schedule_id, "interval_seconds": interval},
    )
