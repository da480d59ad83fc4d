"""Queue worker draining incident events and dispatching by task type."""

from __future__ import annotations

import argparse
import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import redis

from incidentdesk.core.config import settings
from incidentdesk.core.logging import configure_logging, get_logger
from incidentdesk.services.notifications.dispatch import (
    process_notification_task,
    requeue_notification_task,
)
from incidentdesk.services.notifications.queue import TASK_TYPE as NOTIFICATION_TASK_TYPE
from incidentdesk.services.queue import QueuedTask, dequeue_task

logger = get_logger(__name__)
_WORKER_BLOCK_TIMEOUT_SECONDS = 5.0


def _backoff_delay(attempts: int) -> float:
    return min(
        settings.rq_dispatch_retry_base_seconds * (2 ** max(0, attempts)),
        settings.rq_dispatch_retry_max_seconds,
    )


@dataclass(frozen=True)
class _TaskHandler:
    handler: Callable[[QueuedTask], Awaitable[None]]
    requeue: Callable[[QueuedTask, float], bool]
    attempts_to_delay: Callable[[int], float] = _backoff_delay


_TASK_HANDLERS: dict[str, _TaskHandler] = {
    NOTIFICATION_TASK_TYPE: _TaskHandler(
        handler=process_notification_task,
        requeue=lambda task, delay: requeue_notification_task(task, delay_seconds=delay),
    ),
}


def _compute_jitter(base_delay: float) -> float:
    return random.uniform(0, min(settings.rq_dispatch_retry_max_seconds / 10, base_delay * 0.1))


async def flush_queue(*, block_timeout: float = 0) -> int:
    """Drain the queue until empty and return the number of handled tasks."""
    processed = 0
    while True:
        try:
            task = dequeue_task(
                settings.rq_queue_name,
                redis_url=settings.rq_redis_url,
                block_timeout=block_timeout,
            )
        except (redis.RedisError, KeyError, TypeError, ValueError):
            logger.exception(
                "queue.worker.dequeue_failed",
                extra={"queue_name": settings.rq_queue_name},
            )
            break

        if task is None:
            break

        handler = _TASK_HANDLERS.get(task.task_type)
        if handler is None:
            logger.warning(
                "queue.worker.task_unhandled",
                extra={"task_type": task.task_type, "queue_name": settings.rq_queue_name},
            )
            continue

        try:
            await handler.handler(task)
        except Exception as exc:
            logger.exception(
                "queue.worker.failed",
                extra={"task_type": task.task_type, "attempt": task.attempts, "error": str(exc)},
            )
            base_delay = handler.attempts_to_delay(task.attempts)
            if not handler.requeue(task, base_delay + _compute_jitter(base_delay)):
                logger.warning(
                    "queue.worker.drop_task",
                    extra={"task_type": task.task_type, "attempt": task.attempts},
                )
        else:
            processed += 1
            logger.info(
                "queue.worker.success",
                extra={"task_type": task.task_type, "attempt": task.attempts},
            )
        await asyncio.sleep(settings.rq_dispatch_throttle_seconds)

    if processed > 0:
        logger.info("queue.worker.batch_complete", extra={"count": processed})
    return processed


def run_flush_queue() -> int:
    """Synchronous entrypoint for scheduled jobs: drain once without blocking."""
    return asyncio.run(flush_queue())


async def _run_worker_loop() -> None:
    while True:
        # Finite timeout so delayed tasks are promoted periodically.
        await flush_queue(block_timeout=_WORKER_BLOCK_TIMEOUT_SECONDS)
        await asyncio.sleep(0)


def run_worker() -> None:
    """Entrypoint for continuous queue processing."""
    configure_logging()
    logger.info(
        "queue.worker.started",
        extra={
            "queue_name": settings.rq_queue_name,
            "throttle_seconds": settings.rq_dispatch_throttle_seconds,
        },
    )
    try:
        asyncio.run(_run_worker_loop())
    finally:
        logger.info("queue.worker.stopped", extra={"queue_name": settings.rq_queue_name})


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="IncidentDesk notification queue worker.")
    parser.add_argument(
        "--bootstrap-schedule",
        action="store_true",
        help="Register the recurring rq-scheduler flush job and exit.",
    )
    args = parser.parse_args(argv)
    if args.bootstrap_schedule:
        from incidentdesk.services.notifications.scheduler import (
            bootstrap_notification_dispatch_schedule,
        )

        configure_logging()
        bootstrap_notification_dispatch_schedule()
        return
    run_worker()


if __name__ == "__main__":
    main()
