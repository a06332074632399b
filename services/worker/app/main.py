import copy

from celery import Celery
from kombu import Queue

from services.shared.celery_config import (
    CELERY_DEFAULT_QUEUE,
    CELERY_QUEUE_NAMES,
    CELERY_TASK_ROUTES,
)
from services.shared.config import REDIS_URL, REFRESH_LOCK_TTL_SECONDS, validate_config


def create_celery():
    """
    Create the refresh worker's Celery app, brokered by Redis

    Returns:
        Celery app
    """
    validate_config()

    app = Celery(
        "contrib-leaderboard-worker",
        broker=REDIS_URL,
        backend=REDIS_URL,
        include=["services.worker.app.tasks"],
    )
    app.conf.task_default_queue = CELERY_DEFAULT_QUEUE
    app.conf.task_queues = tuple(Queue(name) for name in CELERY_QUEUE_NAMES)
    app.conf.task_routes = copy.deepcopy(CELERY_TASK_ROUTES)

    # Refreshes hold leases and may back off for minutes; take one task at a time
    app.conf.worker_prefetch_multiplier = 1
    app.conf.task_acks_late = True
    app.conf.task_reject_on_worker_lost = True

    # Covers one refresh plus the full backoff schedule of RetryPolicy
    app.conf.task_soft_time_limit = REFRESH_LOCK_TTL_SECONDS * 4

    return app


celery_app = create_celery()


if __name__ == "__main__":
    celery_app.start()
