"""
Celery routing configuration shared across scheduler and workers
"""

CELERY_DEFAULT_QUEUE = "default"

CELERY_QUEUE_NAMES = (
    "default",
    "daily",
)

CELERY_TASK_ROUTES = {
    "refresh_user": {"queue": "default"},
    "refresh_daily": {"queue": "daily"},
}
