import logging
import time

from celery import shared_task

from services.shared.pipeline import refresh_and_sync_user, refresh_daily_user
from services.shared.retry import RetryPolicy


logger = logging.getLogger("worker.tasks")

_MAX_ERROR_MESSAGE_CHARS = 500


def _truncate_error_message(value):
    """
    Truncate error messages to a safe length for storage/logging

    Args:
        value (str): Error message

    Returns:
        str truncated message
    """
    normalized = str(value or "").strip()
    if len(normalized) > _MAX_ERROR_MESSAGE_CHARS:
        return normalized[:_MAX_ERROR_MESSAGE_CHARS]
    return normalized


def _task_id(task):
    return getattr(getattr(task, "request", None), "id", None)


@shared_task(name="refresh_user", bind=True)
def refresh_user(self, user_id, github_login=None, gitlab_username=None, triggered_by=None):
    """
    Refresh one user's rollups and ranked cache entries, retrying transient failures

    Lease conflicts, rate limits, server errors and transport errors are
    retried with backoff in-process; exhaustion is reported, not raised

    Args:
        user_id (str): Internal user id
        github_login (str): Optional GitHub login
        gitlab_username (str): Optional GitLab username
        triggered_by (str): Optional origin label such as 'scheduler.refresh'

    Returns:
        dict pipeline result, or status='failed' with kind/status/error
    """
    started = time.monotonic()
    task_id = _task_id(self)

    logger.info(
        "refresh_user started",
        extra={"celery_task_id": task_id, "user_id": user_id, "triggered_by": triggered_by},
    )

    outcome = RetryPolicy().run(
        lambda: refresh_and_sync_user(user_id, github_login=github_login, gitlab_username=gitlab_username),
        label=f"refresh_user:{user_id}",
    )

    if outcome.ok:
        result = outcome.value
    else:
        result = {
            "status": "failed",
            "user_id": user_id,
            "kind": outcome.kind,
            "http_status": outcome.status,
            "error": _truncate_error_message(outcome.error),
        }

    logger.info(
        "refresh_user finished",
        extra={
            "celery_task_id": task_id,
            "user_id": user_id,
            "triggered_by": triggered_by,
            "pipeline_status": result.get("status"),
            "attempts": outcome.attempts,
            "duration_seconds": round(time.monotonic() - started, 3),
        },
    )
    return result


@shared_task(name="refresh_daily", bind=True)
def refresh_daily(self, user_id, github_login=None, gitlab_username=None, day=None, triggered_by=None):
    """
    Daily refresh of one user, each provider under its own per-day lease

    Args:
        user_id (str): Internal user id
        github_login (str): Optional GitHub login
        gitlab_username (str): Optional GitLab username
        day (str): UTC day YYYY-MM-DD used in the lease key
        triggered_by (str): Optional origin label such as 'scheduler.daily'

    Returns:
        dict with summary of the run
    """
    started = time.monotonic()
    task_id = _task_id(self)
    result = None

    logger.info(
        "refresh_daily started",
        extra={"celery_task_id": task_id, "user_id": user_id, "day": day, "triggered_by": triggered_by},
    )

    try:
        result = refresh_daily_user(user_id, github_login=github_login, gitlab_username=gitlab_username, day=day)
        return result
    except Exception as exc:
        logger.exception(
            "refresh_daily failed",
            extra={"celery_task_id": task_id, "user_id": user_id, "error": type(exc).__name__},
        )
        raise
    finally:
        logger.info(
            "refresh_daily finished",
            extra={
                "celery_task_id": task_id,
                "user_id": user_id,
                "day": day,
                "triggered_by": triggered_by,
                "pipeline_status": (result or {}).get("status") if isinstance(result, dict) else None,
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )
