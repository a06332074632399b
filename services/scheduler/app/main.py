import argparse
import copy
import datetime
import logging
import os
import time
from contextlib import contextmanager

from celery import Celery
from sqlalchemy import text

from services.shared import backfill
from services.shared.celery_config import CELERY_DEFAULT_QUEUE, CELERY_TASK_ROUTES
from services.shared.config import (
    API_AUTH_TOKEN,
    BACKFILL_BATCH_SIZE,
    BACKFILL_CONCURRENCY,
    BACKFILL_DAYS,
    BACKFILL_JITTER_MAX_MS,
    BACKFILL_JITTER_MIN_MS,
    BACKFILL_MAX_USERS,
    BACKFILL_ORIGIN,
    REDIS_URL,
    validate_config,
)
from services.shared.database import ENGINE
from services.shared.leaderboard_cache import KnownUserIndex
from services.shared.user_meta import read_user_handles


logger = logging.getLogger("scheduler")

DEFAULT_SCHEDULER_DAILY_LOCK_ID = 0x6C62646101  # 0x6C626461 is "lbda" in ASCII
DEFAULT_SCHEDULER_BACKFILL_LOCK_ID = 0x6C62646102
DEFAULT_REFRESH_MAX_USERS = 50
DEFAULT_ENQUEUE_BATCH_SIZE = 200
DEFAULT_ENQUEUE_SLEEP_SECONDS = 0.2
DEFAULT_MAX_ENQUEUED_JOBS = 10_000


def _env_int(key, default):
    raw = os.getenv(key)
    if raw is None or str(raw).strip() == "":
        return default
    return int(str(raw).strip())


def _env_float(key, default):
    raw = os.getenv(key)
    if raw is None or str(raw).strip() == "":
        return default
    return float(str(raw).strip())


def _utc_date_string():
    return str(datetime.datetime.now(datetime.timezone.utc).date())


def _create_celery_client():
    app = Celery(
        "contrib-leaderboard-scheduler",
        broker=REDIS_URL,
    )
    app.conf.task_default_queue = CELERY_DEFAULT_QUEUE
    app.conf.task_routes = copy.deepcopy(CELERY_TASK_ROUTES)
    return app


@contextmanager
def _scheduler_run_lock(lock_id, mode_label):
    """
    Acquire a global scheduler lock for the duration of a run

    Uses PostgreSQL advisory locks when available. For non-Postgres dialects
    (e.g., SQLite in certain test contexts), locking is skipped

    Args:
        lock_id (int): Advisory lock ID
        mode_label (str): Mode label for logging ('daily' or 'backfill')

    Yields:
        bool whether the lock is held (or skipped and treated as held)
    """
    if ENGINE.dialect.name != "postgresql":
        logger.warning("Scheduler lock skipped (non-Postgres dialect)", extra={"mode": mode_label})
        yield True
        return

    connection = ENGINE.connect()
    acquired = False
    body_exception = None
    try:
        acquired = bool(
            connection.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"),
                {"lock_id": int(lock_id)},
            ).scalar()
        )
        if not acquired:
            yield False
            return

        yield True
    except Exception as exc:
        body_exception = exc
        raise
    finally:
        try:
            if acquired:
                connection.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": int(lock_id)})
        except Exception:
            logger.exception(
                "Failed to release scheduler advisory lock",
                extra={"lock_id": lock_id, "mode": mode_label},
            )
            if body_exception is None:
                raise
        finally:
            connection.close()


def _enqueue_refreshes(celery_app, task_name, handles, extra_kwargs):
    """
    Send one task per user that has at least one provider handle

    Returns:
        (enqueued, skipped, failures)
    """
    enqueued = 0
    skipped = 0
    failures = 0

    for item in handles:
        if not item.has_handle:
            skipped += 1
            continue

        kwargs = {
            "github_login": item.github_login,
            "gitlab_username": item.gitlab_username,
            **extra_kwargs,
        }
        try:
            celery_app.send_task(task_name, args=[item.user_id], kwargs=kwargs)
            enqueued += 1
        except Exception as exc:
            failures += 1
            logger.exception(
                "Celery enqueue failed",
                extra={"user_id": item.user_id, "task_name": task_name, "error": type(exc).__name__},
            )

    return enqueued, skipped, failures


def _parse_csv_list(raw):
    if not raw:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def run_daily(args):
    """
    Enqueue one daily refresh per known user
    """
    started = time.monotonic()
    utc_day = _utc_date_string()
    triggered_by = "scheduler.daily"

    enqueue_batch_size = max(1, int(args.enqueue_batch_size))
    enqueue_sleep_seconds = float(args.enqueue_sleep_seconds)
    max_enqueued_jobs = int(args.max_enqueued_jobs)

    celery_app = _create_celery_client()

    lock_id = _env_int("SCHEDULER_DAILY_LOCK_ID", DEFAULT_SCHEDULER_DAILY_LOCK_ID)

    jobs_enqueued = 0
    users_skipped = 0
    enqueue_failures = 0

    with _scheduler_run_lock(lock_id, mode_label="daily") as lock_held:
        if not lock_held:
            logger.warning("Scheduler daily lock already held; exiting", extra={"lock_id": lock_id, "mode": "daily"})
            return

        user_ids = KnownUserIndex().members()
        if len(user_ids) > max_enqueued_jobs:
            raise RuntimeError(f"MAX_ENQUEUED_JOBS exceeded ({max_enqueued_jobs})")

        logger.info(
            "Scheduler daily started",
            extra={"mode": "daily", "day": utc_day, "users_total_selected": len(user_ids)},
        )

        for i in range(0, len(user_ids), enqueue_batch_size):
            batch = read_user_handles(user_ids[i : i + enqueue_batch_size])
            enqueued, skipped, failures = _enqueue_refreshes(
                celery_app,
                "refresh_daily",
                batch,
                {"day": utc_day, "triggered_by": triggered_by},
            )
            jobs_enqueued += enqueued
            users_skipped += skipped
            enqueue_failures += failures

            logger.info(
                "Scheduler daily batch finished",
                extra={
                    "mode": "daily",
                    "day": utc_day,
                    "batch_size": len(batch),
                    "jobs_enqueued": jobs_enqueued,
                    "users_skipped": users_skipped,
                    "enqueue_failures": enqueue_failures,
                },
            )

            if enqueue_sleep_seconds > 0 and (i + enqueue_batch_size) < len(user_ids):
                time.sleep(enqueue_sleep_seconds)

        logger.info(
            "Scheduler daily finished",
            extra={
                "mode": "daily",
                "day": utc_day,
                "users_total_selected": len(user_ids),
                "jobs_enqueued": jobs_enqueued,
                "users_skipped": users_skipped,
                "enqueue_failures": enqueue_failures,
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )


def run_refresh(args):
    """
    Enqueue refresh_user tasks for an explicit user subset
    """
    user_ids = _parse_csv_list(args.user_ids)
    if not user_ids:
        raise ValueError("No users selected (provide --user-ids)")

    max_users = int(args.refresh_max_users)
    confirmed = bool(args.confirm) or (str(os.getenv("REFRESH_CONFIRM", "")).strip() == "1")
    if not confirmed and len(user_ids) > max_users:
        raise RuntimeError(
            f"Refresh requires confirmation for {len(user_ids)} users (max without confirm is {max_users})"
        )

    handles = read_user_handles(user_ids)
    enqueued, skipped, failures = _enqueue_refreshes(
        _create_celery_client(),
        "refresh_user",
        handles,
        {"triggered_by": "scheduler.refresh"},
    )

    logger.info(
        "Scheduler refresh finished",
        extra={
            "mode": "refresh",
            "users_total_selected": len(user_ids),
            "jobs_enqueued": enqueued,
            "users_skipped": skipped,
            "enqueue_failures": failures,
        },
    )


def _backfill_options(args):
    return backfill.BackfillOptions(
        days=int(args.days),
        batch_size=int(args.batch),
        concurrency=int(args.concurrency),
        jitter_min_ms=int(args.jitter_min_ms),
        jitter_max_ms=int(args.jitter_max_ms),
        max_users=int(args.max_users),
        dry_run=bool(args.dry),
        max_batches=int(args.max_batches) if args.max_batches else None,
    )


def run_backfill(args):
    """
    Run the resumable backfill loop over every known user

    Refreshes run in-process unless --origin points at a running API, in
    which case each user goes through its internal backfill endpoint
    """
    started = time.monotonic()
    options = _backfill_options(args)
    origin = str(args.origin or "").strip()

    if origin:
        refresher = backfill.HttpRefresher(origin, auth_token=API_AUTH_TOKEN, days=options.days)
    else:
        refresher = backfill.InProcessRefresher()

    lock_id = _env_int("SCHEDULER_BACKFILL_LOCK_ID", DEFAULT_SCHEDULER_BACKFILL_LOCK_ID)

    try:
        with _scheduler_run_lock(lock_id, mode_label="backfill") as lock_held:
            if not lock_held:
                logger.warning(
                    "Scheduler backfill lock already held; exiting",
                    extra={"lock_id": lock_id, "mode": "backfill"},
                )
                return

            totals = backfill.run_backfill(options, refresher)
    finally:
        if isinstance(refresher, backfill.HttpRefresher):
            refresher.close()

    logger.info(
        "Scheduler backfill finished",
        extra={
            "mode": "backfill",
            "origin": origin or None,
            "duration_seconds": round(time.monotonic() - started, 3),
            **{f"backfill_{key}": value for key, value in totals.items()},
        },
    )


def build_arg_parser():
    parser = argparse.ArgumentParser(prog="contrib-leaderboard-scheduler")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    daily = subparsers.add_parser("daily", help="Enqueue one daily refresh per known user")
    daily.add_argument(
        "--enqueue-batch-size",
        default=_env_int("ENQUEUE_BATCH_SIZE", DEFAULT_ENQUEUE_BATCH_SIZE),
    )
    daily.add_argument(
        "--enqueue-sleep-seconds",
        default=_env_float("ENQUEUE_SLEEP_SECONDS", DEFAULT_ENQUEUE_SLEEP_SECONDS),
    )
    daily.add_argument(
        "--max-enqueued-jobs",
        default=_env_int("MAX_ENQUEUED_JOBS", DEFAULT_MAX_ENQUEUED_JOBS),
    )

    refresh = subparsers.add_parser("refresh", help="Enqueue refresh tasks for a subset of users")
    refresh.add_argument("--user-ids", default="")
    refresh.add_argument("--confirm", action="store_true")
    refresh.add_argument(
        "--refresh-max-users",
        default=_env_int("REFRESH_MAX_USERS", DEFAULT_REFRESH_MAX_USERS),
    )

    backfill_parser = subparsers.add_parser("backfill", help="Backfill rollups for every known user")
    backfill_parser.add_argument("--days", default=BACKFILL_DAYS)
    backfill_parser.add_argument("--batch", default=BACKFILL_BATCH_SIZE)
    backfill_parser.add_argument("--concurrency", default=BACKFILL_CONCURRENCY)
    backfill_parser.add_argument("--jitter-min-ms", default=BACKFILL_JITTER_MIN_MS)
    backfill_parser.add_argument("--jitter-max-ms", default=BACKFILL_JITTER_MAX_MS)
    backfill_parser.add_argument("--origin", default=BACKFILL_ORIGIN)
    backfill_parser.add_argument("--max-users", default=BACKFILL_MAX_USERS)
    backfill_parser.add_argument("--max-batches", default=None)
    backfill_parser.add_argument("--dry", action="store_true")

    return parser


def main():
    logging.basicConfig(level=str(os.getenv("LOG_LEVEL", "INFO")).upper())
    validate_config()

    parser = build_arg_parser()
    args = parser.parse_args()

    if args.mode == "daily":
        run_daily(args)
        return

    if args.mode == "refresh":
        run_refresh(args)
        return

    if args.mode == "backfill":
        run_backfill(args)
        return

    raise ValueError(f"Unknown mode: {args.mode}")


if __name__ == "__main__":
    main()
