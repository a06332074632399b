import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from celery import Celery
from kombu.exceptions import OperationalError
from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import text

from services.shared.aggregator import purge_user
from services.shared.caching import get_redis
from services.shared.config import (
    HEALTH_CHECK_BROKER,
    HEALTH_CHECK_BROKER_TIMEOUT_SECONDS,
    REDIS_URL,
    SERVICE_VERSION,
    validate_config,
)
from services.shared.database import apply_pending_migrations, db_session, get_session
from services.shared.errors import ConfigurationError, LockConflict, RateLimited, UpstreamError
from services.shared.leaderboard import DEFAULT_PAGE_SIZE, get_leaderboard_page
from services.shared.pipeline import refresh_and_sync_user

from .schemas import BackfillRequest, BackfillResponse, LeaderboardResponse
from .security import verify_api_auth_token

logger = logging.getLogger("api")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    validate_config()
    apply_pending_migrations()
    yield


app = FastAPI(
    title="Contribution Leaderboard Service",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

celery_client = Celery("contrib-leaderboard-api", broker=REDIS_URL, backend=REDIS_URL)
# Ensure API and worker agree on the Celery queue name
celery_client.conf.task_default_queue = "default"


def _utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _validation_detail(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc") or ())
        message = str(error.get("msg") or "invalid")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid request"


@app.get("/health")
def health() -> Dict[str, Any]:
    """
    Health check: verifies DB and Redis connectivity

    Returns:
        Dict with status, timestamp, and per-dependency booleans
    """
    database_ok = False
    redis_ok = False
    broker_ok = None
    broker_workers = None

    try:
        with db_session() as session:
            session.execute(text("SELECT 1"))
            database_ok = True
    except Exception as exc:
        logger.error("health: database check failed error=%s msg=%s", type(exc).__name__, str(exc))
        database_ok = False

    try:
        redis_ok = bool(get_redis().ping())
    except Exception as exc:
        logger.error("health: redis check failed error=%s msg=%s", type(exc).__name__, str(exc))
        redis_ok = False

    if HEALTH_CHECK_BROKER:
        try:
            replies = celery_client.control.ping(timeout=HEALTH_CHECK_BROKER_TIMEOUT_SECONDS)
            broker_ok = True
            broker_workers = len(replies or [])
        except (OperationalError, TimeoutError, OSError, ConnectionError) as exc:
            logger.error("health: broker ping failed error=%s msg=%s", type(exc).__name__, str(exc))
            broker_ok = False
            broker_workers = None

    healthy = bool(database_ok and redis_ok and (True if broker_ok is None else broker_ok))
    status = "healthy" if healthy else "degraded"

    payload = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "database": database_ok,
        "redis": redis_ok,
    }

    if broker_ok is not None:
        payload["broker"] = broker_ok
        payload["broker_workers"] = broker_workers

    return JSONResponse(status_code=200 if healthy else 503, content=payload)


@app.get("/version")
def version():
    return {"version": app.version}


@app.get("/api/v1/leaderboard", response_model=LeaderboardResponse)
def get_leaderboard(
    window: str = Query("30d"),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    cursor: int = Query(0),
    db=Depends(get_session),
) -> LeaderboardResponse:
    """
    Read one ranked leaderboard page

    Args:
        window (str): '30d', '365d' or 'all' (period tags are accepted too)
        limit (int): Page size, clamped to [1, 100]
        cursor (int): 0-based offset from a previous next_cursor

    Returns:
        LeaderboardResponse payload
    """
    try:
        page = get_leaderboard_page(window, limit=limit, cursor=cursor, session=db)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown window: {window}") from exc

    return {"window": window, **page}


@app.post("/api/internal/leaderboard/backfill", response_model=BackfillResponse)
def backfill_user(
    payload: Dict[str, Any] = Body(...),
    _=Depends(verify_api_auth_token),
) -> BackfillResponse:
    """
    Refresh one user's rollups now and sync the ranked cache

    Holds a per-provider lease for the whole refresh; a concurrent refresh of
    the same user and provider gets 409

    Args:
        payload (dict): user_id, github_login and/or gitlab_username, optional days/concurrency

    Returns:
        BackfillResponse payload
    """
    try:
        body = BackfillRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc

    try:
        result = refresh_and_sync_user(
            body.user_id,
            github_login=body.github_login,
            gitlab_username=body.gitlab_username,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LockConflict as exc:
        logger.info("backfill: lease held", extra={"user_id": body.user_id, "lock_key": exc.key})
        raise HTTPException(status_code=409, detail=f"Conflict: backfill already running ({exc.key})") from exc
    except RateLimited as exc:
        logger.warning(
            "backfill: upstream rate limited",
            extra={"user_id": body.user_id, "provider": exc.provider, "status": exc.status},
        )
        raise HTTPException(status_code=429, detail="Upstream rate limited") from exc
    except UpstreamError as exc:
        logger.error(
            "backfill: upstream error",
            extra={"user_id": body.user_id, "provider": exc.provider, "status": exc.status},
        )
        raise HTTPException(status_code=502, detail=f"Upstream error from {exc.provider}") from exc

    return {**result, "snapshot_date": _utc_today()}


@app.delete("/api/internal/leaderboard/users/{user_id}")
def delete_user(user_id: str, _=Depends(verify_api_auth_token)) -> Dict[str, Any]:
    """
    Remove a user from the durable rollups and every ranked leaderboard

    Returns:
        dict with user_id and deleted row count
    """
    try:
        return purge_user(user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RedisError as exc:
        logger.exception("delete_user: cache removal failed", extra={"user_id": user_id})
        raise HTTPException(status_code=503, detail="Leaderboard cache unavailable") from exc
