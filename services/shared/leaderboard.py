import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from redis.exceptions import RedisError

from services.shared.config import LEADERBOARD_MAX_PAGE_SIZE
from services.shared.contributions import parse_period
from services.shared.database import db_session
from services.shared.leaderboard_cache import LeaderboardCache
from services.shared.rollup_store import fetch_rollup_page, list_user_rollups


logger = logging.getLogger("leaderboard")

DEFAULT_PAGE_SIZE = 25


@contextmanager
def _read_scope(session=None) -> Iterator[Any]:
    if session is not None:
        yield session
        return

    with db_session() as owned:
        yield owned


def sync_user_leaderboards(user_id, session=None, cache: Optional[LeaderboardCache] = None) -> Dict[str, int]:
    """
    Copy the user's current durable totals into the ranked cache

    Scores always come from the durable store, never from the caller; the
    user is added to the known-users index even when they have no rollups yet.
    Safe to repeat

    Args:
        user_id (str): Internal user id
        session: Optional DB session
        cache (LeaderboardCache): Optional cache port

    Returns:
        dict of period value -> score written

    Raises:
        RedisError, SQLAlchemyError: Write-path failures propagate
    """
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValueError("user_id is required")

    cache = cache or LeaderboardCache()

    with _read_scope(session) as active_session:
        rows = list_user_rollups(active_session, user_id)

    scores = {row["period"]: int(row["total"]) for row in rows}
    cache.write_scores(user_id, scores)

    logger.debug("sync_user_leaderboards user_id=%s periods=%s", user_id, sorted(p.value for p in scores))
    return {period.value: score for period, score in scores.items()}


def remove_user_from_leaderboards(user_id, cache: Optional[LeaderboardCache] = None) -> None:
    """
    Drop the user from every period's ranked set and from the known-users index
    """
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValueError("user_id is required")

    (cache or LeaderboardCache()).remove_user(user_id)
    logger.info("Removed user from leaderboards", extra={"user_id": user_id})


def _clamp_limit(limit) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = DEFAULT_PAGE_SIZE
    return min(max(value, 1), LEADERBOARD_MAX_PAGE_SIZE)


def _clamp_cursor(cursor) -> int:
    try:
        value = int(cursor or 0)
    except (TypeError, ValueError):
        value = 0
    return max(value, 0)


def get_leaderboard_page(
    window,
    limit=DEFAULT_PAGE_SIZE,
    cursor=0,
    session=None,
    cache: Optional[LeaderboardCache] = None,
) -> Dict[str, Any]:
    """
    Read one ranked page, cache first with the durable store as fallback

    An empty cache page or a cache error falls back to the durable store with
    the same offset and limit, ordered by total desc then user_id asc

    Args:
        window (str): Period tag or alias ('30d', '365d', 'all')
        limit (int): Page size, clamped to [1, LEADERBOARD_MAX_PAGE_SIZE]
        cursor (int): 0-based offset, clamped to >= 0
        session: Optional DB session for the fallback
        cache (LeaderboardCache): Optional cache port

    Returns:
        dict with keys: entries (list of {user_id, score}), next_cursor (int or None), source ('cache' or 'durable')

    Raises:
        ValueError: When window names no known period
    """
    period = parse_period(window)
    limit = _clamp_limit(limit)
    start = _clamp_cursor(cursor)
    stop = start + limit - 1

    cache = cache or LeaderboardCache()

    entries = []
    try:
        entries = [{"user_id": member, "score": score} for member, score in cache.range_desc(period, start, stop)]
    except RedisError as exc:
        logger.warning(
            "Leaderboard cache read failed; falling back to durable store",
            extra={"period": period.value, "error": type(exc).__name__},
        )

    source = "cache"
    if not entries:
        with _read_scope(session) as active_session:
            entries = fetch_rollup_page(active_session, period, limit, start)
        source = "durable"

    next_cursor = start + limit if len(entries) == limit else None
    return {"entries": entries, "next_cursor": next_cursor, "source": source}
