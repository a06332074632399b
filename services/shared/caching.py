"""Redis client shared by the ranked leaderboard cache, locks and backfill progress markers.

Key patterns:
    lb:rollups:{30d|365d|all}    sorted set, member=user_id, score=total
    lb:users                     set of known user ids
    lb:user:{user_id}            hash of display metadata and provider handles
    lb:backfill:done:{days}      set of user ids completed by a backfill run
    lock:{scope}:{provider}:...  refresh leases
"""

from typing import Optional

import redis
from redis import Redis

from .config import REDIS_URL

_redis: Optional[Redis] = None


def get_redis() -> Redis:
    """
    Return a singleton Redis client

    Responses are decoded to str so members, tokens and hash fields compare as text

    Returns:
        redis.Redis client
    """
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis

