"""Redis sorted-set port for the ranked leaderboard and the known-users index."""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from services.shared.caching import get_redis
from services.shared.contributions import Period, parse_period


logger = logging.getLogger("leaderboard_cache")

PERIOD_KEYS = {
    Period.LAST_30D: "lb:rollups:30d",
    Period.LAST_365D: "lb:rollups:365d",
    Period.ALL_TIME: "lb:rollups:all",
}

KNOWN_USERS_KEY = "lb:users"


def period_key(period) -> str:
    return PERIOD_KEYS[parse_period(period)]


class KnownUserIndex:
    """
    Set of every user id that has ever been synced into the ranked cache

    Owned by the leaderboard sync; read by the backfill orchestrator and the daily scheduler
    """

    def __init__(self, client=None, key=KNOWN_USERS_KEY):
        self._client = client
        self.key = key

    @property
    def client(self):
        return self._client if self._client is not None else get_redis()

    def add(self, user_id, pipe=None) -> None:
        (pipe if pipe is not None else self.client).sadd(self.key, str(user_id))

    def remove(self, user_id, pipe=None) -> None:
        (pipe if pipe is not None else self.client).srem(self.key, str(user_id))

    def members(self) -> List[str]:
        """
        Return known user ids in a stable (sorted) order

        Returns:
            list of str
        """
        return sorted(str(member) for member in (self.client.smembers(self.key) or ()))

    def count(self) -> int:
        return int(self.client.scard(self.key) or 0)


class LeaderboardCache:
    """
    Ranked cache: one sorted set per period, member=user_id, score=total
    """

    def __init__(self, client=None, known_users: Optional[KnownUserIndex] = None):
        self._client = client
        self.known_users = known_users or KnownUserIndex(client=client)

    @property
    def client(self):
        return self._client if self._client is not None else get_redis()

    def write_scores(self, user_id, scores: Dict[Period, int]) -> None:
        """
        Overwrite the user's score in each given period and mark them known, in one pipeline

        Args:
            user_id (str): Internal user id
            scores (dict): Period -> total
        """
        member = str(user_id)
        pipe = self.client.pipeline()
        for period, score in scores.items():
            pipe.zadd(period_key(period), {member: int(score)})
        self.known_users.add(member, pipe=pipe)
        pipe.execute()

    def remove_user(self, user_id, periods: Optional[Iterable[Period]] = None) -> None:
        member = str(user_id)
        pipe = self.client.pipeline()
        for period in periods or PERIOD_KEYS:
            pipe.zrem(period_key(period), member)
        self.known_users.remove(member, pipe=pipe)
        pipe.execute()

    def range_desc(self, period, start, stop) -> List[Tuple[str, int]]:
        """
        Return (user_id, score) pairs for ranks start..stop (inclusive), highest score first

        Raises:
            RedisError: When the cache is unreachable
        """
        rows = self.client.zrange(period_key(period), int(start), int(stop), desc=True, withscores=True)
        return [(str(member), int(float(score or 0))) for member, score in rows or ()]

    def score(self, period, user_id) -> Optional[int]:
        value = self.client.zscore(period_key(period), str(user_id))
        if value is None:
            return None
        return int(float(value))
