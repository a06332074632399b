"""In-memory stand-ins for Redis and the durable store used across tests."""

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


class FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self

        return _queue

    def execute(self):
        calls, self._calls = self._calls, []
        self._redis.pipelines_executed += 1
        return [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in calls]


class FakeRedis:
    def __init__(self):
        self.strings = {}
        self.sets = {}
        self.zsets = {}
        self.hashes = {}
        self.pipelines_executed = 0

    def ping(self):
        return True

    def set(self, key, value, nx=False, ex=None):
        _ = ex
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    def get(self, key):
        return self.strings.get(key)

    def eval(self, _script, _numkeys, key, expected_value):
        if self.strings.get(key) == expected_value:
            del self.strings[key]
            return 1
        return 0

    def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        added = len(set(members) - bucket)
        bucket.update(members)
        return added

    def srem(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def sismember(self, key, member):
        return member in self.sets.get(key, set())

    def scard(self, key):
        return len(self.sets.get(key, set()))

    def zadd(self, key, mapping):
        bucket = self.zsets.setdefault(key, {})
        added = len(set(mapping) - set(bucket))
        for member, score in mapping.items():
            bucket[member] = float(score)
        return added

    def zrem(self, key, *members):
        bucket = self.zsets.setdefault(key, {})
        removed = 0
        for member in members:
            if bucket.pop(member, None) is not None:
                removed += 1
        return removed

    def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    def zrange(self, key, start, end, desc=False, withscores=False):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]), reverse=desc)
        items = items[start:] if end < 0 else items[start : end + 1]
        if withscores:
            return [(member, score) for member, score in items]
        return [member for member, _score in items]

    def hset(self, key, field=None, value=None, mapping=None):
        bucket = self.hashes.setdefault(key, {})
        if field is not None:
            bucket[field] = value
        bucket.update(mapping or {})
        return len(mapping or {}) + (1 if field is not None else 0)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


_ROLLUPS_DDL = (
    "CREATE TABLE contrib_rollups ("
    " user_id TEXT NOT NULL,"
    " period TEXT NOT NULL,"
    " commits INTEGER NOT NULL DEFAULT 0,"
    " prs INTEGER NOT NULL DEFAULT 0,"
    " issues INTEGER NOT NULL DEFAULT 0,"
    " total INTEGER NOT NULL DEFAULT 0,"
    " fetched_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,"
    " updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP"
    ")"
)


def make_rollup_sessionmaker():
    """
    In-memory SQLite with the contrib_rollups table and its unique (user_id, period) index

    Returns:
        sessionmaker bound to a single shared connection
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    with engine.begin() as conn:
        conn.execute(text(_ROLLUPS_DDL))
        conn.execute(text("CREATE UNIQUE INDEX contrib_rollups_user_period_uidx ON contrib_rollups (user_id, period)"))
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
