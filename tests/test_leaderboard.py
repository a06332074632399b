from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.shared import leaderboard
from services.shared.contributions import Period, WindowTotals
from services.shared.leaderboard_cache import KNOWN_USERS_KEY, LeaderboardCache
from services.shared.rollup_store import upsert_rollup


FETCHED_AT = datetime(2026, 10, 18, tzinfo=timezone.utc)


class _BrokenCache:
    def range_desc(self, period, start, stop):
        raise RedisConnectionError("down")


def _seed(factory, scores, period=Period.LAST_30D):
    session = factory()
    for user_id, score in scores.items():
        upsert_rollup(session, user_id, period, WindowTotals(commits=score), FETCHED_AT)
    session.commit()
    session.close()


def test_pages_are_ranked_and_cursor_advances_expected(fake_redis):
    cache = LeaderboardCache(client=fake_redis)
    cache.write_scores("u1", {Period.LAST_30D: 50})
    cache.write_scores("u2", {Period.LAST_30D: 80})
    cache.write_scores("u3", {Period.LAST_30D: 30})

    first = leaderboard.get_leaderboard_page("30d", limit=2, cursor=0, cache=cache)
    assert first["entries"] == [{"user_id": "u2", "score": 80}, {"user_id": "u1", "score": 50}]
    assert first["next_cursor"] == 2
    assert first["source"] == "cache"

    second = leaderboard.get_leaderboard_page("30d", limit=2, cursor=2, cache=cache)
    assert second["entries"] == [{"user_id": "u3", "score": 30}]
    assert second["next_cursor"] is None


def test_empty_cache_falls_back_to_durable_store_expected(fake_redis, rollup_sessions):
    _seed(rollup_sessions, {"a": 4, "b": 7})

    page = leaderboard.get_leaderboard_page("last_30d", limit=5, cache=LeaderboardCache(client=fake_redis))

    assert page["source"] == "durable"
    assert page["entries"] == [{"user_id": "b", "score": 7}, {"user_id": "a", "score": 4}]
    assert page["next_cursor"] is None


def test_cache_error_falls_back_to_durable_store_expected(rollup_sessions):
    _seed(rollup_sessions, {"a": 1})

    page = leaderboard.get_leaderboard_page("30d", cache=_BrokenCache())

    assert page["source"] == "durable"
    assert page["entries"] == [{"user_id": "a", "score": 1}]


def test_limit_and_cursor_are_clamped_expected(fake_redis, monkeypatch):
    monkeypatch.setattr(leaderboard, "LEADERBOARD_MAX_PAGE_SIZE", 2)
    cache = LeaderboardCache(client=fake_redis)
    for i, score in enumerate([5, 4, 3]):
        cache.write_scores(f"u{i}", {Period.LAST_365D: score})

    page = leaderboard.get_leaderboard_page("365d", limit=500, cursor=-7, cache=cache)

    assert [e["user_id"] for e in page["entries"]] == ["u0", "u1"]
    assert page["next_cursor"] == 2


def test_unknown_window_is_rejected_expected(fake_redis):
    with pytest.raises(ValueError):
        leaderboard.get_leaderboard_page("7d", cache=LeaderboardCache(client=fake_redis))


def test_sync_copies_durable_totals_and_marks_known_expected(fake_redis, rollup_sessions):
    _seed(rollup_sessions, {"u1": 12})
    _seed(rollup_sessions, {"u1": 40}, period=Period.LAST_365D)

    synced = leaderboard.sync_user_leaderboards("u1")

    assert synced == {"last_30d": 12, "last_365d": 40}
    assert fake_redis.zscore("lb:rollups:30d", "u1") == 12
    assert fake_redis.zscore("lb:rollups:365d", "u1") == 40
    assert fake_redis.sismember(KNOWN_USERS_KEY, "u1")


def test_synced_rollups_page_in_score_order_expected(fake_redis, rollup_sessions):
    _seed(rollup_sessions, {"u1": 50, "u2": 80, "u3": 30})
    for user_id in ("u1", "u2", "u3"):
        leaderboard.sync_user_leaderboards(user_id)

    first = leaderboard.get_leaderboard_page("30d", limit=2, cursor=0)
    assert first["entries"] == [{"user_id": "u2", "score": 80}, {"user_id": "u1", "score": 50}]
    assert first["next_cursor"] == 2
    assert first["source"] == "cache"

    second = leaderboard.get_leaderboard_page("30d", limit=2, cursor=2)
    assert second["entries"] == [{"user_id": "u3", "score": 30}]
    assert second["next_cursor"] is None


def test_sync_without_rollups_still_marks_user_known_expected(fake_redis, rollup_sessions):
    assert leaderboard.sync_user_leaderboards("ghost") == {}
    assert fake_redis.sismember(KNOWN_USERS_KEY, "ghost")


def test_remove_user_drops_every_period_and_known_entry_expected(fake_redis):
    cache = LeaderboardCache(client=fake_redis)
    cache.write_scores("u1", {Period.LAST_30D: 1, Period.LAST_365D: 2})

    leaderboard.remove_user_from_leaderboards("u1", cache=cache)

    assert cache.score(Period.LAST_30D, "u1") is None
    assert cache.score(Period.LAST_365D, "u1") is None
    assert not fake_redis.sismember(KNOWN_USERS_KEY, "u1")
