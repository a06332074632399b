import random

import httpx
import pytest

from services.shared import backfill
from services.shared.errors import ConfigurationError, LockConflict, RateLimited, UpstreamError
from services.shared.leaderboard_cache import KnownUserIndex
from services.shared.retry import RetryPolicy
from services.shared.user_meta import UserHandles, write_user_handles


def _options(**overrides):
    values = {
        "days": 365,
        "batch_size": 2,
        "concurrency": 2,
        "jitter_min_ms": 0,
        "jitter_max_ms": 0,
        "max_users": 100,
        "zero_success_cooldown": 0,
    }
    values.update(overrides)
    return backfill.BackfillOptions(**values)


def _no_sleep_policy():
    return RetryPolicy(max_retries=1, sleep=lambda _s: None)


def _seed_users(client, handles):
    index = KnownUserIndex(client=client)
    for user_id, (github_login, gitlab_username) in handles.items():
        index.add(user_id)
        write_user_handles(user_id, github_login=github_login, gitlab_username=gitlab_username, client=client)


class _RecordingRefresher:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.seen = []

    def __call__(self, handles: UserHandles):
        self.seen.append(handles.user_id)
        if handles.user_id in self.fail_for:
            raise UpstreamError("bad gateway", status=502, provider="backfill")
        return {"status": "ok"}


def test_options_normalized_clamps_concurrency_and_jitter_expected():
    options = _options(concurrency=50, jitter_min_ms=500, jitter_max_ms=100, batch_size=0).normalized()

    assert options.concurrency == backfill.MAX_CONCURRENCY
    assert options.jitter_max_ms == 500
    assert options.batch_size == 1


def test_run_backfill_processes_every_known_user_and_marks_done_expected(fake_redis):
    _seed_users(fake_redis, {f"u{i}": (f"gh{i}", None) for i in range(5)})
    refresher = _RecordingRefresher()

    totals = backfill.run_backfill(
        _options(),
        refresher,
        client=fake_redis,
        policy=_no_sleep_policy(),
        rng=random.Random(0),
    )

    assert sorted(refresher.seen) == [f"u{i}" for i in range(5)]
    assert totals["batches"] == 3
    assert totals["succeeded"] == 5
    assert totals["done_count"] == 5
    assert totals["known_count"] == 5
    assert fake_redis.smembers(backfill.done_key(365)) == {f"u{i}" for i in range(5)}


def test_rerun_only_dispatches_users_not_yet_done_expected(fake_redis):
    _seed_users(fake_redis, {"a": ("gha", None), "b": ("ghb", None), "c": (None, "glc")})
    backfill.mark_done(["a", "b"], 365, client=fake_redis)
    refresher = _RecordingRefresher()

    backfill.run_backfill(_options(), refresher, client=fake_redis, policy=_no_sleep_policy())

    assert refresher.seen == ["c"]


def test_done_progress_is_tracked_per_days_value_expected(fake_redis):
    _seed_users(fake_redis, {"a": ("gha", None)})
    backfill.mark_done(["a"], 30, client=fake_redis)
    refresher = _RecordingRefresher()

    backfill.run_backfill(_options(days=365), refresher, client=fake_redis, policy=_no_sleep_policy())

    assert refresher.seen == ["a"]


def test_failed_users_stay_undone_and_are_not_revisited_in_the_same_run_expected(fake_redis):
    _seed_users(fake_redis, {"a": ("gha", None), "b": ("ghb", None)})
    refresher = _RecordingRefresher(fail_for={"b"})

    totals = backfill.run_backfill(_options(), refresher, client=fake_redis, policy=_no_sleep_policy())

    assert refresher.seen.count("b") == 2
    assert totals["failed"] == 1
    assert fake_redis.smembers(backfill.done_key(365)) == {"a"}


def test_users_without_handles_are_skipped_expected(fake_redis):
    _seed_users(fake_redis, {"a": ("gha", None), "b": (None, None)})
    refresher = _RecordingRefresher()

    summary = backfill.run_backfill_batch(_options(), refresher, client=fake_redis, policy=_no_sleep_policy())

    assert summary.skipped == ["b"]
    assert summary.succeeded == ["a"]
    assert summary.dispatched == 1
    assert not fake_redis.sismember(backfill.done_key(365), "b")


def test_dry_run_plans_without_dispatching_or_marking_expected(fake_redis):
    _seed_users(fake_redis, {"a": ("gha", None), "b": (None, "glb"), "c": ("ghc", None)})
    refresher = _RecordingRefresher()

    totals = backfill.run_backfill(_options(dry_run=True), refresher, client=fake_redis, policy=_no_sleep_policy())

    assert refresher.seen == []
    assert totals["planned"] == 3
    assert totals["done_count"] == 0


def test_reruns_with_max_users_eventually_reach_every_user_expected(fake_redis):
    _seed_users(fake_redis, {f"u{i}": (f"gh{i}", None) for i in range(4)})
    per_run = []

    for _ in range(3):
        refresher = _RecordingRefresher()
        backfill.run_backfill(_options(max_users=2), refresher, client=fake_redis, policy=_no_sleep_policy())
        per_run.append(sorted(refresher.seen))

    assert per_run == [["u0", "u1"], ["u2", "u3"], []]
    assert fake_redis.smembers(backfill.done_key(365)) == {f"u{i}" for i in range(4)}


def test_max_users_caps_users_taken_per_run_expected(fake_redis):
    _seed_users(fake_redis, {f"u{i}": (f"gh{i}", None) for i in range(5)})
    refresher = _RecordingRefresher()

    totals = backfill.run_backfill(
        _options(max_users=3, batch_size=2), refresher, client=fake_redis, policy=_no_sleep_policy()
    )

    assert sorted(refresher.seen) == ["u0", "u1", "u2"]
    assert totals["batches"] == 2
    assert totals["done_count"] == 3


class _ExplodingPolicy:
    def run(self, fn, label=None):
        raise RuntimeError(f"worker crashed on {label}")


def test_worker_exception_surfaces_from_batch_expected(fake_redis):
    _seed_users(fake_redis, {"a": ("gha", None), "b": ("ghb", None)})

    with pytest.raises(RuntimeError, match="worker crashed"):
        backfill.run_backfill_batch(_options(), _RecordingRefresher(), client=fake_redis, policy=_ExplodingPolicy())

    assert fake_redis.smembers(backfill.done_key(365)) == set()


def test_zero_success_batch_triggers_cooldown_expected(fake_redis, monkeypatch):
    _seed_users(fake_redis, {"a": ("gha", None)})
    sleeps = []
    monkeypatch.setattr(backfill.time, "sleep", lambda s: sleeps.append(s))

    backfill.run_backfill(
        _options(zero_success_cooldown=90),
        _RecordingRefresher(fail_for={"a"}),
        client=fake_redis,
        policy=_no_sleep_policy(),
    )

    assert 90.0 in sleeps


def _http_refresher(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return backfill.HttpRefresher("http://api.local/", auth_token="secret", days=30, client=client)


def test_http_refresher_posts_handles_with_bearer_token_expected():
    seen = {}

    def _handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.content
        return httpx.Response(200, json={"status": "ok", "user_id": "u1"})

    refresher = _http_refresher(_handler)

    out = refresher(UserHandles(user_id="u1", github_login="octo"))

    assert out["status"] == "ok"
    assert seen["url"] == "http://api.local/api/internal/leaderboard/backfill"
    assert seen["auth"] == "Bearer secret"
    assert b'"github_login":"octo"' in seen["body"].replace(b" ", b"")
    assert b"gitlab_username" not in seen["body"]


@pytest.mark.parametrize(
    "status, error_cls",
    [(409, LockConflict), (429, RateLimited), (403, RateLimited), (503, UpstreamError)],
)
def test_http_refresher_maps_statuses_to_errors_expected(status, error_cls):
    refresher = _http_refresher(lambda _request: httpx.Response(status, text="nope"))

    with pytest.raises(error_cls):
        refresher(UserHandles(user_id="u1", gitlab_username="dev"))


def test_http_refresher_requires_auth_token_expected():
    with pytest.raises(ConfigurationError):
        backfill.HttpRefresher("http://api.local", auth_token="")
