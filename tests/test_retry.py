import httpx
import pytest

from services.shared.errors import ConfigurationError, LockConflict, RateLimited, UpstreamError
from services.shared.retry import CONFLICT, RATE_LIMITED, SERVER_ERROR, TRANSPORT, RetryPolicy


def _policy(sleeps, max_retries=4):
    return RetryPolicy(
        max_retries=max_retries,
        conflict_cooldown=60,
        rate_limit_step=60,
        server_error_step=10,
        transport_step=5,
        sleep=sleeps.append,
    )


@pytest.mark.parametrize(
    "exc, kind",
    [
        (LockConflict("lock:backfill:github:u1"), CONFLICT),
        (UpstreamError("conflict", status=409), CONFLICT),
        (RateLimited("slow", status=429), RATE_LIMITED),
        (UpstreamError("forbidden", status=403), RATE_LIMITED),
        (UpstreamError("bad gateway", status=502), SERVER_ERROR),
        (httpx.ConnectError("refused"), TRANSPORT),
        (UpstreamError("bad request", status=400), None),
        (ConfigurationError("no token"), None),
        (ValueError("bad input"), None),
    ],
)
def test_classify_maps_errors_to_retry_kinds_expected(exc, kind):
    assert RetryPolicy().classify(exc) == kind


def test_backoff_schedule_per_kind_expected():
    policy = _policy([])

    assert policy.delay_for(CONFLICT, 3) == 60
    assert policy.delay_for(RATE_LIMITED, 2) == 120
    assert policy.delay_for(SERVER_ERROR, 3) == 30
    assert policy.delay_for(TRANSPORT, 4) == 20


def test_run_retries_until_success_expected():
    sleeps = []
    errors = [UpstreamError("bad gateway", status=503), RateLimited("slow", status=429)]

    def _fn():
        if errors:
            raise errors.pop(0)
        return "done"

    result = _policy(sleeps).run(_fn)

    assert result.ok is True
    assert result.value == "done"
    assert result.attempts == 3
    assert sleeps == [10.0, 120.0]


def test_run_gives_up_after_max_retries_expected():
    sleeps = []
    calls = {"n": 0}

    def _fn():
        calls["n"] += 1
        raise LockConflict("k")

    result = _policy(sleeps, max_retries=4).run(_fn)

    assert result.ok is False
    assert result.kind == CONFLICT
    assert result.status == 409
    assert calls["n"] == 5
    assert sleeps == [60.0] * 4


def test_run_does_not_retry_non_retryable_errors_expected():
    sleeps = []

    def _fn():
        raise ConfigurationError("GITHUB_TOKEN missing")

    result = _policy(sleeps).run(_fn)

    assert result.ok is False
    assert result.kind is None
    assert result.attempts == 1
    assert "GITHUB_TOKEN missing" in result.error
    assert sleeps == []
