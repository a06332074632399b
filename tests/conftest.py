import sys
from contextlib import contextmanager
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tests.fakes import FakeRedis, make_rollup_sessionmaker  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_test_env(monkeypatch):
    """
    Ensure tests don't depend on developer shell env vars

    In particular:
    - Internal API routes reject every caller unless a test sets API_AUTH_TOKEN
    - Provider tokens are unset unless a test explicitly provides them
    """
    monkeypatch.setattr("services.shared.config.API_AUTH_TOKEN", "", raising=False)
    monkeypatch.setattr("services.shared.config.GITHUB_TOKEN", "", raising=False)
    monkeypatch.setattr("services.shared.config.GITLAB_TOKEN", "", raising=False)
    monkeypatch.setattr("services.shared.config.GITLAB_BASE_URL", "https://gitlab.example.com", raising=False)


@pytest.fixture
def fake_redis(monkeypatch):
    """
    FakeRedis wired into every module that resolves the shared client
    """
    client = FakeRedis()
    for target in (
        "services.shared.caching.get_redis",
        "services.shared.locks.get_redis",
        "services.shared.leaderboard_cache.get_redis",
        "services.shared.user_meta.get_redis",
        "services.shared.backfill.get_redis",
    ):
        monkeypatch.setattr(target, lambda: client)
    return client


@pytest.fixture
def rollup_sessions(monkeypatch):
    """
    In-memory durable store; db_session in the aggregator and leaderboard commits into it
    """
    factory = make_rollup_sessionmaker()

    @contextmanager
    def _db_session():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    monkeypatch.setattr("services.shared.aggregator.db_session", _db_session)
    monkeypatch.setattr("services.shared.leaderboard.db_session", _db_session)
    return factory
