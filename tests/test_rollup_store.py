from datetime import datetime, timezone

import pytest

from services.shared.contributions import Period, WindowTotals
from services.shared.rollup_store import (
    delete_user_rollups,
    fetch_rollup_page,
    get_rollup,
    list_user_rollups,
    upsert_rollup,
)
from tests.fakes import make_rollup_sessionmaker


FETCHED_AT = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session():
    factory = make_rollup_sessionmaker()
    s = factory()
    try:
        yield s
    finally:
        s.close()


def test_upsert_rollup_recomputes_total_expected(session):
    wrote = upsert_rollup(session, "u1", Period.LAST_30D, WindowTotals(commits=3, prs=2, issues=1), FETCHED_AT)

    assert wrote == {"commits": 3, "prs": 2, "issues": 1, "total": 6}
    row = get_rollup(session, "u1", "30d")
    assert row["total"] == 6
    assert row["period"] is Period.LAST_30D


def test_upsert_rollup_overwrites_existing_record_expected(session):
    upsert_rollup(session, "u1", Period.LAST_365D, WindowTotals(commits=10), FETCHED_AT)
    upsert_rollup(session, "u1", Period.LAST_365D, WindowTotals(prs=1), FETCHED_AT)

    rows = list_user_rollups(session, "u1")
    assert len(rows) == 1
    assert (rows[0]["commits"], rows[0]["prs"], rows[0]["total"]) == (0, 1, 1)


def test_upsert_rollup_rejects_negative_counts_expected(session):
    with pytest.raises(ValueError):
        upsert_rollup(session, "u1", Period.LAST_30D, WindowTotals(commits=-1), FETCHED_AT)


def test_fetch_rollup_page_orders_by_total_then_user_id_expected(session):
    upsert_rollup(session, "b", Period.LAST_30D, WindowTotals(commits=5), FETCHED_AT)
    upsert_rollup(session, "a", Period.LAST_30D, WindowTotals(commits=5), FETCHED_AT)
    upsert_rollup(session, "c", Period.LAST_30D, WindowTotals(commits=9), FETCHED_AT)
    upsert_rollup(session, "d", Period.LAST_365D, WindowTotals(commits=99), FETCHED_AT)

    assert fetch_rollup_page(session, Period.LAST_30D, 10, 0) == [
        {"user_id": "c", "score": 9},
        {"user_id": "a", "score": 5},
        {"user_id": "b", "score": 5},
    ]
    assert fetch_rollup_page(session, Period.LAST_30D, 2, 2) == [{"user_id": "b", "score": 5}]


def test_delete_user_rollups_only_touches_that_user_expected(session):
    upsert_rollup(session, "u1", Period.LAST_30D, WindowTotals(commits=1), FETCHED_AT)
    upsert_rollup(session, "u1", Period.LAST_365D, WindowTotals(commits=2), FETCHED_AT)
    upsert_rollup(session, "u2", Period.LAST_30D, WindowTotals(commits=3), FETCHED_AT)

    assert delete_user_rollups(session, "u1") == 2
    assert list_user_rollups(session, "u1") == []
    assert len(list_user_rollups(session, "u2")) == 1
