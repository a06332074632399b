"""Durable rollup records (table contrib_rollups).

The aggregator is the only writer; the leaderboard reads through these helpers.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from services.shared.contributions import WindowTotals, parse_period


logger = logging.getLogger("rollup_store")


def _non_negative_int(value, field_name) -> int:
    number = int(value or 0)
    if number < 0:
        raise ValueError(f"{field_name} must be >= 0 (got {number})")
    return number


def upsert_rollup(session, user_id, period, totals: WindowTotals, fetched_at: datetime) -> Dict[str, int]:
    """
    Insert or fully replace the rollup for (user_id, period)

    Single conflict-resolving statement; total is recomputed here and never taken from the caller

    Args:
        session: DB session
        user_id (str): Internal user id
        period (Period): Rollup window
        totals (WindowTotals): Counts for the window
        fetched_at (datetime): When upstream data was captured

    Returns:
        dict of the written counts including total
    """
    commits = _non_negative_int(totals.commits, "commits")
    prs = _non_negative_int(totals.prs, "prs")
    issues = _non_negative_int(totals.issues, "issues")
    total = commits + prs + issues

    session.execute(
        text(
            "INSERT INTO contrib_rollups (user_id, period, commits, prs, issues, total, fetched_at, updated_at) "
            "VALUES (:user_id, :period, :commits, :prs, :issues, :total, :fetched_at, CURRENT_TIMESTAMP) "
            "ON CONFLICT (user_id, period) DO UPDATE SET "
            "commits=EXCLUDED.commits, "
            "prs=EXCLUDED.prs, "
            "issues=EXCLUDED.issues, "
            "total=EXCLUDED.total, "
            "fetched_at=EXCLUDED.fetched_at, "
            "updated_at=CURRENT_TIMESTAMP"
        ),
        {
            "user_id": str(user_id),
            "period": parse_period(period).value,
            "commits": commits,
            "prs": prs,
            "issues": issues,
            "total": total,
            "fetched_at": fetched_at,
        },
    )

    return {"commits": commits, "prs": prs, "issues": issues, "total": total}


def list_user_rollups(session, user_id) -> List[Dict[str, Any]]:
    """
    Return every rollup record for a user

    Rows with a period tag this code does not know are skipped

    Returns:
        list of dicts with period (Period), commits, prs, issues, total, fetched_at, updated_at
    """
    rows = session.execute(
        text(
            "SELECT period, commits, prs, issues, total, fetched_at, updated_at"
            " FROM contrib_rollups"
            " WHERE user_id = :user_id"
        ),
        {"user_id": str(user_id)},
    ).mappings().fetchall()

    out = []
    for row in rows:
        try:
            period = parse_period(row["period"])
        except ValueError:
            logger.warning("list_user_rollups unknown period=%r user_id=%s", row["period"], user_id)
            continue
        out.append(
            {
                "period": period,
                "commits": int(row["commits"] or 0),
                "prs": int(row["prs"] or 0),
                "issues": int(row["issues"] or 0),
                "total": int(row["total"] or 0),
                "fetched_at": row["fetched_at"],
                "updated_at": row["updated_at"],
            }
        )
    return out


def fetch_rollup_page(session, period, limit, offset) -> List[Dict[str, Any]]:
    """
    Read a ranked page straight from the durable store

    Ordered by total descending; user_id breaks ties so offsets stay stable

    Returns:
        list of {user_id, score}
    """
    rows = session.execute(
        text(
            "SELECT user_id, total"
            " FROM contrib_rollups"
            " WHERE period = :period"
            " ORDER BY total DESC, user_id ASC"
            " LIMIT :limit OFFSET :offset"
        ),
        {"period": parse_period(period).value, "limit": int(limit), "offset": int(offset)},
    ).fetchall()

    return [{"user_id": str(row[0]), "score": int(row[1] or 0)} for row in rows]


def delete_user_rollups(session, user_id) -> int:
    """
    Delete every rollup record for a user (full user removal only)

    Returns:
        int number of rows removed
    """
    result = session.execute(
        text("DELETE FROM contrib_rollups WHERE user_id = :user_id"),
        {"user_id": str(user_id)},
    )
    return int(result.rowcount or 0)


def get_rollup(session, user_id, period) -> Optional[Dict[str, Any]]:
    for row in list_user_rollups(session, user_id):
        if row["period"] == parse_period(period):
            return row
    return None
