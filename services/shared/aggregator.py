import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from services.shared import github_client, gitlab_client
from services.shared.config import GITLAB_BASE_URL
from services.shared.contributions import ProviderRollups
from services.shared.database import db_session
from services.shared.leaderboard import remove_user_from_leaderboards
from services.shared.rollup_store import delete_user_rollups, upsert_rollup


logger = logging.getLogger("aggregator")


@contextmanager
def _session_scope(session=None) -> Iterator[Any]:
    if session is not None:
        yield session
        return

    with db_session() as owned:
        yield owned


def _clean(value) -> Optional[str]:
    normalized = str(value or "").strip()
    return normalized or None


def _write_rollups(session, user_id, rollups: ProviderRollups, fetched_at) -> Dict[str, Dict[str, int]]:
    wrote = {}
    for period, totals in rollups.windows.items():
        wrote[period.value] = upsert_rollup(session, user_id, period, totals, fetched_at)
    return wrote


def refresh_user_rollups(
    user_id,
    github_login=None,
    github_token=None,
    gitlab_username=None,
    gitlab_token=None,
    gitlab_base_url=None,
    now=None,
    session=None,
) -> Dict[str, Any]:
    """
    Fetch fresh windowed totals for one user and persist them as rollup records

    A provider is usable only when both its handle and its token are present.
    When both providers are usable GitHub wins; the other is not fetched.
    Every window is written in a single transaction. The ranked cache is not
    touched here

    Args:
        user_id (str): Internal user id
        github_login (str): Optional GitHub login
        github_token (str): Optional GitHub token
        gitlab_username (str): Optional GitLab username
        gitlab_token (str): Optional GitLab token
        gitlab_base_url (str): GitLab instance URL (defaults to GITLAB_BASE_URL)
        now (datetime): Optional reference instant (UTC)
        session: Optional DB session; the caller owns its transaction when given

    Returns:
        dict with keys: provider ('github', 'gitlab' or 'none'), wrote (period -> counts)

    Raises:
        ConfigurationError, UpstreamError, RateLimited: From the provider fetchers
    """
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValueError("user_id is required")

    github_login = _clean(github_login)
    gitlab_username = _clean(gitlab_username)

    has_github = bool(github_login and github_token)
    has_gitlab = bool(gitlab_username and gitlab_token)

    if not has_github and not has_gitlab:
        logger.info("refresh_user_rollups skipped: no usable provider", extra={"user_id": user_id})
        return {"provider": "none", "wrote": {}}

    now = now or datetime.now(timezone.utc)

    if has_github:
        if has_gitlab:
            logger.info(
                "refresh_user_rollups: both providers usable; using github",
                extra={"user_id": user_id},
            )
        rollups = github_client.fetch_contribution_rollups(github_login, github_token, now=now)
    else:
        rollups = gitlab_client.fetch_contribution_rollups(
            gitlab_username,
            base_url=_clean(gitlab_base_url) or GITLAB_BASE_URL,
            gitlab_token=gitlab_token,
            now=now,
        )

    with _session_scope(session) as active_session:
        wrote = _write_rollups(active_session, user_id, rollups, fetched_at=now)

    logger.info(
        "refresh_user_rollups wrote rollups",
        extra={
            "user_id": user_id,
            "provider": rollups.provider,
            "handle": rollups.handle,
            "resolved": rollups.resolved,
            "periods": sorted(wrote),
        },
    )

    return {"provider": rollups.provider, "wrote": wrote}


def purge_user(user_id, session=None) -> Dict[str, Any]:
    """
    Remove a user entirely: durable rollup records first, then ranked cache entries

    Returns:
        dict with keys: user_id, deleted (rows removed)
    """
    user_id = str(user_id or "").strip()
    if not user_id:
        raise ValueError("user_id is required")

    with _session_scope(session) as active_session:
        deleted = delete_user_rollups(active_session, user_id)

    remove_user_from_leaderboards(user_id)

    logger.info("purge_user completed", extra={"user_id": user_id, "deleted": deleted})
    return {"user_id": user_id, "deleted": deleted}
