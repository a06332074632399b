import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from services.shared import config as shared_config
from services.shared.aggregator import refresh_user_rollups
from services.shared.errors import ConfigurationError
from services.shared.leaderboard import sync_user_leaderboards
from services.shared.locks import acquire_lock, backfill_lock_key, daily_lock_key, lock_leases, release_lock
from services.shared.user_meta import write_user_handles


logger = logging.getLogger("pipeline")

# Daily path order; the last writer matches the GitHub precedence of a single refresh
DAILY_PROVIDER_ORDER = ("gitlab", "github")


def _clean(value) -> Optional[str]:
    normalized = str(value or "").strip()
    return normalized or None


def _require_user_id(user_id) -> str:
    normalized = _clean(user_id)
    if not normalized:
        raise ValueError("user_id is required")
    return normalized


def _provider_token(provider) -> str:
    if provider == "github":
        return shared_config.GITHUB_TOKEN
    return shared_config.GITLAB_TOKEN


def _today_utc() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def requested_providers(github_login=None, gitlab_username=None) -> list:
    providers = []
    if _clean(github_login):
        providers.append("github")
    if _clean(gitlab_username):
        providers.append("gitlab")
    return sorted(providers)


def refresh_and_sync_user(user_id, github_login=None, gitlab_username=None) -> Dict[str, Any]:
    """
    Refresh one user's rollups and push the fresh totals into the ranked cache

    Holds a backfill lease for every requested provider for the whole
    refresh; the aggregator still writes a single provider (GitHub first)

    Args:
        user_id (str): Internal user id
        github_login (str): Optional GitHub login
        gitlab_username (str): Optional GitLab username

    Returns:
        dict with keys: status, user_id, providers, provider_used, wrote

    Raises:
        ValueError: When no handle is given
        ConfigurationError: When a requested provider has no configured token
        LockConflict: When another refresh holds any of the leases
    """
    user_id = _require_user_id(user_id)
    github_login = _clean(github_login)
    gitlab_username = _clean(gitlab_username)

    providers = requested_providers(github_login, gitlab_username)
    if not providers:
        raise ValueError("At least one of github_login or gitlab_username is required")

    for provider in providers:
        if not _provider_token(provider):
            raise ConfigurationError(f"{provider} requested but {provider.upper()}_TOKEN is not set")

    keys = [backfill_lock_key(provider, user_id) for provider in providers]

    with lock_leases(keys, ttl_seconds=shared_config.REFRESH_LOCK_TTL_SECONDS):
        out = refresh_user_rollups(
            user_id,
            github_login=github_login,
            github_token=shared_config.GITHUB_TOKEN,
            gitlab_username=gitlab_username,
            gitlab_token=shared_config.GITLAB_TOKEN,
            gitlab_base_url=shared_config.GITLAB_BASE_URL,
        )
        sync_user_leaderboards(user_id)
        write_user_handles(user_id, github_login=github_login, gitlab_username=gitlab_username)

    logger.info(
        "refresh_and_sync_user completed",
        extra={"user_id": user_id, "providers": providers, "provider_used": out["provider"]},
    )

    return {
        "status": "ok",
        "user_id": user_id,
        "providers": providers,
        "provider_used": out["provider"],
        "wrote": out["wrote"],
    }


def _refresh_one_provider_daily(user_id, provider, handle, day) -> Dict[str, Any]:
    token = _provider_token(provider)
    if not token:
        return {"status": "missing_token", "error": f"{provider.upper()}_TOKEN is not set"}

    key = daily_lock_key(provider, user_id, day)
    lock_token = acquire_lock(key, shared_config.REFRESH_LOCK_TTL_SECONDS)
    if lock_token is None:
        logger.info("Daily refresh lease held", extra={"user_id": user_id, "provider": provider, "day": day})
        return {"status": "locked"}

    try:
        if provider == "github":
            out = refresh_user_rollups(user_id, github_login=handle, github_token=token)
        else:
            out = refresh_user_rollups(
                user_id,
                gitlab_username=handle,
                gitlab_token=token,
                gitlab_base_url=shared_config.GITLAB_BASE_URL,
            )
        sync_user_leaderboards(user_id)
    finally:
        release_lock(key, lock_token)

    return {"status": "ok", "wrote": out["wrote"]}


def refresh_daily_user(user_id, github_login=None, gitlab_username=None, day=None) -> Dict[str, Any]:
    """
    Daily refresh: each provider runs on its own under a per-day lease

    GitLab runs before GitHub so a user with both handles ends the day with
    GitHub totals, matching refresh_and_sync_user

    Args:
        user_id (str): Internal user id
        github_login (str): Optional GitHub login
        gitlab_username (str): Optional GitLab username
        day (str): UTC day YYYY-MM-DD (defaults to today)

    Returns:
        dict with keys: status ('ok', 'locked', 'skipped' or 'partial'), user_id, day, providers (provider -> result)
    """
    user_id = _require_user_id(user_id)
    day = str(day or _today_utc())
    handles = {"github": _clean(github_login), "gitlab": _clean(gitlab_username)}

    results: Dict[str, Dict[str, Any]] = {}
    for provider in DAILY_PROVIDER_ORDER:
        if not handles[provider]:
            continue
        results[provider] = _refresh_one_provider_daily(user_id, provider, handles[provider], day)

    statuses = {result["status"] for result in results.values()}
    if not results:
        status = "skipped"
    elif statuses == {"ok"}:
        status = "ok"
    elif statuses == {"locked"}:
        status = "locked"
    else:
        status = "partial"

    logger.info(
        "refresh_daily_user finished",
        extra={"user_id": user_id, "day": day, "status": status, "providers": sorted(results)},
    )

    return {"status": status, "user_id": user_id, "day": day, "providers": results}
