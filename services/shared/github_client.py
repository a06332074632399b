from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Union
import hashlib
import logging

import httpx
from pydantic import BaseModel, ValidationError

from services.shared.contributions import (
    Period,
    ProviderRollups,
    RateLimitInfo,
    WINDOW_DAYS,
    WindowTotals,
    empty_rollups,
)
from services.shared.errors import ConfigurationError, RateLimited, UpstreamError, body_excerpt

logger = logging.getLogger("github_client")

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
DEFAULT_GITHUB_TIMEOUT = 30.0
PROVIDER = "github"


class _ContributionsWindow(BaseModel):
    totalCommitContributions: int
    totalPullRequestContributions: int
    totalIssueContributions: int


class _RateLimit(BaseModel):
    cost: int
    remaining: int
    resetAt: str


class _UserWindows(BaseModel):
    id: Optional[str] = None
    login: str
    c30: Optional[_ContributionsWindow] = None
    c365: Optional[_ContributionsWindow] = None
    cwin: Optional[_ContributionsWindow] = None


class _GraphQLData(BaseModel):
    user: Optional[_UserWindows] = None
    rateLimit: Optional[_RateLimit] = None


class _GraphQLError(BaseModel):
    message: str
    type: Optional[str] = None
    path: Optional[List[Union[str, int]]] = None


class _GraphQLResponse(BaseModel):
    data: Optional[_GraphQLData] = None
    errors: Optional[List[_GraphQLError]] = None


_CONTRIBUTION_FIELDS = (
    "      totalCommitContributions\n"
    "      totalPullRequestContributions\n"
    "      totalIssueContributions\n"
)

_ROLLUPS_QUERY = (
    "query($login:String!, $from30:DateTime!, $from365:DateTime!, $to:DateTime!){\n"
    "  user(login:$login){\n"
    "    id\n"
    "    login\n"
    "    c30: contributionsCollection(from:$from30, to:$to){\n"
    + _CONTRIBUTION_FIELDS
    + "    }\n"
    "    c365: contributionsCollection(from:$from365, to:$to){\n"
    + _CONTRIBUTION_FIELDS
    + "    }\n"
    "  }\n"
    "  rateLimit { cost remaining resetAt }\n"
    "}"
)

_RANGE_QUERY = (
    "query($login:String!, $from:DateTime!, $to:DateTime!){\n"
    "  user(login:$login){\n"
    "    id\n"
    "    login\n"
    "    cwin: contributionsCollection(from:$from, to:$to){\n"
    + _CONTRIBUTION_FIELDS
    + "    }\n"
    "  }\n"
    "  rateLimit { cost remaining resetAt }\n"
    "}"
)


@contextmanager
def _http_client() -> Iterator[httpx.Client]:
    """
    Provide a configured httpx client

    Returns:
        httpx.Client context manager
    """
    with httpx.Client(timeout=DEFAULT_GITHUB_TIMEOUT) as client:
        yield client


def _token_hash(github_token) -> str:
    return hashlib.sha256((github_token or "").encode("utf-8")).hexdigest()[:6]


def _to_iso8601_z(dt) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _window_totals(window: Optional[_ContributionsWindow]) -> WindowTotals:
    if window is None:
        return WindowTotals()
    return WindowTotals(
        commits=window.totalCommitContributions,
        prs=window.totalPullRequestContributions,
        issues=window.totalIssueContributions,
    )


def _rate_limit_info(data: _GraphQLData) -> Optional[RateLimitInfo]:
    if data.rateLimit is None:
        return None
    return RateLimitInfo(
        cost=data.rateLimit.cost,
        remaining=data.rateLimit.remaining,
        reset_at=data.rateLimit.resetAt,
    )


def graphql_request(github_token, query, variables) -> _GraphQLResponse:
    """
    POST a GraphQL query and validate the response envelope

    Args:
        github_token (str): Token used for the call
        query (str): GraphQL query string
        variables (dict): Variables for the query

    Returns:
        _GraphQLResponse with data and/or errors

    Raises:
        ConfigurationError: When the token is missing or rejected (401)
        RateLimited: On 403/429
        UpstreamError: On any other non-2xx status or an unexpected payload shape
    """
    if not github_token:
        raise ConfigurationError("GitHub token is required (set GITHUB_TOKEN)")

    headers = {
        "Authorization": f"bearer {github_token}",
        "Content-Type": "application/json",
    }

    with _http_client() as client:
        response = client.post(GITHUB_GRAPHQL_URL, headers=headers, json={"query": query, "variables": variables})

    if response.status_code == 401:
        raise ConfigurationError("GitHub token unauthorized")

    if response.status_code >= 400:
        excerpt = body_excerpt(response.text)
        logger.error(
            "GitHub GraphQL HTTP error: status=%s token=%s body=%s",
            response.status_code,
            _token_hash(github_token),
            excerpt,
        )
        error_cls = RateLimited if response.status_code in (403, 429) else UpstreamError
        raise error_cls(
            f"GitHub GraphQL HTTP {response.status_code}: {excerpt}",
            status=response.status_code,
            body=excerpt,
            url=GITHUB_GRAPHQL_URL,
            provider=PROVIDER,
        )

    try:
        return _GraphQLResponse.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise UpstreamError(
            "Unexpected GitHub GraphQL response shape",
            status=response.status_code,
            body=body_excerpt(response.text),
            url=GITHUB_GRAPHQL_URL,
            provider=PROVIDER,
        ) from exc


def _resolve_data(parsed: _GraphQLResponse, login) -> Optional[_GraphQLData]:
    """
    Return the data block, or None when GitHub only reports the login as missing

    Raises:
        UpstreamError: On any other GraphQL error or a missing data block
    """
    errors = parsed.errors or []
    not_found = [e for e in errors if (e.type or "").upper() == "NOT_FOUND"]
    other = [e for e in errors if e not in not_found]

    if other:
        messages = "; ".join(e.message for e in other)
        raise UpstreamError(f"GitHub GraphQL error(s): {messages}", provider=PROVIDER, url=GITHUB_GRAPHQL_URL)

    if parsed.data is None:
        if not_found:
            logger.info("GitHub login not found: login=%s", login)
            return None
        raise UpstreamError("GitHub GraphQL returned no data", provider=PROVIDER, url=GITHUB_GRAPHQL_URL)

    return parsed.data


def _log_rate_limit(rate_limit: Optional[RateLimitInfo], github_token) -> None:
    if rate_limit is None:
        logger.debug("GitHub rate limit telemetry missing token=%s", _token_hash(github_token))
        return
    logger.debug(
        "GitHub rate limit: cost=%s remaining=%s reset_at=%s token=%s",
        rate_limit.cost,
        rate_limit.remaining,
        rate_limit.reset_at,
        _token_hash(github_token),
    )


def fetch_contribution_rollups(login, github_token, now=None) -> ProviderRollups:
    """
    Fetch trailing 30d and 365d contribution totals in a single GraphQL call

    Both windows share to=now; GitHub returns pre-aggregated counts so nothing is counted locally

    Args:
        login (str): GitHub login
        github_token (str): Token used for the call
        now (datetime): Optional reference instant (UTC)

    Returns:
        ProviderRollups; zero totals with resolved=False when the login does not exist
    """
    login = str(login or "").strip()
    if not login:
        raise ValueError("login is required")

    now = now or datetime.now(timezone.utc)
    variables: Dict[str, Any] = {
        "login": login,
        "from30": _to_iso8601_z(now - timedelta(days=WINDOW_DAYS[Period.LAST_30D])),
        "from365": _to_iso8601_z(now - timedelta(days=WINDOW_DAYS[Period.LAST_365D])),
        "to": _to_iso8601_z(now),
    }

    parsed = graphql_request(github_token, _ROLLUPS_QUERY, variables)
    data = _resolve_data(parsed, login)
    meta = {"window_to": variables["to"], "window_from_365": variables["from365"]}

    if data is None:
        return empty_rollups(PROVIDER, login, meta=meta)

    rate_limit = _rate_limit_info(data)
    _log_rate_limit(rate_limit, github_token)

    if data.user is None:
        logger.info("GitHub login not found: login=%s", login)
        return empty_rollups(PROVIDER, login, meta=meta, rate_limit=rate_limit)

    return ProviderRollups(
        provider=PROVIDER,
        handle=data.user.login,
        windows={
            Period.LAST_30D: _window_totals(data.user.c30),
            Period.LAST_365D: _window_totals(data.user.c365),
        },
        rate_limit=rate_limit,
        meta=meta,
    )


def fetch_contribution_totals(login, github_token, from_dt, to_dt) -> Dict[str, Any]:
    """
    Fetch contribution totals for one arbitrary range

    Args:
        login (str): GitHub login
        github_token (str): Token used for the call
        from_dt (datetime): Inclusive lower bound (UTC)
        to_dt (datetime): Exclusive upper bound (UTC)

    Returns:
        dict with keys: login, totals (WindowTotals), rate_limit (RateLimitInfo or None)
    """
    login = str(login or "").strip()
    if not login:
        raise ValueError("login is required")

    parsed = graphql_request(
        github_token,
        _RANGE_QUERY,
        {"login": login, "from": _to_iso8601_z(from_dt), "to": _to_iso8601_z(to_dt)},
    )
    data = _resolve_data(parsed, login)
    if data is None:
        return {"login": login, "totals": WindowTotals(), "rate_limit": None}

    rate_limit = _rate_limit_info(data)
    if data.user is None:
        return {"login": login, "totals": WindowTotals(), "rate_limit": rate_limit}

    return {
        "login": data.user.login,
        "totals": _window_totals(data.user.cwin),
        "rate_limit": rate_limit,
    }
