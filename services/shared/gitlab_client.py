"""GitLab contribution rollups from the public event log.

GitLab has no windowed aggregate endpoint, so the 365-day event log is paged
once, filtered to public projects, and the 30-day totals are derived from that
same event set.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
import logging
import time

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from services.shared.config import GITLAB_BASE_URL, GITLAB_MAX_PAGES, GITLAB_PER_PAGE
from services.shared.contributions import Period, ProviderRollups, WINDOW_DAYS, WindowTotals, empty_rollups
from services.shared.errors import RateLimited, UpstreamError, body_excerpt

logger = logging.getLogger("gitlab_client")

DEFAULT_GITLAB_TIMEOUT = 15.0
PROVIDER = "gitlab"
RETRY_AFTER_MIN_SECONDS = 1
RETRY_AFTER_MAX_SECONDS = 10


class _GitlabUser(BaseModel):
    id: int
    username: str
    name: Optional[str] = None


class _PushData(BaseModel):
    commit_count: Optional[int] = None


class GitlabEvent(BaseModel):
    id: int
    project_id: Optional[int] = None
    action_name: Optional[str] = None
    target_type: Optional[str] = None
    created_at: datetime
    push_data: Optional[_PushData] = None


_USERS_ADAPTER = TypeAdapter(List[_GitlabUser])
_EVENTS_ADAPTER = TypeAdapter(List[GitlabEvent])


@contextmanager
def _http_client() -> Iterator[httpx.Client]:
    with httpx.Client(timeout=DEFAULT_GITLAB_TIMEOUT) as client:
        yield client


def _clean_base_url(base_url) -> str:
    return str(base_url or GITLAB_BASE_URL).strip().rstrip("/")


def _as_utc(dt) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_retry_after(value) -> int:
    if not value:
        return 0

    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        pass

    try:
        dt = parsedate_to_datetime(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc)
        return max(0, int((dt - now).total_seconds()))
    except (TypeError, ValueError, OverflowError):
        return 0


def _retry_after_wait_seconds(value) -> int:
    seconds = _parse_retry_after(value) or RETRY_AFTER_MIN_SECONDS
    return min(max(seconds, RETRY_AFTER_MIN_SECONDS), RETRY_AFTER_MAX_SECONDS)


def _gitlab_get(client, base_url, path, token=None, params=None) -> httpx.Response:
    """
    GET a GitLab REST path, retrying once after a 429

    Args:
        client (httpx.Client): HTTP client
        base_url (str): GitLab instance URL
        path (str): API path starting with /api/v4
        token (str): Optional access token
        params (dict): Query parameters; None values are dropped

    Returns:
        httpx.Response with a 2xx status

    Raises:
        RateLimited: When the retry is rate limited again
        UpstreamError: On any other non-2xx status (message includes the URL)
    """
    url = _clean_base_url(base_url) + path
    query = {k: v for k, v in (params or {}).items() if v is not None}

    headers = {"Content-Type": "application/json"}
    if token:
        headers["PRIVATE-TOKEN"] = token
        headers["Authorization"] = f"Bearer {token}"

    response = client.get(url, headers=headers, params=query)

    if response.status_code == 429:
        wait_seconds = _retry_after_wait_seconds(response.headers.get("Retry-After"))
        logger.info("GitLab 429; waiting %ss then retrying once (path=%s)", wait_seconds, path)
        time.sleep(wait_seconds)
        response = client.get(url, headers=headers, params=query)

    if response.status_code >= 400:
        excerpt = body_excerpt(response.text)
        request_url = str(response.request.url) if response.request is not None else url
        error_cls = RateLimited if response.status_code == 429 else UpstreamError
        raise error_cls(
            f"GitLab HTTP {response.status_code}: {excerpt} ({request_url})",
            status=response.status_code,
            body=excerpt,
            url=request_url,
            provider=PROVIDER,
        )

    return response


def _parse(adapter, response):
    try:
        return adapter.validate_python(response.json())
    except (ValueError, ValidationError) as exc:
        raise UpstreamError(
            "Unexpected GitLab response shape",
            status=response.status_code,
            body=body_excerpt(response.text),
            url=str(response.request.url) if response.request is not None else None,
            provider=PROVIDER,
        ) from exc


def resolve_gitlab_user(client, base_url, username, token=None) -> Optional[_GitlabUser]:
    """
    Resolve a username to the GitLab user record

    Returns:
        _GitlabUser or None when the username does not exist
    """
    response = _gitlab_get(client, base_url, "/api/v4/users", token, {"username": username, "per_page": 1})
    users = _parse(_USERS_ADAPTER, response)
    if not users:
        return None
    return users[0]


def fetch_user_events(
    client,
    base_url,
    token,
    gitlab_user_id,
    lower,
    upper,
    per_page=GITLAB_PER_PAGE,
    max_pages=GITLAB_MAX_PAGES,
) -> Tuple[List[GitlabEvent], Dict[str, int]]:
    """
    Page a user's events between lower (inclusive) and upper (exclusive)

    GitLab's after/before filters are exclusive dates, so the request range is
    widened by a day on each side and the exact window is enforced locally.
    Paging stops when a page holds only events older than lower, when there is
    no next page, or when the next page exceeds max_pages

    Returns:
        (events, stats) where stats has pages_fetched, per_page, total_scanned
    """
    per_page = min(max(int(per_page or 100), 20), 100)
    max_pages = min(max(int(max_pages or 10), 1), 50)
    lower = _as_utc(lower)
    upper = _as_utc(upper)

    params = {
        "after": (lower - timedelta(days=1)).date().isoformat(),
        "before": (upper + timedelta(days=1)).date().isoformat(),
        "per_page": per_page,
        "scope": "all",
    }

    page = 1
    pages_fetched = 0
    total_scanned = 0
    out: List[GitlabEvent] = []

    while True:
        response = _gitlab_get(
            client, base_url, f"/api/v4/users/{gitlab_user_id}/events", token, {**params, "page": page}
        )
        pages_fetched += 1

        events = _parse(_EVENTS_ADAPTER, response)
        total_scanned += len(events)

        in_window = [e for e in events if lower <= _as_utc(e.created_at) < upper]
        out.extend(in_window)

        if not in_window and events and max(_as_utc(e.created_at) for e in events) < lower:
            break

        next_page_header = response.headers.get("X-Next-Page")
        try:
            next_page = int(next_page_header)
        except (TypeError, ValueError):
            break

        if next_page <= 0 or next_page > max_pages:
            break

        page = next_page

    stats = {"pages_fetched": pages_fetched, "per_page": per_page, "total_scanned": total_scanned}
    return out, stats


def _project_visibility(client, base_url, token, project_id, visibility_cache) -> str:
    cached = visibility_cache.get(project_id)
    if cached:
        return cached

    try:
        response = _gitlab_get(client, base_url, f"/api/v4/projects/{project_id}", token)
        payload = response.json()
        visibility = str((payload or {}).get("visibility") or "unknown")
    except RateLimited:
        raise
    except UpstreamError as exc:
        logger.info("GitLab project visibility unresolved: project_id=%s status=%s", project_id, exc.status)
        visibility = "unknown"
    except ValueError:
        logger.info("GitLab project visibility payload invalid: project_id=%s", project_id)
        visibility = "unknown"

    visibility_cache[project_id] = visibility
    return visibility


def filter_public_events(client, base_url, token, events, visibility_cache=None) -> List[GitlabEvent]:
    """
    Keep only events that belong to publicly visible projects

    Visibility is looked up once per project id; events without a project id
    cannot be attributed and are dropped

    Args:
        visibility_cache (dict): project_id -> visibility, shared for one fetch
    """
    if visibility_cache is None:
        visibility_cache = {}

    by_project: Dict[int, List[GitlabEvent]] = {}
    for event in events:
        if event.project_id is None:
            continue
        by_project.setdefault(event.project_id, []).append(event)

    out: List[GitlabEvent] = []
    for project_id, project_events in by_project.items():
        if _project_visibility(client, base_url, token, project_id, visibility_cache) == "public":
            out.extend(project_events)
    return out


def count_public_contributions(events: Iterable[GitlabEvent]) -> WindowTotals:
    """
    Reduce events to totals

    push events add their commit count, opened merge requests add one PR,
    opened issues add one issue; anything else is ignored
    """
    commits = 0
    prs = 0
    issues = 0

    for event in events:
        action = (event.action_name or "").lower()

        if "push" in action and event.push_data is not None and isinstance(event.push_data.commit_count, int):
            commits += max(0, event.push_data.commit_count)
            continue

        if event.target_type == "MergeRequest" and action == "opened":
            prs += 1
            continue

        if event.target_type == "Issue" and action == "opened":
            issues += 1

    return WindowTotals(commits=commits, prs=prs, issues=issues)


def events_since(events: Iterable[GitlabEvent], lower) -> List[GitlabEvent]:
    lower = _as_utc(lower)
    return [e for e in events if _as_utc(e.created_at) >= lower]


def fetch_contribution_rollups(
    username,
    base_url=None,
    gitlab_token=None,
    now=None,
    per_page=GITLAB_PER_PAGE,
    max_pages=GITLAB_MAX_PAGES,
) -> ProviderRollups:
    """
    Fetch trailing 30d and 365d totals for a GitLab username

    The 365-day event log is fetched once; the 30-day totals are derived by
    filtering the same public event set by timestamp

    Args:
        username (str): GitLab username
        base_url (str): GitLab instance URL (defaults to GITLAB_BASE_URL)
        gitlab_token (str): Optional access token
        now (datetime): Optional reference instant (UTC)

    Returns:
        ProviderRollups; zero totals with resolved=False when the username does not exist
    """
    username = str(username or "").strip()
    if not username:
        raise ValueError("username is required")

    base_url = _clean_base_url(base_url)
    now = _as_utc(now or datetime.now(timezone.utc))
    from365 = now - timedelta(days=WINDOW_DAYS[Period.LAST_365D])
    from30 = now - timedelta(days=WINDOW_DAYS[Period.LAST_30D])

    meta: Dict[str, Any] = {
        "pages_fetched": 0,
        "per_page": 0,
        "total_scanned": 0,
        "public_events_365d": 0,
        "public_events_30d": 0,
        "window_from_365": from365.isoformat(),
        "window_to": now.isoformat(),
    }

    visibility_cache: Dict[int, str] = {}

    with _http_client() as client:
        user = resolve_gitlab_user(client, base_url, username, gitlab_token)
        if user is None:
            logger.info("GitLab username not found: username=%s base_url=%s", username, base_url)
            return empty_rollups(PROVIDER, username, meta=meta)

        events, stats = fetch_user_events(
            client,
            base_url,
            gitlab_token,
            user.id,
            lower=from365,
            upper=now,
            per_page=per_page,
            max_pages=max_pages,
        )
        public_365 = filter_public_events(client, base_url, gitlab_token, events, visibility_cache)

    public_30 = events_since(public_365, from30)

    meta.update(stats)
    meta["public_events_365d"] = len(public_365)
    meta["public_events_30d"] = len(public_30)

    logger.debug(
        "GitLab rollups fetched: username=%s pages=%s scanned=%s public_365d=%s public_30d=%s projects=%s",
        user.username,
        stats["pages_fetched"],
        stats["total_scanned"],
        len(public_365),
        len(public_30),
        len(visibility_cache),
    )

    return ProviderRollups(
        provider=PROVIDER,
        handle=user.username,
        windows={
            Period.LAST_30D: count_public_contributions(public_30),
            Period.LAST_365D: count_public_contributions(public_365),
        },
        meta=meta,
    )
