"""Resumable batch backfill over every known user.

Progress lives in the Redis set lb:backfill:done:{days}; a rerun only
dispatches users not yet in it. Each cycle reads a batch of undone users,
resolves their handles and fans the refreshes out to a bounded pool of
worker threads.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import httpx

from services.shared.caching import get_redis
from services.shared.config import (
    API_AUTH_TOKEN,
    BACKFILL_BATCH_SIZE,
    BACKFILL_CONCURRENCY,
    BACKFILL_DAYS,
    BACKFILL_JITTER_MAX_MS,
    BACKFILL_JITTER_MIN_MS,
    BACKFILL_MAX_USERS,
    BACKFILL_ZERO_SUCCESS_COOLDOWN_SECONDS,
)
from services.shared.errors import ConfigurationError, LockConflict, RateLimited, UpstreamError, body_excerpt
from services.shared.leaderboard_cache import KnownUserIndex
from services.shared.pipeline import refresh_and_sync_user
from services.shared.retry import RetryPolicy
from services.shared.user_meta import UserHandles, read_user_handles


logger = logging.getLogger("backfill")

MAX_CONCURRENCY = 8
DEFAULT_BACKFILL_HTTP_TIMEOUT = 120.0
BACKFILL_PATH = "/api/internal/leaderboard/backfill"


def done_key(days) -> str:
    return f"lb:backfill:done:{int(days)}"


@dataclass
class BackfillOptions:
    days: int = BACKFILL_DAYS
    batch_size: int = BACKFILL_BATCH_SIZE
    concurrency: int = BACKFILL_CONCURRENCY
    jitter_min_ms: int = BACKFILL_JITTER_MIN_MS
    jitter_max_ms: int = BACKFILL_JITTER_MAX_MS
    max_users: int = BACKFILL_MAX_USERS
    dry_run: bool = False
    max_batches: Optional[int] = None
    zero_success_cooldown: float = BACKFILL_ZERO_SUCCESS_COOLDOWN_SECONDS

    def normalized(self) -> "BackfillOptions":
        """
        Clamp knobs into their supported ranges

        Returns:
            BackfillOptions copy
        """
        jitter_min = max(0, int(self.jitter_min_ms))
        jitter_max = max(jitter_min, int(self.jitter_max_ms))
        return replace(
            self,
            days=max(1, int(self.days)),
            batch_size=max(1, int(self.batch_size)),
            concurrency=min(max(int(self.concurrency), 1), MAX_CONCURRENCY),
            jitter_min_ms=jitter_min,
            jitter_max_ms=jitter_max,
            max_users=max(1, int(self.max_users)),
            max_batches=None if self.max_batches is None else max(1, int(self.max_batches)),
            zero_success_cooldown=max(0.0, float(self.zero_success_cooldown)),
        )


@dataclass
class ItemOutcome:
    user_id: str
    ok: bool
    attempts: int = 0
    status: Optional[int] = None
    kind: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchSummary:
    """
    Result of one backfill cycle

    Attributes:
        candidates (int): Undone users found before taking the batch
        succeeded (list): User ids refreshed and marked done
        failed (list): ItemOutcome for each user whose refresh failed
        skipped (list): User ids without any provider handle
        planned (list): User ids a dry run would have dispatched
    """

    candidates: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: List[ItemOutcome] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def dispatched(self) -> int:
        return len(self.succeeded) + len(self.failed)


def filter_undone(user_ids: Iterable[str], days, client=None) -> List[str]:
    ids = [str(user_id) for user_id in user_ids]
    if not ids:
        return []

    pipe = (client or get_redis()).pipeline()
    for user_id in ids:
        pipe.sismember(done_key(days), user_id)
    flags = pipe.execute()
    return [user_id for user_id, is_done in zip(ids, flags) if not is_done]


def mark_done(user_ids: Iterable[str], days, client=None) -> None:
    ids = [str(user_id) for user_id in user_ids]
    if not ids:
        return

    pipe = (client or get_redis()).pipeline()
    for user_id in ids:
        pipe.sadd(done_key(days), user_id)
    pipe.execute()


def _jitter_seconds(options: BackfillOptions, rng) -> float:
    return rng.randint(options.jitter_min_ms, options.jitter_max_ms) / 1000.0


def _dispatch(
    items: List[UserHandles],
    refresh_fn: Callable[[UserHandles], Any],
    options: BackfillOptions,
    policy: RetryPolicy,
    rng,
) -> List[ItemOutcome]:
    """
    Run refresh_fn over items on a bounded thread pool

    Workers claim the next item through a shared index under a lock, so no
    item is dispatched twice. An exception escaping a worker is re-raised
    here once the pool has drained
    """
    if not items:
        return []

    outcomes: List[Optional[ItemOutcome]] = [None] * len(items)
    claim_lock = threading.Lock()
    next_index = [0]

    def _claim() -> Optional[int]:
        with claim_lock:
            index = next_index[0]
            if index >= len(items):
                return None
            next_index[0] = index + 1
            return index

    def _worker():
        while True:
            index = _claim()
            if index is None:
                return

            item = items[index]
            time.sleep(_jitter_seconds(options, rng))
            result = policy.run(lambda: refresh_fn(item), label=f"backfill:{item.user_id}")
            outcomes[index] = ItemOutcome(
                user_id=item.user_id,
                ok=result.ok,
                attempts=result.attempts,
                status=result.status,
                kind=result.kind,
                error=result.error,
            )

            if result.ok:
                logger.info("backfill user=%s -> OK", item.user_id)
            else:
                logger.warning("backfill user=%s -> %s %s", item.user_id, result.status, result.error)

    worker_count = min(options.concurrency, len(items))
    with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="backfill-worker") as pool:
        futures = [pool.submit(_worker) for _ in range(worker_count)]
        for future in futures:
            future.result()

    return [outcome for outcome in outcomes if outcome is not None]


def run_backfill_batch(
    options: BackfillOptions,
    refresh_fn: Callable[[UserHandles], Any],
    client=None,
    known_users: Optional[KnownUserIndex] = None,
    policy: Optional[RetryPolicy] = None,
    exclude: Optional[Set[str]] = None,
    rng=None,
) -> BatchSummary:
    """
    Run one backfill cycle

    Args:
        options (BackfillOptions): Batch knobs
        refresh_fn (callable): Called with a UserHandles for each dispatched user
        client: Optional Redis client
        known_users (KnownUserIndex): Candidate source
        policy (RetryPolicy): Retry/backoff policy for each refresh
        exclude (set): User ids to leave out of this cycle
        rng: Optional random.Random for jitter

    Candidates are every known user not yet in the done set; the batch takes
    at most min(batch_size, max_users) of them

    Returns:
        BatchSummary; candidates == 0 means nothing is left to do
    """
    options = options.normalized()
    client = client or get_redis()
    known_users = known_users or KnownUserIndex(client=client)
    policy = policy or RetryPolicy()
    rng = rng or random.Random()
    exclude = exclude or set()

    summary = BatchSummary(dry_run=options.dry_run)

    members = known_users.members()
    undone = [user_id for user_id in filter_undone(members, options.days, client=client) if user_id not in exclude]
    summary.candidates = len(undone)
    if not undone:
        return summary

    batch = undone[: min(options.batch_size, options.max_users)]
    logger.info("Processing batch of %s (remaining ~%s)", len(batch), len(undone))

    handles = read_user_handles(batch, client=client)
    queue = [item for item in handles if item.has_handle]
    summary.skipped = [item.user_id for item in handles if not item.has_handle]
    if summary.skipped:
        logger.info("Skipping %s users without provider handles", len(summary.skipped))

    if options.dry_run:
        summary.planned = [item.user_id for item in queue]
        for item in queue:
            logger.info(
                "[dry] would backfill %s (gh=%s gl=%s)",
                item.user_id,
                item.github_login or "-",
                item.gitlab_username or "-",
            )
        return summary

    outcomes = _dispatch(queue, refresh_fn, options, policy, rng)
    summary.succeeded = [outcome.user_id for outcome in outcomes if outcome.ok]
    summary.failed = [outcome for outcome in outcomes if not outcome.ok]

    mark_done(summary.succeeded, options.days, client=client)

    logger.info(
        "Batch complete",
        extra={
            "dispatched": summary.dispatched,
            "ok": len(summary.succeeded),
            "failed": len(summary.failed),
            "skipped": len(summary.skipped),
            "days": options.days,
        },
    )
    return summary


def run_backfill(
    options: BackfillOptions,
    refresh_fn: Callable[[UserHandles], Any],
    client=None,
    known_users: Optional[KnownUserIndex] = None,
    policy: Optional[RetryPolicy] = None,
    rng=None,
) -> Dict[str, Any]:
    """
    Repeat backfill cycles until no undone candidate is left

    Users skipped or failed in this run are not revisited by later cycles of
    the same run; they stay undone and are picked up by the next run. After a
    cycle with failures and no successes the loop cools down before continuing.
    A run takes at most max_users users into its batches; the rest stay undone
    for the next run

    Returns:
        dict with keys: batches, succeeded, failed, skipped, planned, done_count, known_count
    """
    options = options.normalized()
    client = client or get_redis()
    known_users = known_users or KnownUserIndex(client=client)
    policy = policy or RetryPolicy()

    logger.info(
        "Starting backfill",
        extra={
            "days": options.days,
            "batch": options.batch_size,
            "concurrency": options.concurrency,
            "dry_run": options.dry_run,
        },
    )

    visited: Set[str] = set()
    totals = {"batches": 0, "succeeded": 0, "failed": 0, "skipped": 0, "planned": 0}
    taken = 0

    while options.max_batches is None or totals["batches"] < options.max_batches:
        remaining = options.max_users - taken
        if remaining <= 0:
            logger.info("Reached max_users=%s for this run", options.max_users)
            break

        summary = run_backfill_batch(
            replace(options, max_users=remaining),
            refresh_fn,
            client=client,
            known_users=known_users,
            policy=policy,
            exclude=visited,
            rng=rng,
        )
        if summary.candidates == 0:
            logger.info("All users processed for %sd", options.days)
            break

        totals["batches"] += 1
        totals["succeeded"] += len(summary.succeeded)
        totals["failed"] += len(summary.failed)
        totals["skipped"] += len(summary.skipped)
        totals["planned"] += len(summary.planned)
        taken += summary.dispatched + len(summary.skipped) + len(summary.planned)

        visited.update(summary.skipped)
        visited.update(summary.planned)
        visited.update(outcome.user_id for outcome in summary.failed)

        if not summary.succeeded and summary.failed and options.zero_success_cooldown > 0:
            logger.warning("No successes in this batch; backing off %ss", options.zero_success_cooldown)
            time.sleep(options.zero_success_cooldown)

    totals["done_count"] = int(client.scard(done_key(options.days)) or 0)
    totals["known_count"] = known_users.count()
    logger.info("Backfill finished", extra=totals)
    return totals


class InProcessRefresher:
    """
    Refresh users by calling the pipeline directly
    """

    def __call__(self, handles: UserHandles):
        return refresh_and_sync_user(
            handles.user_id,
            github_login=handles.github_login,
            gitlab_username=handles.gitlab_username,
        )


class HttpRefresher:
    """
    Refresh users through the internal backfill endpoint of a running API

    Status mapping: 409 -> LockConflict, 403/429 -> RateLimited, other non-2xx
    -> UpstreamError; transport errors propagate as httpx errors
    """

    def __init__(self, origin, auth_token=None, days=BACKFILL_DAYS, client: Optional[httpx.Client] = None):
        origin = str(origin or "").strip().rstrip("/")
        if not origin:
            raise ConfigurationError("Backfill origin is required")

        auth_token = auth_token if auth_token is not None else API_AUTH_TOKEN
        if not auth_token:
            raise ConfigurationError("API_AUTH_TOKEN is required for HTTP backfill")

        self.url = origin + BACKFILL_PATH
        self.days = int(days)
        self._auth_token = auth_token
        self._client = client or httpx.Client(timeout=DEFAULT_BACKFILL_HTTP_TIMEOUT)

    def close(self) -> None:
        self._client.close()

    def __call__(self, handles: UserHandles):
        body = {"user_id": handles.user_id, "days": self.days}
        if handles.github_login:
            body["github_login"] = handles.github_login
        if handles.gitlab_username:
            body["gitlab_username"] = handles.gitlab_username

        response = self._client.post(
            self.url,
            headers={"Authorization": f"Bearer {self._auth_token}"},
            json=body,
        )

        if response.status_code < 400:
            try:
                return response.json()
            except ValueError:
                return {"status": "ok"}

        excerpt = body_excerpt(response.text)
        if response.status_code == 409:
            raise LockConflict(f"backfill:{handles.user_id}", message=f"Conflict: {excerpt}")

        error_cls = RateLimited if response.status_code in (403, 429) else UpstreamError
        raise error_cls(
            f"Backfill HTTP {response.status_code}: {excerpt}",
            status=response.status_code,
            body=excerpt,
            url=self.url,
            provider="backfill",
        )
