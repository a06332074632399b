import logging
import uuid
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator, Optional

from redis.exceptions import RedisError

from services.shared.caching import get_redis
from services.shared.config import REFRESH_LOCK_TTL_SECONDS
from services.shared.errors import LockConflict


logger = logging.getLogger("locks")

PROVIDERS = ("github", "gitlab")


_RELEASE_LOCK_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


def _require_provider(provider) -> str:
    normalized = str(provider or "").strip().lower()
    if normalized not in PROVIDERS:
        raise ValueError(f"Unknown provider: {provider!r}")
    return normalized


def backfill_lock_key(provider, user_id) -> str:
    return f"lock:backfill:{_require_provider(provider)}:{user_id}"


def daily_lock_key(provider, user_id, day) -> str:
    """
    Lease key for the daily refresh of one provider

    Args:
        provider (str): 'github' or 'gitlab'
        user_id (str): Internal user id
        day (str|date): UTC day, rendered YYYY-MM-DD

    Returns:
        str key
    """
    return f"lock:daily:{_require_provider(provider)}:{user_id}:{str(day)}"


def acquire_lock(key, ttl_seconds=REFRESH_LOCK_TTL_SECONDS) -> Optional[str]:
    """
    Try to take a lease on key

    Args:
        key (str): Lock key
        ttl_seconds (int): Lease TTL so a crashed holder cannot block forever

    Returns:
        str token when acquired, None when another holder has it
    """
    token = str(uuid.uuid4())
    ttl_seconds = max(1, int(ttl_seconds))

    acquired = get_redis().set(key, token, nx=True, ex=ttl_seconds)
    if acquired:
        return token
    return None


def release_lock(key, token) -> None:
    """
    Release a lease only when token still matches the stored value

    Never raises; best-effort cleanup
    """
    try:
        released = get_redis().eval(_RELEASE_LOCK_LUA, 1, key, token)
    except RedisError as exc:
        logger.error(
            "Failed to release lock",
            extra={"lock_key": key, "error": type(exc).__name__},
            exc_info=True,
        )
        return

    if not released:
        logger.warning("Lock was not released (expired or taken over)", extra={"lock_key": key})


@contextmanager
def lock_lease(key, ttl_seconds=REFRESH_LOCK_TTL_SECONDS) -> Iterator[str]:
    """
    Hold a lease for the duration of the block

    Raises:
        LockConflict: When the lease is already held
    """
    token = acquire_lock(key, ttl_seconds)
    if token is None:
        raise LockConflict(key)

    try:
        yield token
    finally:
        release_lock(key, token)


@contextmanager
def lock_leases(keys: Iterable[str], ttl_seconds=REFRESH_LOCK_TTL_SECONDS) -> Iterator[list]:
    """
    Hold several leases at once

    Keys are acquired in sorted order and released in reverse. When a later key
    is already held, every lease taken so far is released before LockConflict
    propagates

    Raises:
        LockConflict: When any lease is already held
    """
    ordered = sorted(set(keys))
    with ExitStack() as stack:
        tokens = [stack.enter_context(lock_lease(key, ttl_seconds)) for key in ordered]
        yield tokens


def with_lock(key, ttl_seconds, fn):
    """
    Run fn while holding the lease on key

    Args:
        key (str): Lock key
        ttl_seconds (int): Lease TTL
        fn (callable): Zero-argument callable

    Returns:
        fn's return value

    Raises:
        LockConflict: When the lease is already held
    """
    with lock_lease(key, ttl_seconds):
        return fn()
