import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError

from services.shared.config import (
    BACKFILL_CONFLICT_COOLDOWN_SECONDS,
    BACKFILL_MAX_RETRIES,
    BACKFILL_RATE_LIMIT_STEP_SECONDS,
    BACKFILL_SERVER_ERROR_STEP_SECONDS,
    BACKFILL_TRANSPORT_STEP_SECONDS,
)
from services.shared.errors import LockConflict, RateLimited, UpstreamError


logger = logging.getLogger("retry")

CONFLICT = "conflict"
RATE_LIMITED = "rate_limited"
SERVER_ERROR = "server_error"
TRANSPORT = "transport"


@dataclass
class AttemptResult:
    """
    Outcome of running one unit of work through a RetryPolicy

    Attributes:
        ok (bool): True when the call eventually succeeded
        value: Return value of the successful call
        attempts (int): Number of calls made
        kind (str): Failure class of the last error, or None
        error (str): Last error rendered as 'Type: message'
        status (int): HTTP-like status of the last error when known
    """

    ok: bool
    value: Any = None
    attempts: int = 0
    kind: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None


def error_status(exc) -> Optional[int]:
    if isinstance(exc, LockConflict):
        return 409
    if isinstance(exc, UpstreamError):
        return exc.status
    return None


class RetryPolicy:
    """
    Classify failures and back off between attempts

    conflict waits a fixed cooldown; rate_limited, server_error and transport
    wait step * attempt. Anything else fails immediately
    """

    def __init__(
        self,
        max_retries=BACKFILL_MAX_RETRIES,
        conflict_cooldown=BACKFILL_CONFLICT_COOLDOWN_SECONDS,
        rate_limit_step=BACKFILL_RATE_LIMIT_STEP_SECONDS,
        server_error_step=BACKFILL_SERVER_ERROR_STEP_SECONDS,
        transport_step=BACKFILL_TRANSPORT_STEP_SECONDS,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.max_retries = max(0, int(max_retries))
        self.conflict_cooldown = conflict_cooldown
        self.rate_limit_step = rate_limit_step
        self.server_error_step = server_error_step
        self.transport_step = transport_step
        self._sleep = sleep

    def classify(self, exc) -> Optional[str]:
        """
        Map an exception to a retryable failure class

        Returns:
            'conflict', 'rate_limited', 'server_error', 'transport' or None when not retryable
        """
        if isinstance(exc, LockConflict):
            return CONFLICT

        if isinstance(exc, RateLimited):
            return RATE_LIMITED

        if isinstance(exc, UpstreamError) and exc.status is not None:
            if exc.status in (403, 429):
                return RATE_LIMITED
            if exc.status == 409:
                return CONFLICT
            if exc.status >= 500:
                return SERVER_ERROR
            return None

        if isinstance(exc, (httpx.TransportError, RedisConnectionError)):
            return TRANSPORT

        return None

    def delay_for(self, kind, attempt) -> float:
        if kind == CONFLICT:
            return float(self.conflict_cooldown)
        if kind == RATE_LIMITED:
            return float(self.rate_limit_step) * attempt
        if kind == SERVER_ERROR:
            return float(self.server_error_step) * attempt
        if kind == TRANSPORT:
            return float(self.transport_step) * attempt
        return 0.0

    def sleep(self, seconds) -> None:
        if seconds <= 0:
            return
        (self._sleep or time.sleep)(seconds)

    def run(self, fn, label=None) -> AttemptResult:
        """
        Call fn until it succeeds, fails with a non-retryable error, or retries run out

        Never raises for failures of fn; they are reported on the result

        Args:
            fn (callable): Zero-argument callable
            label (str): Optional label for log lines

        Returns:
            AttemptResult
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                value = fn()
                return AttemptResult(ok=True, value=value, attempts=attempt)
            except Exception as exc:
                kind = self.classify(exc)
                status = error_status(exc)
                rendered = f"{type(exc).__name__}: {exc}"

                if kind is None or attempt > self.max_retries:
                    logger.warning(
                        "Attempt failed; giving up",
                        extra={
                            "label": label,
                            "attempt": attempt,
                            "kind": kind,
                            "status": status,
                            "error": rendered,
                        },
                    )
                    return AttemptResult(ok=False, attempts=attempt, kind=kind, error=rendered, status=status)

                delay = self.delay_for(kind, attempt)
                logger.warning(
                    "Attempt failed; retrying in %ss",
                    delay,
                    extra={"label": label, "attempt": attempt, "kind": kind, "status": status},
                )
                self.sleep(delay)
