"""Value types shared by the provider fetchers, the aggregator and the durable store."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Period(str, Enum):
    LAST_30D = "last_30d"
    LAST_365D = "last_365d"
    ALL_TIME = "all_time"


# Windows computed by the provider fetchers, in days
WINDOW_DAYS = {
    Period.LAST_30D: 30,
    Period.LAST_365D: 365,
}

_PERIOD_ALIASES = {
    "30d": Period.LAST_30D,
    "365d": Period.LAST_365D,
    "all": Period.ALL_TIME,
}


def parse_period(value) -> Period:
    """
    Resolve a period tag or window alias ('30d', '365d', 'all')

    Raises:
        ValueError: When value names no known period
    """
    if isinstance(value, Period):
        return value

    normalized = str(value or "").strip().lower()
    if normalized in _PERIOD_ALIASES:
        return _PERIOD_ALIASES[normalized]
    return Period(normalized)


@dataclass(frozen=True)
class WindowTotals:
    commits: int = 0
    prs: int = 0
    issues: int = 0

    @property
    def total(self) -> int:
        return self.commits + self.prs + self.issues

    def as_dict(self) -> Dict[str, int]:
        return {
            "commits": self.commits,
            "prs": self.prs,
            "issues": self.issues,
            "total": self.total,
        }


@dataclass(frozen=True)
class RateLimitInfo:
    cost: int
    remaining: int
    reset_at: str


@dataclass
class ProviderRollups:
    """
    Windowed totals for one handle on one provider

    Attributes:
        provider (str): 'github' or 'gitlab'
        handle (str): Login/username as resolved upstream (or as requested when unresolved)
        windows (dict): Period -> WindowTotals for every window in WINDOW_DAYS
        resolved (bool): False when the handle does not exist upstream
        rate_limit (RateLimitInfo): Upstream telemetry when the provider reports it
        meta (dict): Provider-specific fetch statistics
    """

    provider: str
    handle: str
    windows: Dict[Period, WindowTotals]
    resolved: bool = True
    rate_limit: Optional[RateLimitInfo] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def empty_rollups(provider, handle, meta=None, rate_limit=None) -> ProviderRollups:
    """
    Explicit zero totals for a handle that could not be resolved
    """
    return ProviderRollups(
        provider=provider,
        handle=handle,
        windows={period: WindowTotals() for period in WINDOW_DAYS},
        resolved=False,
        rate_limit=rate_limit,
        meta=dict(meta or {}),
    )
