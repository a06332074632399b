"""Error taxonomy shared by fetchers, aggregator, locks and the backfill orchestrator."""


class ConfigurationError(ValueError):
    """
    Raised when a provider credential is missing or rejected

    Never retried
    """


class UpstreamError(RuntimeError):
    """
    Raised when a provider (or the refresh endpoint) returns a non-2xx status or a malformed payload

    Attributes:
        status (int): HTTP status, or None for shape errors
        body (str): Response body excerpt
        url (str): Request URL when known
        provider (str): 'github', 'gitlab' or 'backfill'
    """

    def __init__(self, message, status=None, body=None, url=None, provider=None):
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url
        self.provider = provider


class RateLimited(UpstreamError):
    """
    Upstream rejected the call for rate-limit reasons (403/429); retryable with backoff
    """


class LockConflict(RuntimeError):
    """
    Raised when a refresh lease is already held by another caller

    Attributes:
        key (str): Lock key that could not be acquired
    """

    def __init__(self, key, message=None):
        super().__init__(message or f"Lock already held: {key}")
        self.key = key


def body_excerpt(text, max_chars=500) -> str:
    normalized = str(text or "").strip()
    if len(normalized) > max_chars:
        return normalized[:max_chars]
    return normalized
