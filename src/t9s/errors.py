"""Error taxonomy for t9s.

Every failure that can reach the browsing engine is one of these kinds.
Fetch and subprocess errors are turned into status messages by the
navigator; none of them is fatal to the process.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Distinguishable failure kinds."""

    NETWORK = "network"  # transient, retried with backoff
    AUTH = "auth"  # fatal to the current refresh
    NOT_FOUND = "not_found"  # removed upstream, cache entry pruned
    RATE_LIMITED = "rate_limited"  # transient, longer backoff
    CACHE_CORRUPTION = "cache_corruption"  # cold start
    SUBPROCESS_UNAVAILABLE = "subprocess_unavailable"
    CAPABILITY_DENIED = "capability_denied"

    @property
    def is_transient(self) -> bool:
        """Whether a retry may succeed."""
        return self in (ErrorKind.NETWORK, ErrorKind.RATE_LIMITED)


class T9sError(Exception):
    """Base class for all t9s errors."""

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value


class NetworkError(T9sError):
    """Connection failure, timeout or server-side error."""

    kind = ErrorKind.NETWORK


class AuthError(T9sError):
    """The server rejected the token."""

    kind = ErrorKind.AUTH


class NotFoundError(T9sError):
    """The requested entity no longer exists on the server."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "", entity_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class RateLimitedError(T9sError):
    """The server asked us to slow down."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "", retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class CacheCorruption(T9sError):
    """The on-disk cache could not be read."""

    kind = ErrorKind.CACHE_CORRUPTION


class SubprocessUnavailable(T9sError):
    """An external program (fzf, pager) is not installed or failed to start."""

    kind = ErrorKind.SUBPROCESS_UNAVAILABLE


class CapabilityDenied(T9sError):
    """The action is not available for the current selection."""

    kind = ErrorKind.CAPABILITY_DENIED
