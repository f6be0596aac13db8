"""
Error taxonomy for MedVerify.

Navigator failures are split into transient errors, which the orchestrator
retries with backoff, and terminal errors, which are surfaced immediately.
"""

from typing import Optional


class VerificationError(Exception):
    """Base class for all MedVerify errors."""

    transient = False

    def __init__(self, message: str = "", detail: Optional[dict] = None):
        super().__init__(message)
        self.detail = detail or {}


class InvalidRequestError(VerificationError, ValueError):
    """Malformed document number or missing claimed names."""


class NavigatorError(VerificationError):
    """The registry search workflow could not be completed."""


class NetworkError(NavigatorError):
    """Transient network failure reaching the registry."""

    transient = True


class NavigationTimeout(NavigatorError):
    """A waiting state exceeded its timeout."""

    transient = True


class RegistryBlocked(NavigatorError):
    """The registry answered with an automation challenge."""


class BrowserCrash(NavigatorError):
    """The browser session became unusable."""


class ParseError(VerificationError):
    """The registry page structure was not recognized."""


class SessionAcquireTimeout(VerificationError, TimeoutError):
    """No pooled browser session became available in time."""


class SessionPoolClosed(VerificationError):
    """The session pool has been shut down."""


class DeadlineExceeded(VerificationError, TimeoutError):
    """The caller-supplied deadline expired before a result was assembled."""
