"""Application error taxonomy.

Every error the service raises on purpose derives from AppError. The API layer
turns these into the standard error envelope using ``status_code``; errors
flagged ``is_operational`` are expected conditions (bad input, a blocked
request) and are logged without a traceback.
"""

from typing import Optional


class AppError(Exception):
    """Base class for application errors."""

    status_code: int = 500
    is_operational: bool = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        is_operational: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if is_operational is not None:
            self.is_operational = is_operational


class ValidationError(AppError):
    """Bad caller input."""

    status_code = 400


class NotFoundError(AppError):
    """Resource absent locally or upstream."""

    status_code = 404


class ProxyError(AppError):
    """Proxy provider or outbound transport failure."""

    status_code = 502


class NoCredentialAvailableError(ProxyError):
    """Every known credential is exhausted or could not be verified."""

    status_code = 503

    def __init__(self, message: str = "No active proxy credentials available"):
        super().__init__(message)


class ProvisioningError(ProxyError):
    """Upstream refused to create or update a credential."""


class RateLimitError(AppError):
    """Target site blocked or throttled the current network identity."""

    status_code = 429

    def __init__(self, message: str = "Rate limited by target site", retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ScraperError(AppError):
    """Fetched page could not be used."""

    status_code = 502


class ContentMismatchError(ScraperError):
    """Page identity differs from the requested URL."""

    code = "PAGE_MISMATCH"

    def __init__(self, requested: str, received: str):
        super().__init__(
            f"Page content mismatch: requested {requested} but received {received}"
        )
        self.requested = requested
        self.received = received


class ChallengeNotBypassedError(ScraperError):
    """Anti-bot interstitial did not clear within the challenge timeout."""

    def __init__(self, url: str):
        super().__init__(f"Challenge page not bypassed for {url}")
        self.url = url


class DatabaseError(AppError):
    """Persistence layer failure."""

    status_code = 500


class ConfigurationError(AppError):
    """Missing or invalid configuration detected at startup."""

    status_code = 500
    is_operational = False
