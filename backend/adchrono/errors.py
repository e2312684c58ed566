"""Error taxonomy shared by services, workers and routers.

WHAT:
    One exception hierarchy rooted at `AdChronoError`. Each class carries a
    `retryable` flag that the job queue reads to decide between scheduling a
    retry and recording the job as failed, and an HTTP status the API maps it
    to.

WHY:
    Background jobs and HTTP handlers share the same services; classifying
    failures once keeps the retry policy and the API responses consistent.

REFERENCES:
    - adchrono/workers/job_queue.py (retry classification)
    - adchrono/main.py (HTTP exception handlers)
"""

from __future__ import annotations

from typing import Optional


class AdChronoError(Exception):
    """Base class for all domain errors."""

    retryable: bool = False
    status_code: int = 500


class ConfigurationError(AdChronoError):
    """Tenant is not set up correctly (missing credentials, no ad account).

    Retrying cannot fix this; someone has to reconnect the account.
    """

    status_code = 400


class EntityNotFoundError(AdChronoError):
    """A referenced campaign / account does not exist for the tenant."""

    status_code = 404


class UpstreamApiError(AdChronoError):
    """The ads provider failed, timed out, or rate-limited us."""

    retryable = True
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[int] = None,
        rate_limited: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.rate_limited = rate_limited


class DataIntegrityError(AdChronoError):
    """A stored or fetched payload does not have the expected shape."""

    status_code = 422


class StorageError(AdChronoError):
    """A database write failed; the transaction was rolled back."""

    retryable = True
    status_code = 503


class TenantScopeError(AdChronoError):
    """Tenant data was accessed without (or outside) a bound tenant."""


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    if isinstance(exc, AdChronoError):
        return exc.retryable
    return True
