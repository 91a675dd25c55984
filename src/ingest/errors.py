"""Error hierarchy for portal ingestion.

Transient failures (should be retried by the caller with backoff) are kept
apart from permanent ones so tenacity can classify them automatically.

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(PortalUnavailableError), stop=stop_after_attempt(3))
    async def acquire(principal: str, secret: str):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.ingest.logging import mask_principal

if TYPE_CHECKING:
    from src.ingest.sanity import GuardReport


class ScrapingError(Exception):
    """Base exception for all ingestion errors."""

    pass


class TransientError(ScrapingError):
    """Temporary failure that may succeed on retry."""

    pass


class PortalUnavailableError(TransientError):
    """Network error, timeout or 5xx from the portal.

    Retryable by the caller with backoff; never retried inside the
    session manager or the orchestrator.
    """

    pass


class PermanentError(ScrapingError):
    """Failure that won't succeed on retry.

    Examples: a request blocked by the read-only guard, a required table
    that is missing from the page.
    """

    pass


class AuthenticationError(PermanentError):
    """The portal rejected the credential. Fatal for the principal."""

    pass


class AccountNotLinkedError(PermanentError):
    """No portal secret is available for the principal."""

    pass


class ExtractionEmpty(PermanentError):
    """A parser found no matching table where one was required.

    Distinct from a table with zero rows and from the portal's explicit
    "no data" page.
    """

    def __init__(self, source: str, extractor: str) -> None:
        super().__init__(f"{extractor}: no matching table in response for {source}")
        self.source = source
        self.extractor = extractor


class SessionExpiredError(ScrapingError):
    """An authenticated request was redirected back to the login page.

    The session manager has already dropped the cached session when this
    is raised; acquiring again performs a fresh handshake.
    """

    def __init__(self, principal: str, path: str) -> None:
        super().__init__(f"Session for {mask_principal(principal)} bounced to login at {path}")
        self.principal = principal
        self.path = path


class RegressionDetected(ScrapingError):
    """A completed batch looks corrupted. Non-fatal; the caller decides."""

    def __init__(self, report: "GuardReport") -> None:
        departments = sorted(
            {r.department for r in report.comparison.regressions}
            | {r.department for r in report.failed_checks}
        )
        super().__init__(f"Regression detected for term {report.term}: {', '.join(departments)}")
        self.report = report
