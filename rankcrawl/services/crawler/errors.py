"""Crawler exceptions and the failure taxonomy used by the retry loop.

Upstream failures are classified once, where the response is received, into
four kinds: rate limited, not found, timeout, and everything else.
"""

from enum import Enum

import httpx


class CrawlError(Exception):
    """Base crawler error."""

    pass


class UpstreamError(CrawlError):
    """Non-success response from the API that fits no more specific kind."""

    def __init__(self, message: str, status_code: int | None = None, url: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RateLimited(UpstreamError):
    """HTTP 429."""

    pass


class NotFound(UpstreamError):
    """HTTP 404. The id is permanently skipped for the run."""

    pass


class RequestTimeout(CrawlError):
    """The client-wide HTTP timeout elapsed."""

    pass


class DiscoveryError(CrawlError):
    """A leaderboard page could not be fetched. Fatal for the run."""

    pass


class CheckpointError(CrawlError):
    """The checkpoint or seed file exists but cannot be decoded."""

    pass


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNCLASSIFIED = "unclassified"


_STATUS_ERRORS: dict[int, type[UpstreamError]] = {
    429: RateLimited,
    404: NotFound,
}


def error_for_status(response: httpx.Response) -> UpstreamError | None:
    """Build the typed error for a failed response, None for 2xx."""
    if response.is_success:
        return None
    error_cls = _STATUS_ERRORS.get(response.status_code, UpstreamError)
    request = response.request
    url = str(request.url.copy_remove_param("api_key"))
    return error_cls(
        f"[{request.method} {url}] ({response.status_code})",
        status_code=response.status_code,
        url=url,
    )


def classify(exc: BaseException) -> ErrorKind:
    """Map an exception to its kind by type and status code."""
    if isinstance(exc, (RequestTimeout, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    status_code = None
    if isinstance(exc, UpstreamError):
        status_code = exc.status_code
    elif isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    return ErrorKind.UNCLASSIFIED
