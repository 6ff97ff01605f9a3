"""Heuristic cache-control evaluation.

Decides whether a response may be stored by a shared cache and until when it
stays fresh. Revalidation, conditional requests and Vary handling are out of
scope: a response is either fresh or it is fetched again.
"""

import time
from email.utils import parsedate_to_datetime

import httpx

CACHEABLE_METHODS = frozenset({"GET", "HEAD"})
CACHEABLE_STATUS_CODES = frozenset({200, 203, 204, 206, 300, 301, 404, 405, 410, 414, 501})


def parse_cache_control(value: str | None) -> dict[str, str | None]:
    """Parse a Cache-Control header into {directive: argument or None}."""
    directives: dict[str, str | None] = {}
    if not value:
        return directives
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, arg = part.partition("=")
        name = name.strip().lower()
        directives[name] = arg.strip().strip('"') if sep else None
    return directives


def parse_http_date(value: str | None) -> float | None:
    """Parse an HTTP date into a unix timestamp, None if absent or invalid."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


def _seconds(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return max(int(value), 0)
    except ValueError:
        return None


def uncacheable_reasons(request: httpx.Request, response: httpx.Response) -> list[str]:
    """Return why a shared cache must not use this response; empty if it may."""
    reasons = []
    req_cc = parse_cache_control(request.headers.get("cache-control"))
    resp_cc = parse_cache_control(response.headers.get("cache-control"))

    if request.method.upper() not in CACHEABLE_METHODS:
        reasons.append(f"request method {request.method}")
    if "no-store" in req_cc:
        reasons.append("request no-store")
    if "authorization" in request.headers and not (
        "public" in resp_cc or "s-maxage" in resp_cc or "must-revalidate" in resp_cc
    ):
        reasons.append("request authorization")
    if response.status_code not in CACHEABLE_STATUS_CODES:
        reasons.append(f"response status {response.status_code}")
    if "no-store" in resp_cc:
        reasons.append("response no-store")
    if "private" in resp_cc:
        reasons.append("response private")
    if "no-cache" in resp_cc or "no-cache" in req_cc:
        # would need revalidation, which this cache never does
        reasons.append("no-cache")
    return reasons


def expires_at(response: httpx.Response, now: float | None = None) -> float | None:
    """Absolute expiry time from s-maxage/max-age (relative to Date) or Expires."""
    now = time.time() if now is None else now
    cc = parse_cache_control(response.headers.get("cache-control"))

    max_age = _seconds(cc.get("s-maxage"))
    if max_age is None:
        max_age = _seconds(cc.get("max-age"))
    if max_age is not None:
        date = parse_http_date(response.headers.get("date"))
        return (date if date is not None else now) + max_age

    if "expires" in response.headers:
        expires = parse_http_date(response.headers["expires"])
        # an invalid Expires means "already expired"
        return expires if expires is not None else 0.0
    return None


def is_fresh(request: httpx.Request, response: httpx.Response, now: float | None = None) -> bool:
    now = time.time() if now is None else now
    if uncacheable_reasons(request, response):
        return False
    expiry = expires_at(response, now)
    return expiry is not None and now < expiry
