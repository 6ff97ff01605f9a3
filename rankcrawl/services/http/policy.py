import time
from abc import ABC, abstractmethod
from email.utils import formatdate
from typing import Callable

import httpx

from rankcrawl.config import TEN_YEARS_SECONDS

# Credentials carried in the query string; kept out of cache keys and stored entries
SECRET_PARAMS = ("api_key",)


def public_url(url: httpx.URL) -> httpx.URL:
    """The URL with credential query parameters removed."""
    for name in SECRET_PARAMS:
        url = url.copy_remove_param(name)
    return url


class CachePolicy(ABC):
    """Decides how the caching transport keys, admits and decorates responses."""

    @abstractmethod
    def cache_key(self, request: httpx.Request) -> str:
        ...

    @abstractmethod
    def cacheable(self, request: httpx.Request) -> bool:
        """Whether responses to this request may be served from / stored in the cache."""
        ...

    @abstractmethod
    def post_request(self, response: httpx.Response) -> None:
        """Called on every successful network response before it is evaluated."""
        ...

    @abstractmethod
    def pre_caching(self, response: httpx.Response) -> None:
        """Called right before a response is serialized into the store."""
        ...


class HeuristicPolicy(CachePolicy):
    """Cache everything for a fixed window, whatever the origin says.

    Every successful response is stamped with an Expires header `cache_for`
    seconds ahead and `Cache-Control: public`, plus a running X-Request-Count.
    This is deliberately aggressive: the cache doubles as the crawl's dataset.
    """

    def __init__(self, cache_for: float = TEN_YEARS_SECONDS, clock: Callable[[], float] = time.time):
        self.cache_for = cache_for
        self.clock = clock
        self.request_count = 0

    def cache_key(self, request: httpx.Request) -> str:
        return f"{request.method} {public_url(request.url)}"

    def cacheable(self, request: httpx.Request) -> bool:
        return True

    def post_request(self, response: httpx.Response) -> None:
        response.headers["expires"] = formatdate(self.clock() + self.cache_for, usegmt=True)
        response.headers["cache-control"] = "public"
        response.headers["x-request-count"] = str(self.request_count)
        self.request_count += 1

    def pre_caching(self, response: httpx.Response) -> None:
        return None
