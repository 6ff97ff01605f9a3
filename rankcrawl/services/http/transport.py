import logging
import time
from typing import Callable

import httpx

from rankcrawl.services.http.codec import ResponseDecodeError, dump_response, load_response
from rankcrawl.services.http.freshness import is_fresh
from rankcrawl.services.http.policy import CachePolicy, HeuristicPolicy, public_url
from rankcrawl.utils.cache import CacheStore

X_FROM_CACHE = "X-From-Cache"
X_SOURCE_REQUEST = "X-Source-Request"


class CachingTransport(httpx.AsyncBaseTransport):
    """Write-through response cache in front of another httpx transport.

    Fresh entries are answered from the store without touching the network.
    Only plain 200 responses are stored; everything else passes through
    untouched. Which requests are eligible, how they are keyed and how
    freshness is synthesized is up to the policy.
    """

    def __init__(
        self,
        cache: CacheStore,
        policy: CachePolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        mark_cached_responses: bool = True,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ):
        self.cache = cache
        self.policy = policy or HeuristicPolicy(clock=clock)
        self.transport = transport or httpx.AsyncHTTPTransport()
        self.mark_cached_responses = mark_cached_responses
        self.clock = clock
        self.logger = logger or logging.getLogger("rankcrawl.http.cache")

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        cache_key = self.policy.cache_key(request)
        cacheable = self.policy.cacheable(request)

        if cacheable:
            cached = await self.cached_response(request, cache_key)
            if cached is not None and is_fresh(request, cached, self.clock()):
                if self.mark_cached_responses:
                    cached.headers[X_FROM_CACHE] = "1"
                self.logger.debug("cache hit key=%s", cache_key)
                return cached
        else:
            # an uncacheable request must never be answered by an older entry
            await self.cache.delete(cache_key)

        response = await self.transport.handle_async_request(request)
        if response.status_code != httpx.codes.OK:
            return response

        try:
            # raw bytes, still content-encoded
            body = b"".join([chunk async for chunk in response.stream])
        finally:
            await response.aclose()
        response = httpx.Response(
            response.status_code,
            headers=response.headers,
            stream=httpx.ByteStream(body),
            request=request,
            extensions=response.extensions,
        )

        self.policy.post_request(response)
        response.headers[X_SOURCE_REQUEST] = str(public_url(request.url))

        if cacheable and is_fresh(request, response, self.clock()):
            self.policy.pre_caching(response)
            await self.cache.set(cache_key, dump_response(response, body))
            self.logger.debug("cache store key=%s bytes=%d", cache_key, len(body))
        else:
            await self.cache.delete(cache_key)
        return response

    async def cached_response(self, request: httpx.Request, cache_key: str) -> httpx.Response | None:
        """Return the stored response for cache_key, or None on a miss.

        Entries that fail to decode count as misses.
        """
        data = await self.cache.get(cache_key)
        if data is None:
            return None
        try:
            return load_response(data, request)
        except ResponseDecodeError as e:
            self.logger.warning("Discarding unreadable cache entry key=%s: %s", cache_key, e)
            return None

    async def aclose(self) -> None:
        await self.transport.aclose()
        await self.cache.close()
