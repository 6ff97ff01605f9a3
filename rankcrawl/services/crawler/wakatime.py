import logging
from urllib.parse import quote

import httpx

from rankcrawl.config import Settings
from rankcrawl.middleware.request_logging import log_request, log_response
from rankcrawl.services.crawler.base import DetailResult, LeaderboardClient, LeaderboardPage
from rankcrawl.services.crawler.errors import RequestTimeout, UpstreamError, error_for_status
from rankcrawl.services.http.policy import HeuristicPolicy
from rankcrawl.services.http.transport import CachingTransport
from rankcrawl.utils.cache import CacheStore

logger = logging.getLogger("rankcrawl.crawler.wakatime")


class WakaTimeClient(LeaderboardClient):
    """WakaTime API v1 client.

    The API key travels as the `api_key` query parameter. Every call goes
    through the given httpx client, normally one mounted on CachingTransport.
    """

    def __init__(self, client: httpx.AsyncClient, api_key: str):
        self.client = client
        self.api_key = api_key

    async def probe(self) -> dict:
        resp = await self._get("/users/current")
        return self._data(resp, dict)

    async def fetch_page(self, range_name: str, page: int) -> LeaderboardPage:
        resp = await self._get("/leaders", {"page": page, "range": range_name})
        payload = self._payload(resp)
        user_ids = []
        for entry in self._data(resp, list, payload):
            user = entry.get("user") if isinstance(entry, dict) else None
            if isinstance(user, dict) and user.get("id"):
                user_ids.append(str(user["id"]))
        try:
            return LeaderboardPage(
                page=int(payload.get("page", page)),
                total_pages=int(payload.get("total_pages", 0)),
                user_ids=user_ids,
            )
        except (TypeError, ValueError) as e:
            raise self._malformed(resp, f"bad paging fields: {e}") from e

    async def fetch_detail(self, user_id: str, range_name: str) -> DetailResult:
        resp = await self._get(f"/users/{quote(user_id, safe='')}/stats/{range_name}")
        if resp.status_code == httpx.codes.ACCEPTED:
            return DetailResult(user_id=user_id, accepted=True)
        return DetailResult(user_id=user_id, data=self._data(resp, dict))

    async def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        """GET path, translating transport failures and error statuses into typed errors."""
        query = dict(params or {})
        query["api_key"] = self.api_key
        try:
            resp = await self.client.get(path, params=query)
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"GET {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"GET {path} failed: {e}") from e
        error = error_for_status(resp)
        if error is not None:
            raise error
        return resp

    def _payload(self, resp: httpx.Response) -> dict:
        """Decode a JSON object body, raising UpstreamError for anything else."""
        try:
            payload = resp.json()
        except ValueError as e:
            raise self._malformed(resp, "body is not JSON") from e
        if not isinstance(payload, dict):
            raise self._malformed(resp, f"expected a JSON object, got {type(payload).__name__}")
        return payload

    def _data(self, resp: httpx.Response, kind: type, payload: dict | None = None):
        """The `data` member of the body, checked against the expected type."""
        if payload is None:
            payload = self._payload(resp)
        data = payload.get("data", kind())
        if not isinstance(data, kind):
            raise self._malformed(resp, f"expected data to be a {kind.__name__}, got {type(data).__name__}")
        return data

    @staticmethod
    def _malformed(resp: httpx.Response, reason: str) -> UpstreamError:
        request = resp.request
        url = str(request.url.copy_remove_param("api_key"))
        return UpstreamError(
            f"[{request.method} {url}] ({resp.status_code}) malformed response: {reason}",
            status_code=resp.status_code,
            url=url,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def build_client(
    settings: Settings,
    cache: CacheStore,
    transport: httpx.AsyncBaseTransport | None = None,
) -> WakaTimeClient:
    """Wire a WakaTimeClient on top of the response cache."""
    caching = CachingTransport(
        cache,
        policy=HeuristicPolicy(cache_for=settings.cache_for_seconds),
        transport=transport,
        mark_cached_responses=settings.mark_cached_responses,
    )
    http = httpx.AsyncClient(
        base_url=settings.wakatime_base_url,
        transport=caching,
        timeout=settings.http_timeout,
        headers={"User-Agent": f"{settings.app_name}/{settings.app_version}"},
        event_hooks={"request": [log_request], "response": [log_response]},
    )
    logger.debug("WakaTime client ready base_url=%s timeout=%.1fs", settings.wakatime_base_url, settings.http_timeout)
    return WakaTimeClient(http, settings.wakatime_api_key)
