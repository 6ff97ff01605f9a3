from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class LeaderboardPage:
    """One page of the ranked list."""

    page: int
    total_pages: int
    user_ids: list[str] = field(default_factory=list)


@dataclass
class DetailResult:
    """Outcome of a detail fetch that did not fail.

    Either `data` holds the record, or `accepted` is set: the API took the
    request but is still computing the record (HTTP 202).
    """

    user_id: str
    data: dict | None = None
    accepted: bool = False


class LeaderboardClient(ABC):
    """Upstream API consumed by the crawl engine.

    Failed calls raise the typed errors from `crawler.errors`
    (RateLimited, NotFound, RequestTimeout, UpstreamError).
    """

    @abstractmethod
    async def probe(self) -> dict:
        """Authenticated sanity check. Returns the current user's record."""
        ...

    @abstractmethod
    async def fetch_page(self, range_name: str, page: int) -> LeaderboardPage:
        ...

    @abstractmethod
    async def fetch_detail(self, user_id: str, range_name: str) -> DetailResult:
        ...

    async def aclose(self) -> None:
        return None
