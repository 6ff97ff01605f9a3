import httpx
import pytest

from rankcrawl.utils.cache import MemoryCacheStore

BASE_URL = "https://api.test/api/v1"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingHandler:
    """httpx.MockTransport handler that records calls and replays canned responses."""

    def __init__(self, responder):
        self.responder = responder
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.responder(request)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryCacheStore()


@pytest.fixture
def leaderboard_page():
    def _page(user_ids, page=1, total_pages=1):
        return {
            "data": [{"rank": i + 1, "user": {"id": uid, "username": uid}} for i, uid in enumerate(user_ids)],
            "page": page,
            "total_pages": total_pages,
        }

    return _page


@pytest.fixture
def make_handler():
    return CountingHandler
