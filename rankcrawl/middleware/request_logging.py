import logging
import time
import uuid
import weakref

import httpx

logger = logging.getLogger("rankcrawl.requests")

# Query parameters that must never reach the logs
REDACTED_PARAMS = ("api_key",)


def redact(url: httpx.URL) -> str:
    for name in REDACTED_PARAMS:
        if name in url.params:
            url = url.copy_set_param(name, "***")
    return str(url)


class RequestLogger:
    """httpx event hooks logging one line per upstream request."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger
        self._started: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    async def on_request(self, request: httpx.Request) -> None:
        self._started[request] = (str(uuid.uuid4())[:8], time.monotonic())

    async def on_response(self, response: httpx.Response) -> None:
        request = response.request
        request_id, start_time = self._started.pop(request, ("-", time.monotonic()))
        duration_ms = (time.monotonic() - start_time) * 1000
        self.log.debug(
            "request_id=%s method=%s url=%s status=%d cached=%s duration_ms=%.1f",
            request_id,
            request.method,
            redact(request.url),
            response.status_code,
            "X-From-Cache" in response.headers,
            duration_ms,
        )


_default = RequestLogger()
log_request = _default.on_request
log_response = _default.on_response
