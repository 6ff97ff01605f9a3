import logging
import logging.handlers
import queue

import httpx

# Slack attachment colours per level
LEVEL_COLORS = {
    "DEBUG": "#9B30FF",
    "INFO": "good",
    "WARNING": "warning",
    "ERROR": "danger",
    "CRITICAL": "danger",
}


def build_payload(record: logging.LogRecord, message: str) -> dict:
    return {
        "attachments": [
            {
                "text": message,
                "fallback": message,
                "color": LEVEL_COLORS.get(record.levelname, "good"),
            }
        ]
    }


class WebhookHandler(logging.Handler):
    """Post log records to a Slack-compatible incoming webhook.

    Delivery failures are counted; after `max_failures` of them the handler
    stops posting for the rest of the process.
    """

    def __init__(
        self,
        url: str,
        level: int | str = logging.INFO,
        max_failures: int = 10,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ):
        super().__init__(level)
        self.url = url
        self.max_failures = max_failures
        self.failures = 0
        self.client = client or httpx.Client(timeout=timeout)

    def emit(self, record: logging.LogRecord) -> None:
        if self.failures >= self.max_failures:
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        try:
            resp = self.client.post(self.url, json=build_payload(record, message))
            resp.raise_for_status()
        except httpx.HTTPError:
            self.failures += 1
        except Exception:
            self.failures += 1
            self.handleError(record)

    def close(self) -> None:
        self.client.close()
        super().close()


def start_webhook_listener(handler: WebhookHandler) -> tuple[logging.Handler, logging.handlers.QueueListener]:
    """Put the webhook behind a queue so posting happens off the caller's thread.

    Returns the QueueHandler to attach to a logger and the running listener;
    stop the listener before exit to drain pending messages.
    """
    records: queue.Queue = queue.Queue(-1)
    queue_handler = logging.handlers.QueueHandler(records)
    queue_handler.setLevel(handler.level)
    listener = logging.handlers.QueueListener(records, handler, respect_handler_level=True)
    listener.start()
    return queue_handler, listener
