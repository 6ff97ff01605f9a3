"""Command-line entry point.

Usage:
    rankcrawl [range] [-k API_KEY] [-w WEBHOOK_URL] [-v]

Collects the leaderboard for the given range (7, 30, 180 or 365 days) into a
dated cache directory, resuming from the checkpoint of an earlier run on the
same day. SIGINT/SIGTERM save the checkpoint before exiting.
"""

import argparse
import asyncio
import logging
import signal
import socket
import sys
from datetime import date
from functools import partial
from logging.handlers import QueueListener
from pathlib import Path

import httpx

from rankcrawl.config import LEADERBOARD_RANGES, Settings, settings as default_settings
from rankcrawl.services.checkpoint import CheckpointStore, load_seed
from rankcrawl.services.crawler.backoff import ExponentialBackoff
from rankcrawl.services.crawler.errors import CheckpointError, CrawlError
from rankcrawl.services.crawler.manager import CrawlEngine
from rankcrawl.services.crawler.wakatime import build_client
from rankcrawl.utils.cache import CacheStore, DiskCacheStore, MemoryCacheStore, RedisCacheStore
from rankcrawl.utils.notify import WebhookHandler, start_webhook_listener

logger = logging.getLogger("rankcrawl.main")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

CACHE_BACKENDS = ("disk", "redis", "memory")


def configure_logging(settings: Settings) -> QueueListener | None:
    """Set up console logging, plus the webhook sink when one is configured.

    Returns the webhook's queue listener, which the caller must stop on exit.
    """
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
    )
    # httpx logs every request at INFO; the request hooks cover it
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not settings.webhook_url:
        return None
    handler = WebhookHandler(
        settings.webhook_url,
        level=settings.webhook_level.upper(),
        max_failures=settings.webhook_max_failures,
    )
    handler.setFormatter(logging.Formatter("%(name)s %(message)s"))
    queue_handler, listener = start_webhook_listener(handler)
    logging.getLogger().addHandler(queue_handler)
    return listener


def run_dir(settings: Settings, today: date | None = None) -> Path:
    """Per-day directory holding the response cache and the checkpoint."""
    today = today or date.today()
    return Path(settings.data_dir) / f".cache-{today.isoformat()}"


def build_cache_store(settings: Settings, cache_dir: Path) -> CacheStore:
    if settings.cache_backend == "disk":
        return DiskCacheStore(cache_dir)
    if settings.cache_backend == "redis":
        return RedisCacheStore.from_url(settings.redis_url)
    if settings.cache_backend == "memory":
        return MemoryCacheStore()
    raise ValueError(f"Unknown cache backend: {settings.cache_backend}. Available: {list(CACHE_BACKENDS)}")


async def run(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    today: date | None = None,
) -> int:
    """Run one crawl and return the process exit code.

    The checkpoint is always written before this returns, whether the crawl
    finished, failed or was interrupted.
    """
    logger.info("Starting collector node=%s version=%s", socket.gethostname(), settings.app_version)

    base_dir = run_dir(settings, today)
    cache_dir = base_dir / settings.range_name
    seed_file = Path(settings.data_dir) / settings.seed_file
    logger.debug("Setting cached directory cache_directory=%s", cache_dir)

    checkpoint = CheckpointStore(base_dir / settings.checkpoint_file)
    try:
        seeded = checkpoint.seed(load_seed(seed_file))
        checkpoint.load()
    except CheckpointError as e:
        logger.critical("Cannot resume: %s", e)
        return EXIT_FATAL
    logger.debug("Seeded users=%d", seeded)

    client = build_client(settings, build_cache_store(settings, cache_dir), transport=transport)
    engine = CrawlEngine(
        client,
        checkpoint,
        settings.range_name,
        seed_file=seed_file,
        concurrency=settings.concurrency,
        backoff_factory=partial(
            ExponentialBackoff,
            initial=settings.backoff_initial_seconds,
            maximum=settings.backoff_max_seconds,
            max_elapsed=settings.backoff_max_elapsed_seconds,
        ),
        progress_every=settings.progress_every,
    )

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, shutdown.set)

    checkpoint.start_periodic_flush(settings.flush_interval_seconds)
    crawl = asyncio.create_task(engine.run())
    interrupted = asyncio.create_task(shutdown.wait())
    try:
        await asyncio.wait({crawl, interrupted}, return_when=asyncio.FIRST_COMPLETED)

        if not crawl.done():
            logger.warning("Interrupted, saving checkpoint")
            crawl.cancel()
            try:
                await crawl
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Crawl failed while stopping: %s", e)
            await checkpoint.stop_periodic_flush()
            checkpoint.force_flush()
            return EXIT_INTERRUPTED

        try:
            crawl.result()
        except Exception as e:
            logger.critical("Crawl aborted: %s", e, exc_info=not isinstance(e, CrawlError))
            await checkpoint.stop_periodic_flush()
            checkpoint.force_flush()
            return EXIT_FATAL

        await checkpoint.stop_periodic_flush()
        checkpoint.force_flush()
        return EXIT_OK
    finally:
        interrupted.cancel()
        for sig in signals:
            loop.remove_signal_handler(sig)
        await checkpoint.stop_periodic_flush()
        await client.aclose()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rankcrawl",
        description="Resumable WakaTime leaderboard collector",
    )
    parser.add_argument(
        "range",
        nargs="?",
        type=int,
        default=None,
        help=f"range pick from {', '.join(str(r) for r in LEADERBOARD_RANGES)} (default 7)",
    )
    parser.add_argument("-k", "--wakatime-api-key", help="wakatime api client key (env WAKATIME_API_KEY)")
    parser.add_argument("-w", "--webhook-url", help="webhook for error notifications (env WEBHOOK_URL)")
    parser.add_argument("-v", "--verbose", action="store_true", default=None, help="debug logging")
    parser.add_argument("--http-timeout", type=float, help="http client timeout in seconds")
    parser.add_argument("--concurrency", type=int, help="parallel detail fetches")
    parser.add_argument("--cache-backend", choices=CACHE_BACKENDS, help="response cache storage")
    parser.add_argument("--data-dir", help="where cache, checkpoint and seed files live")
    parser.add_argument("--version", action="version", version=f"%(prog)s {default_settings.app_version}")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, base: Settings = default_settings) -> Settings:
    overrides = {
        "leaderboard_range": args.range,
        "wakatime_api_key": args.wakatime_api_key,
        "webhook_url": args.webhook_url,
        "debug": args.verbose,
        "http_timeout": args.http_timeout,
        "concurrency": args.concurrency,
        "cache_backend": args.cache_backend,
        "data_dir": args.data_dir,
    }
    return base.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def main(argv: list[str] | None = None) -> None:
    settings = settings_from_args(parse_args(argv))
    if not settings.wakatime_api_key:
        print("error: a WakaTime API key is required (-k or WAKATIME_API_KEY)", file=sys.stderr)
        sys.exit(EXIT_USAGE)

    listener = configure_logging(settings)
    try:
        code = asyncio.run(run(settings))
    finally:
        if listener is not None:
            listener.stop()
    sys.exit(code)


if __name__ == "__main__":
    main()
