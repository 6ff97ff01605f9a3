import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Awaitable, Callable

from rankcrawl.services.checkpoint import CheckpointStore, write_seed
from rankcrawl.services.crawler.backoff import ExponentialBackoff
from rankcrawl.services.crawler.base import LeaderboardClient
from rankcrawl.services.crawler.errors import CrawlError, DiscoveryError, ErrorKind, classify


@dataclass
class CrawlSummary:
    collected: int = 0
    remaining: int = 0
    total: int = 0
    skipped_timeout: int = 0
    skipped_accepted: int = 0
    skipped_rate_limited: int = 0
    not_found: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class CrawlEngine:
    """Leaderboard crawl: discover every ranked user, then fetch each one's stats.

    Discovery walks pages 1..total_pages and adds unseen ids to the checkpoint
    as not collected; any page failure aborts the run. Collection makes one
    pass over the working set, fetching ids not yet collected, and resolves
    each failure locally:

      rate limited -> sleep with exponential backoff, retry the same id
                      (gives up once the per-id backoff budget is spent)
      not found    -> skip for good
      timeout      -> skip this pass
      accepted     -> skip this pass (the API is still computing the record)
      other        -> log, skip this pass
    """

    def __init__(
        self,
        client: LeaderboardClient,
        checkpoint: CheckpointStore,
        range_name: str,
        *,
        seed_file: str | Path | None = None,
        concurrency: int = 1,
        backoff_factory: Callable[[], ExponentialBackoff] = ExponentialBackoff,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        progress_every: int = 100,
        logger: logging.Logger | None = None,
    ):
        self.client = client
        self.checkpoint = checkpoint
        self.range_name = range_name
        self.seed_file = seed_file
        self.concurrency = max(1, concurrency)
        self.backoff_factory = backoff_factory
        self.sleep = sleep
        self.progress_every = progress_every
        self.logger = logger or logging.getLogger("rankcrawl.crawler.manager")

    async def run(self) -> CrawlSummary:
        await self.probe()
        await self.discover()

        collected, total = await self.checkpoint.counts()
        self.logger.info("Total users collected acquired=%d", collected)
        self.logger.info("Remaining users to be collected remaining=%d", total - collected)

        summary = await self.collect()
        self.logger.info("Crawl finished %s", " ".join(f"{k}={v}" for k, v in summary.as_dict().items()))
        return summary

    async def probe(self) -> None:
        user = await self.client.probe()
        self.logger.debug("Authenticated as user=%s", user.get("username") or user.get("id"))

    async def discover(self) -> int:
        """Walk every leaderboard page. Returns the number of new ids."""
        page_number = 1
        added = 0
        while True:
            try:
                page = await self.client.fetch_page(self.range_name, page_number)
            except CrawlError as e:
                raise DiscoveryError(f"Leaderboard page {page_number} failed: {e}") from e

            added += await self.checkpoint.discover(page.user_ids)
            self.logger.debug(
                "Leaderboard page=%d of=%d users=%d", page_number, page.total_pages, len(page.user_ids)
            )
            if page_number == 1:
                self.logger.debug("Estimating total users users=%d", page.total_pages * len(page.user_ids))
                if self.seed_file is not None:
                    write_seed(self.seed_file, await self.checkpoint.ids())

            if page_number >= page.total_pages:
                break
            page_number += 1

        _, total = await self.checkpoint.counts()
        self.logger.info("Discovery complete pages=%d new=%d users=%d", page_number, added, total)
        return added

    async def collect(self) -> CrawlSummary:
        """One pass over the working set, fetching every id not yet collected."""
        summary = CrawlSummary()
        queue: asyncio.Queue[str] = asyncio.Queue()
        for user_id in await self.checkpoint.ids():
            queue.put_nowait(user_id)
        total = queue.qsize()
        done = 0

        async def worker():
            nonlocal done
            backoff = self.backoff_factory()
            while True:
                try:
                    user_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if not await self.checkpoint.is_collected(user_id):
                    await self._collect_one(user_id, backoff, summary)
                done += 1
                if self.progress_every and done % self.progress_every == 0:
                    self.logger.info("Progress done=%d of=%d", done, total)

        await asyncio.gather(*(worker() for _ in range(min(self.concurrency, total) or 1)))

        summary.collected, summary.total = await self.checkpoint.counts()
        summary.remaining = summary.total - summary.collected
        if summary.skipped_timeout:
            self.logger.info("Skipped some due to timeouts skipped=%d", summary.skipped_timeout)
        if summary.skipped_accepted:
            self.logger.info("Skipped some still being computed skipped=%d", summary.skipped_accepted)
        if summary.skipped_rate_limited:
            self.logger.info("Skipped some after exhausting backoff skipped=%d", summary.skipped_rate_limited)
        return summary

    async def _collect_one(self, user_id: str, backoff: ExponentialBackoff, summary: CrawlSummary) -> None:
        backoff.reset()
        while True:
            try:
                result = await self.client.fetch_detail(user_id, self.range_name)
            except CrawlError as e:
                kind = classify(e)
                if kind is ErrorKind.RATE_LIMITED:
                    delay = backoff.next_delay()
                    if delay is None:
                        self.logger.info(
                            "Backoff exhausted user=%s attempts=%d elapsed=%.0fs",
                            user_id,
                            backoff.attempts,
                            backoff.elapsed,
                        )
                        backoff.reset()
                        summary.skipped_rate_limited += 1
                        return
                    self.logger.debug("Rate limited user=%s retry_in=%.1fs", user_id, delay)
                    await self.sleep(delay)
                    continue
                backoff.reset()
                if kind is ErrorKind.NOT_FOUND:
                    summary.not_found += 1
                elif kind is ErrorKind.TIMEOUT:
                    summary.skipped_timeout += 1
                else:
                    summary.errors += 1
                    self.logger.error("Detail fetch failed user=%s: %s", user_id, e)
                return

            backoff.reset()
            if result.accepted:
                summary.skipped_accepted += 1
                return
            await self.checkpoint.mark_collected(user_id)
            return
