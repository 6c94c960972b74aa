"""
Worker pool that drives a crawl over a frontier.

The coordinator seeds the frontier, runs ``concurrency`` workers that pull
entries, fetch them and feed discovered links back, and streams every
result through a bounded queue. A full queue blocks the workers, so a slow
consumer throttles the crawl instead of letting results pile up in memory.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import AsyncIterator, List, Optional, Sequence, Union

import structlog

from quarrycrawl.config.config import CrawlerConfig, CrawlOptions
from quarrycrawl.crawler.frontier import Frontier, UrlFilter, VisitedSet
from quarrycrawl.crawler.http_client import sleep_unless_cancelled
from quarrycrawl.crawler.link_extractor import LinkExtractor, is_html
from quarrycrawl.crawler.rate_limiter import DomainRateLimiter
from quarrycrawl.crawler.robots_parser import RobotsPolicy
from quarrycrawl.crawler.sitemap import SitemapSource
from quarrycrawl.crawler.statistics import StatisticsCollector
from quarrycrawl.crawler.url_normalizer import get_host, is_http_url
from quarrycrawl.observability.metrics import METRICS
from quarrycrawl.protocols import CrawlState, CrawlStatistics, FetchResult, FrontierEntry, PageFetcher

logger = structlog.get_logger(__name__)


class _Done:
    """Sentinel placed on the result queue once every worker has exited."""


_DONE = _Done()


class ConcurrencyCoordinator:
    """
    Runs a single crawl.

    Lifecycle is IDLE -> RUNNING -> (DRAINING | CANCELLED) -> COMPLETED.
    An instance is good for one ``run``; the engine builds a new one (with a
    fresh frontier, visited set and statistics) for every crawl while the
    fetcher and robots cache are shared.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        frontier: Frontier,
        options: Optional[CrawlOptions] = None,
        *,
        robots: Optional[RobotsPolicy] = None,
        link_extractor: Optional[LinkExtractor] = None,
        statistics: Optional[StatisticsCollector] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        sitemap_source: Optional[SitemapSource] = None,
        config: Optional[CrawlerConfig] = None,
    ):
        self.options = options or CrawlOptions()
        self.config = config or CrawlerConfig()
        self._fetcher = fetcher
        self._frontier = frontier
        self._robots = robots
        self._extractor = link_extractor or LinkExtractor(include_images=self.options.include_images)
        self._statistics = statistics or StatisticsCollector()
        self._rate_limiter = rate_limiter
        self._sitemaps = sitemap_source

        self._visited = VisitedSet()
        self._filter = UrlFilter(self.options)
        self._frontier_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(self.options.concurrency)
        self._cancel_event = asyncio.Event()
        self._results: Optional[asyncio.Queue[Union[FetchResult, _Done]]] = None

        self._state = CrawlState.IDLE
        self._active_workers = 0
        self._reserved_pages = 0
        self._emitted = 0
        self._robots_blocked = 0
        self._worker_error: Optional[BaseException] = None
        self.crawl_id = uuid.uuid4().hex[:12]

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> CrawlState:
        return self._state

    @property
    def statistics(self) -> CrawlStatistics:
        return self._statistics.snapshot

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def pages_emitted(self) -> int:
        return self._emitted

    @property
    def robots_blocked(self) -> int:
        return self._robots_blocked

    def cancel(self) -> None:
        """Stop handing out new work. Fetches already running still complete and are emitted."""
        if self._cancel_event.is_set() or self._state is CrawlState.COMPLETED:
            return
        self._cancel_event.set()
        if self._state is not CrawlState.IDLE:
            self._state = CrawlState.CANCELLED
        logger.info("Crawl cancellation requested", crawl_id=self.crawl_id, in_flight=self._active_workers)

    async def run(self, seeds: Sequence[str]) -> AsyncIterator[FetchResult]:
        """
        Crawl from ``seeds`` and yield each FetchResult as it completes.

        Raises:
            ValueError: if no seeds are given or a seed is not an http(s) URL
            RuntimeError: if this coordinator already ran
        """
        if self._state is not CrawlState.IDLE:
            raise RuntimeError("ConcurrencyCoordinator instances run a single crawl")
        seed_list = [seed.strip() for seed in seeds if isinstance(seed, str) and seed.strip()]
        if not seed_list:
            raise ValueError("At least one seed URL is required")
        invalid = [seed for seed in seed_list if not is_http_url(seed)]
        if invalid:
            raise ValueError(f"Seed URLs must be absolute http(s) URLs: {invalid}")

        self._state = CrawlState.RUNNING
        self._statistics.reset()
        self._results = asyncio.Queue(maxsize=self.options.result_buffer_size)
        for seed in seed_list:
            self._filter.add_host(seed)

        logger.info(
            "Crawl started",
            crawl_id=self.crawl_id,
            strategy=self._frontier.strategy.value,
            seeds=len(seed_list),
            concurrency=self.options.concurrency,
            max_depth=self.options.max_depth,
            max_pages=self.options.max_pages,
        )

        await self._seed(seed_list)

        with structlog.contextvars.bound_contextvars(crawl_id=self.crawl_id):
            workers = [
                asyncio.create_task(self._worker(worker_id), name=f"crawl-{self.crawl_id}-worker-{worker_id}")
                for worker_id in range(self.options.concurrency)
            ]
            supervisor = asyncio.create_task(self._supervise(workers))

        try:
            while True:
                item = await self._results.get()
                if isinstance(item, _Done):
                    break
                yield item
        finally:
            if not supervisor.done():
                # Consumer stopped reading; nobody will drain the queue
                self._cancel_event.set()
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                supervisor.cancel()
                await asyncio.gather(supervisor, return_exceptions=True)

            cancelled = self._cancel_event.is_set()
            self._state = CrawlState.COMPLETED
            stats = self._statistics.snapshot
            logger.info(
                "Crawl finished",
                crawl_id=self.crawl_id,
                cancelled=cancelled,
                pages=self._emitted,
                successful=stats.successful_requests,
                failed=stats.failed_requests,
                robots_blocked=self._robots_blocked,
            )

        if self._worker_error is not None:
            raise self._worker_error

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def _seed(self, seeds: List[str]) -> None:
        if self._frontier.accepts_discoveries:
            entries = [self._frontier.entry_for(seed) for seed in seeds]
        else:
            if self._sitemaps is None:
                raise ValueError("A sitemap source is required for sitemap crawls")
            urls = await self._sitemaps.resolve(seeds, self._robots)
            entries = []
            for url in urls:
                reason = self._filter.rejection_reason(url)
                if reason is None:
                    entries.append(self._frontier.entry_for(url))
                else:
                    logger.debug("Sitemap URL rejected", url=url, reason=reason)
            logger.info("Sitemap frontier prepared", urls=len(urls), accepted=len(entries))

        async with self._frontier_lock:
            self._frontier.push(entries)
            METRICS["crawler_frontier_size"].set(len(self._frontier))

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _supervise(self, workers: List[asyncio.Task]) -> None:
        outcomes = await asyncio.gather(*workers, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error("Crawl worker failed", error=str(outcome), exc_info=outcome)
                if self._worker_error is None:
                    self._worker_error = outcome
        assert self._results is not None
        await self._results.put(_DONE)

    async def _worker(self, worker_id: int) -> None:
        while True:
            entry = await self._next_entry()
            if entry is None:
                logger.debug("Worker exiting", worker_id=worker_id)
                return

            fetched = False
            try:
                fetched = await self._process(entry)
            finally:
                async with self._frontier_lock:
                    self._active_workers -= 1
                    self._frontier.task_done(entry)

            if fetched and self.options.delay_between_fetches > 0:
                await sleep_unless_cancelled(self.options.delay_between_fetches, self._cancel_event)

    async def _next_entry(self) -> Optional[FrontierEntry]:
        """
        Take the next entry, waiting while the frontier is only temporarily empty.

        Returns None when the crawl is cancelled, the page budget is used up,
        or the frontier is empty with no worker left that could refill it.
        """
        while not self._cancel_event.is_set():
            async with self._frontier_lock:
                if self._reserved_pages >= self.options.max_pages:
                    self._mark_draining()
                    return None
                entry = self._frontier.pop()
                if entry is not None:
                    self._active_workers += 1
                    if self._state is CrawlState.DRAINING:
                        self._state = CrawlState.RUNNING
                    METRICS["crawler_frontier_size"].set(len(self._frontier))
                    return entry
                if self._active_workers == 0:
                    return None
                self._mark_draining()
            await sleep_unless_cancelled(self.config.idle_poll_interval, self._cancel_event)
        return None

    def _mark_draining(self) -> None:
        if self._state is CrawlState.RUNNING:
            self._state = CrawlState.DRAINING

    async def _process(self, entry: FrontierEntry) -> bool:
        """Handle one entry. Returns True if a fetch was made and a result emitted."""
        if not await self._visited.add(entry.url):
            logger.debug("Already visited", url=entry.url)
            return False

        if self.options.respect_robots and self._robots is not None:
            if not await self._robots.is_allowed(entry.url, self.options.user_agent):
                self._robots_blocked += 1
                METRICS["crawler_robots_blocked_total"].inc()
                logger.info("Blocked by robots.txt", url=entry.url, depth=entry.depth)
                return False

        async with self._frontier_lock:
            if self._reserved_pages >= self.options.max_pages:
                return False
            self._reserved_pages += 1

        domain = get_host(entry.url)
        if self._rate_limiter is not None:
            if self.options.respect_robots and self._robots is not None:
                crawl_delay = await self._robots.crawl_delay(entry.url, self.options.user_agent)
                self._rate_limiter.set_interval(domain, crawl_delay)
            await self._rate_limiter.wait_for_domain(domain, self._cancel_event)
            if self._cancel_event.is_set():
                # Never started, so it is not an in-flight fetch
                async with self._frontier_lock:
                    self._reserved_pages -= 1
                return False

        async with self._slots:
            try:
                result = await self._fetcher.fetch(entry.url, depth=entry.depth, cancel_event=self._cancel_event)
            except Exception as e:
                logger.error("Fetcher raised", url=entry.url, error=str(e), exc_info=True)
                result = FetchResult(
                    url=entry.url,
                    final_url=entry.url,
                    status_code=0,
                    is_success=False,
                    depth=entry.depth,
                    error_message=str(e) or e.__class__.__name__,
                )

        if self._rate_limiter is not None:
            self._rate_limiter.update_from_response(domain, result.status_code, result.headers)

        if result.is_success and is_html(result.content_type):
            links, images = self._extractor.extract(result.text, result.final_url)
            result = replace(result, discovered_links=tuple(links), image_urls=tuple(images))
            await self._enqueue_children(entry, links)

        await self._emit(result)
        return True

    async def _enqueue_children(self, parent: FrontierEntry, links: Sequence[str]) -> None:
        if not self._frontier.accepts_discoveries or parent.depth + 1 > self.options.max_depth:
            return

        accepted = [url for url in links if url not in self._visited and self._filter.accepts(url)]
        if not accepted:
            return

        async with self._frontier_lock:
            if self._reserved_pages >= self.options.max_pages:
                return
            added = self._frontier.push(self._frontier.children(parent, accepted))
            METRICS["crawler_frontier_size"].set(len(self._frontier))

        if added:
            logger.debug("Links queued", parent=parent.url, depth=parent.depth + 1, added=added)

    async def _emit(self, result: FetchResult) -> None:
        assert self._results is not None
        await self._statistics.record(result)
        self._emitted += 1
        METRICS["crawler_pages_total"].labels(strategy=self._frontier.strategy.value).inc()
        await self._results.put(result)
