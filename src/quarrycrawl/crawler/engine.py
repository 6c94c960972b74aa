"""
WebCrawler: the crawler facade callers hold on to.
"""

from __future__ import annotations

from contextlib import aclosing
from typing import AsyncIterator, List, Optional, Sequence

from quarrycrawl.config.config import Config, CrawlOptions
from quarrycrawl.crawler.coordinator import ConcurrencyCoordinator
from quarrycrawl.crawler.frontier import create_frontier
from quarrycrawl.crawler.http_client import Fetcher, HttpClient
from quarrycrawl.crawler.link_extractor import LinkExtractor
from quarrycrawl.crawler.rate_limiter import DomainRateLimiter
from quarrycrawl.crawler.renderer import SmartFetcher
from quarrycrawl.crawler.robots_parser import RobotsPolicy
from quarrycrawl.crawler.sitemap import SitemapSource
from quarrycrawl.protocols import CrawlStatistics, CrawlStrategy, FetchResult, HttpTransport, PageFetcher, Renderer


class WebCrawler:
    """
    Crawler for one traversal strategy.

    The fetcher, robots cache, sitemap source and politeness state are
    shared by every crawl started from this instance; the frontier, visited
    set and statistics are created fresh per crawl. When no transport is
    supplied an aiohttp HttpClient is created and closed by this object.
    """

    def __init__(
        self,
        strategy: CrawlStrategy,
        options: Optional[CrawlOptions] = None,
        *,
        config: Optional[Config] = None,
        transport: Optional[HttpTransport] = None,
        renderer: Optional[Renderer] = None,
    ):
        self.strategy = strategy
        self.config = config or Config()
        self.options = options or CrawlOptions.for_strategy(strategy)

        self._owns_transport = transport is None
        self.transport: HttpTransport = transport or HttpClient(self.config.crawler)

        fetcher = Fetcher(self.transport, self.options)
        self.fetcher: PageFetcher = (
            SmartFetcher(fetcher, renderer, always_render=self.options.always_render) if renderer is not None else fetcher
        )
        self.robots = RobotsPolicy(self.transport, self.config.crawler, user_agent=self.options.user_agent)
        self.sitemaps = SitemapSource(
            self.transport, self.config.crawler, user_agent=self.options.user_agent, timeout=self.options.timeout
        )
        self.link_extractor = LinkExtractor(include_images=self.options.include_images)
        self.rate_limiter = DomainRateLimiter()
        self._coordinator: Optional[ConcurrencyCoordinator] = None

    async def __aenter__(self) -> "WebCrawler":
        if self._owns_transport:
            await self.transport.initialize()  # type: ignore[attr-defined]
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._coordinator is not None:
            self._coordinator.cancel()
        if self._owns_transport:
            await self.transport.close()  # type: ignore[attr-defined]

    # --- Crawler capabilities ---

    async def fetch(self, url: str, *, depth: int = 0) -> FetchResult:
        return await self.fetcher.fetch(url, depth=depth)

    def extract_links(self, result: FetchResult) -> List[str]:
        if not result.is_success:
            return []
        return self.link_extractor.extract_links(result.text, result.final_url)

    async def is_allowed(self, url: str) -> bool:
        if not self.options.respect_robots:
            return True
        return await self.robots.is_allowed(url, self.options.user_agent)

    def create_coordinator(self) -> ConcurrencyCoordinator:
        return ConcurrencyCoordinator(
            self.fetcher,
            create_frontier(self.strategy, self.options),
            self.options,
            robots=self.robots,
            link_extractor=self.link_extractor,
            rate_limiter=self.rate_limiter,
            sitemap_source=self.sitemaps,
            config=self.config.crawler,
        )

    async def crawl(self, seeds: Sequence[str]) -> AsyncIterator[FetchResult]:
        """Run a crawl from ``seeds``, yielding results as they complete."""
        coordinator = self.create_coordinator()
        self._coordinator = coordinator
        async with aclosing(coordinator.run(seeds)) as results:
            async for result in results:
                yield result

    def cancel(self) -> None:
        """Cooperatively cancel the running crawl, if any."""
        if self._coordinator is not None:
            self._coordinator.cancel()

    @property
    def statistics(self) -> CrawlStatistics:
        if self._coordinator is None:
            return CrawlStatistics()
        return self._coordinator.statistics

    @property
    def coordinator(self) -> Optional[ConcurrencyCoordinator]:
        return self._coordinator
