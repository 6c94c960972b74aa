"""
Builds WebCrawler instances for a requested traversal strategy.
"""

from __future__ import annotations

from typing import List, Optional, Union

import structlog

from quarrycrawl.config.config import Config, CrawlOptions
from quarrycrawl.crawler.engine import WebCrawler
from quarrycrawl.protocols import CrawlStrategy, HttpTransport, Renderer

logger = structlog.get_logger(__name__)

_ALIASES = {
    "bfs": CrawlStrategy.BREADTH_FIRST,
    "breadth-first": CrawlStrategy.BREADTH_FIRST,
    "dfs": CrawlStrategy.DEPTH_FIRST,
    "depth-first": CrawlStrategy.DEPTH_FIRST,
    "priority": CrawlStrategy.INTELLIGENT,
    "smart": CrawlStrategy.INTELLIGENT,
}


def parse_strategy(value: Union[CrawlStrategy, str]) -> CrawlStrategy:
    """Accept an enum member, its value, or a short alias such as ``bfs``."""
    if isinstance(value, CrawlStrategy):
        return value
    key = value.strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return CrawlStrategy(key.replace("-", "_"))
    except ValueError:
        raise ValueError(
            f"Unknown crawl strategy {value!r}; expected one of {[s.value for s in CrawlStrategy]}"
        ) from None


class CrawlerFactory:
    """Creates crawlers that share one configuration, transport and optional renderer."""

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[HttpTransport] = None,
        renderer: Optional[Renderer] = None,
    ):
        self.config = config or Config()
        self.transport = transport
        self.renderer = renderer

    def create(
        self,
        strategy: Union[CrawlStrategy, str] = CrawlStrategy.BREADTH_FIRST,
        options: Optional[CrawlOptions] = None,
    ) -> WebCrawler:
        resolved = parse_strategy(strategy)
        if options is None:
            # Only values set explicitly in the config override the strategy defaults
            options = CrawlOptions.for_strategy(resolved, **self.config.crawl.model_dump(exclude_unset=True))
        logger.debug("Creating crawler", strategy=resolved.value, concurrency=options.concurrency)
        return WebCrawler(
            resolved,
            options,
            config=self.config,
            transport=self.transport,
            renderer=self.renderer,
        )

    @staticmethod
    def available_strategies() -> List[CrawlStrategy]:
        return list(CrawlStrategy)
